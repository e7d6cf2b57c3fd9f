import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from circulation.engine import CirculationEngine
from circulation.errors import ConcurrentModification, CopyUnavailable, LoanLimitReached, NotFound
from circulation.locks import KeyedLocks, copy_key, member_key


def _race(calls):
    """Start every call at the same moment; return (results, errors)."""
    barrier = threading.Barrier(len(calls))
    results, errors = [], []
    guard = threading.Lock()

    def run(call):
        barrier.wait()
        try:
            value = call()
        except Exception as exc:
            with guard:
                errors.append(exc)
        else:
            with guard:
                results.append(value)

    with ThreadPoolExecutor(max_workers=len(calls)) as pool:
        list(pool.map(run, calls))
    return results, errors


def test_two_checkouts_of_one_copy_have_one_winner(engine):
    results, errors = _race([
        lambda: engine.checkout("C1", "M1", "desk-a"),
        lambda: engine.checkout("C1", "M2", "desk-b"),
    ])

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], CopyUnavailable)
    assert engine.query_copy_status("C1").current_loan.loan.member_id == results[0].loan.member_id
    assert engine.check_consistency() == []


def test_many_desks_one_copy(engine):
    members = ["M1", "M2"] * 4
    results, errors = _race([
        (lambda member=member: engine.checkout("C1", member, "desk")) for member in members
    ])

    assert len(results) == 1
    assert all(isinstance(exc, CopyUnavailable) for exc in errors)


def test_loan_cap_holds_under_concurrent_checkouts(engine):
    results, errors = _race([
        (lambda copy_id=copy_id: engine.checkout(copy_id, "M1", "desk")) for copy_id in ("C1", "C2", "C3", "C4", "C5")
    ])

    assert len(results) == 3
    assert len(errors) == 2
    assert all(isinstance(exc, LoanLimitReached) for exc in errors)
    assert len(engine.query_member_loans("M1", open_only=True)) == 3
    assert engine.check_consistency() == []


def test_two_engines_on_one_database(engine, db_file, clock):
    # separate lock registries: only the database guards the copy here
    other = CirculationEngine(db_file=db_file, clock=clock)

    results, errors = _race([
        lambda: engine.checkout("C1", "M1", "desk-a"),
        lambda: other.checkout("C1", "M2", "desk-b"),
    ])

    assert len(results) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], (CopyUnavailable, ConcurrentModification))
    assert engine.check_consistency() == []


def test_concurrent_return_closes_the_loan_once(engine):
    engine.checkout("C1", "M1", "desk")

    results, errors = _race([
        lambda: engine.return_copy("C1", "desk-a"),
        lambda: engine.return_copy("C1", "desk-b"),
    ])

    assert len(results) == 1
    assert len(errors) == 1
    assert errors[0].code == "no_active_loan"


def test_concurrent_renewals_respect_the_cap(engine):
    loan_id = engine.checkout("C1", "M1", "desk").loan_id

    results, errors = _race([lambda: engine.renew(loan_id, "desk") for _ in range(4)])

    assert len(results) == 2
    assert all(exc.code == "renewal_limit_reached" for exc in errors)
    assert sorted(r.renewals_remaining for r in results) == [0, 1]


def test_busy_lock_times_out_instead_of_blocking():
    locks = KeyedLocks(timeout=0.05)
    holding = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold(copy_key("C1")):
            holding.set()
            release.wait(2)

    thread = threading.Thread(target=holder)
    thread.start()
    holding.wait(2)
    try:
        with pytest.raises(ConcurrentModification):
            with locks.hold(member_key("M1"), copy_key("C1")):
                pass
    finally:
        release.set()
        thread.join()

    # the member lock taken before the timeout was released again
    with locks.hold(member_key("M1"), timeout=0.05):
        pass
    assert len(locks) == 0


def test_keys_are_taken_in_sorted_order():
    locks = KeyedLocks(timeout=1)
    done = []

    def worker(keys):
        for _ in range(50):
            with locks.hold(*keys):
                pass
        done.append(keys)

    threads = [
        threading.Thread(target=worker, args=((copy_key("C1"), member_key("M1")),)),
        threading.Thread(target=worker, args=((member_key("M1"), copy_key("C1")),)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(done) == 2
    assert len(locks) == 0


def test_lock_registry_is_emptied_after_operations(engine):
    for n in range(50):
        with pytest.raises(NotFound):
            engine.checkout(f"ghost-{n}", "M1", "desk")

    for _ in range(3):
        loan_id = engine.checkout("C1", "M1", "desk").loan_id
        engine.renew(loan_id, "desk")
        engine.return_copy("C1", "desk")
    engine.ban("M2", "lost book", "admin")
    engine.unban("M2", "admin")

    assert len(engine.locks) == 0


def test_contended_key_stays_exclusive_while_entries_come_and_go():
    locks = KeyedLocks(timeout=5)
    inside = []
    overlaps = []

    def worker():
        for _ in range(200):
            with locks.hold(copy_key("C1")):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(len(inside))
                inside.pop()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert overlaps == []
    assert len(locks) == 0
