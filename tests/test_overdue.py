from datetime import datetime, timedelta, timezone

from circulation import overdue
from circulation.models import Loan

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_loan(due_in_days, returned=False):
    checkout_at = NOW - timedelta(days=20)
    return Loan(
        loan_id="loan_x",
        copy_id="C1",
        member_id="M1",
        checkout_at=checkout_at,
        due_at=NOW + timedelta(days=due_in_days),
        returned_at=NOW - timedelta(days=1) if returned else None,
    )


def test_open_loan_past_due_is_overdue():
    loan = make_loan(-3)
    assert overdue.is_overdue(loan, NOW) is True
    assert overdue.days_overdue(loan, NOW) == 3


def test_open_loan_not_yet_due():
    loan = make_loan(2)
    assert overdue.is_overdue(loan, NOW) is False
    assert overdue.days_overdue(loan, NOW) == 0


def test_due_right_now_is_not_overdue():
    assert overdue.is_overdue(make_loan(0), NOW) is False


def test_closed_loan_is_never_overdue():
    loan = make_loan(-30, returned=True)
    assert overdue.is_overdue(loan, NOW) is False
    assert overdue.is_overdue(loan, NOW + timedelta(days=400)) is False


def test_same_inputs_same_answer():
    loan = make_loan(-1)
    answers = {overdue.is_overdue(loan, NOW) for _ in range(5)}
    assert answers == {True}
    assert loan.returned_at is None


def test_a_few_hours_late_counts_as_one_day():
    loan = make_loan(0)
    assert overdue.days_overdue(loan, NOW + timedelta(hours=2)) == 1


def test_filters_and_annotations():
    loans = [make_loan(-2), make_loan(5), make_loan(-9, returned=True)]

    assert overdue.overdue_only(loans, NOW) == [loans[0]]

    views = overdue.annotate_all(loans, NOW)
    assert [view.is_overdue for view in views] == [True, False, False]
    assert views[0].to_dict()["days_overdue"] == 2


def test_overdue_listing_follows_the_clock(engine, clock):
    engine.checkout("C1", "M1", "desk")
    engine.checkout("C2", "M2", "desk")
    clock.advance(days=10)
    engine.checkout("C3", "M2", "desk")

    assert engine.overdue_loans() == []

    clock.advance(days=5)
    late = engine.overdue_loans()
    assert sorted(view.loan.copy_id for view in late) == ["C1", "C2"]
    assert all(view.days_overdue == 1 for view in late)


def test_member_is_late_when_any_open_loan_is_overdue():
    assert overdue.member_is_late([make_loan(3), make_loan(-1)], NOW) is True
    assert overdue.member_is_late([make_loan(3), make_loan(-5, returned=True)], NOW) is False
    assert overdue.member_is_late([], NOW) is False


def test_copy_is_late_follows_its_open_loan():
    assert overdue.copy_is_late(None, NOW) is False
    assert overdue.copy_is_late(make_loan(1), NOW) is False
    assert overdue.copy_is_late(make_loan(-1), NOW) is True


def test_copy_and_member_late_flags(engine, clock):
    engine.checkout("C1", "M1", "desk")
    assert engine.query_copy_status("C1").is_late is False
    assert engine.member_sheet("CARD-1").is_late is False

    clock.advance(days=15)
    assert engine.query_copy_status("C1").is_late is True
    assert engine.query_copy_status("C2").is_late is False
    sheet = engine.member_sheet("CARD-1")
    assert sheet.is_late is True
    assert sheet.to_dict()["is_late"] is True
    assert engine.member_sheet("CARD-2").is_late is False

    engine.return_copy("C1", "desk")
    assert engine.query_copy_status("C1").is_late is False
    assert engine.member_sheet("CARD-1").is_late is False
