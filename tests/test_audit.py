from datetime import date, timedelta

import pytest

from circulation.errors import CirculationError, InvalidRequest
from circulation.models import format_ts


def test_every_mutation_writes_one_entry(engine):
    loan_id = engine.checkout("C1", "M1", "desk-1").loan_id
    engine.renew(loan_id, "desk-2")
    engine.return_copy("C1", "desk-3")
    engine.ban("M2", "lost book", "admin")
    engine.unban("M2", "admin")
    engine.update_policy("admin", max_renewals=3)

    for action in ("checkout", "renew", "return", "ban", "unban", "policy_update"):
        assert engine.audit.count(action) == 1, action
    assert engine.audit.count() == 6


def test_refused_operations_are_not_audited(engine):
    engine.checkout("C1", "M1", "desk")
    with pytest.raises(CirculationError):
        engine.checkout("C1", "M2", "desk")
    with pytest.raises(CirculationError):
        engine.checkout("C2", "M3", "desk")
    with pytest.raises(CirculationError):
        engine.return_copy("C5", "desk")

    assert engine.audit.count() == 1


def test_checkout_entry_content(engine, clock):
    result = engine.checkout("C1", "M1", "desk-1")

    entry = engine.audit_recent(1)[0]
    assert entry.actor == "desk-1"
    assert entry.action == "checkout"
    assert entry.target == "copy:C1"
    assert entry.created_at == clock()
    assert entry.before == {"copy_state": "available"}
    assert entry.after["copy_state"] == "on_loan"
    assert entry.after["loan_id"] == result.loan_id
    assert entry.after["member_id"] == "M1"
    assert entry.after["due_at"] == format_ts(result.due_date)
    assert "T09:00:00" in entry.after["due_at"]


def test_renew_entry_records_iso_due_dates(engine):
    checkout = engine.checkout("C1", "M1", "desk")
    renewed = engine.renew(checkout.loan_id, "desk-2")

    entry = engine.audit_search(action="renew")[0]
    assert entry.target == f"loan:{checkout.loan_id}"
    assert entry.before == {"due_at": format_ts(checkout.due_date), "renewal_count": 0}
    assert entry.after["due_at"] == format_ts(renewed.new_due_date)
    assert entry.after["renewal_count"] == 1


def test_policy_update_entry_holds_before_and_after(engine):
    engine.update_policy("admin", loan_duration_days=21)

    entry = engine.audit_search(action="policy_update")[0]
    assert entry.target == "policy"
    assert entry.before["loan_duration_days"] == 14
    assert entry.after["loan_duration_days"] == 21
    assert entry.after["version"] == entry.before["version"] + 1


def test_recent_is_newest_first(engine, clock):
    engine.checkout("C1", "M1", "desk")
    clock.advance(hours=1)
    engine.return_copy("C1", "desk")

    actions = [entry.action for entry in engine.audit_recent()]
    assert actions == ["return", "checkout"]


def test_entries_by_day_and_search(engine, clock):
    engine.checkout("C1", "M1", "alice")
    clock.advance(days=1)
    engine.checkout("C2", "M2", "bob")
    engine.ban("M3", "lost book", "bob")

    today = clock().date()
    assert [e.target for e in engine.audit_for_date(today - timedelta(days=1))] == ["copy:C1"]
    assert len(engine.audit_for_date(today)) == 2
    assert engine.audit_for_date(date(2030, 1, 1)) == []

    assert [e.action for e in engine.audit_search(actor="bo")] == ["ban", "checkout"]
    assert [e.target for e in engine.audit_search(query="M3")] == ["member:M3"]
    assert len(engine.audit_search(start=format_ts(clock()))) == 2
    assert len(engine.audit_search(end=format_ts(clock()))) == 1


def test_search_pagination(engine):
    for copy_id in ("C1", "C2", "C3"):
        engine.checkout(copy_id, "M1", "desk")
        engine.return_copy(copy_id, "desk")

    first = engine.audit_search(limit=4)
    rest = engine.audit_search(limit=4, offset=4)
    assert len(first) == 4
    assert len(rest) == 2
    assert {e.entry_id for e in first}.isdisjoint({e.entry_id for e in rest})


def test_entry_serialisation(engine):
    engine.ban("M1", "lost book", "admin")

    payload = engine.audit_recent(1)[0].to_dict()
    assert set(payload) == {"id", "timestamp", "actor", "action", "target", "before", "after"}
    assert payload["timestamp"].startswith("2025-01-06T09:00:00")


def test_search_rejects_unknown_action(engine):
    with pytest.raises(InvalidRequest):
        engine.audit_search(action="delete")
