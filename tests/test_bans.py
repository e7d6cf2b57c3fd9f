import pytest

from circulation.errors import InvalidRequest, NotFound


def test_ban_and_unban(engine):
    ack = engine.ban("M1", "lost book", "admin")
    assert ack.ok and ack.changed and ack.action == "ban"

    member = engine.get_member("M1")
    assert member.banned is True
    assert member.ban_cause == "lost book"
    assert member.banned_at is not None

    engine.unban("M1", "admin")
    member = engine.get_member("M1")
    assert member.banned is False
    assert member.ban_cause is None


def test_ban_keeps_open_loans(engine):
    engine.checkout("C1", "M1", "desk")
    engine.ban("M1", "lost book", "admin")

    loans = engine.query_member_loans("M1", open_only=True)
    assert [view.loan.copy_id for view in loans] == ["C1"]


def test_ban_again_replaces_cause(engine):
    engine.ban("M1", "first", "admin")
    engine.ban("M1", "second", "admin")

    assert engine.get_member("M1").ban_cause == "second"


def test_unban_of_member_not_banned_is_a_no_op(engine):
    ack = engine.unban("M2", "admin")

    assert ack.ok is True
    assert ack.changed is False
    assert engine.audit_search(action="unban") == []


def test_ban_requires_a_cause(engine):
    with pytest.raises(InvalidRequest):
        engine.ban("M1", "   ", "admin")
    assert engine.get_member("M1").banned is False


def test_unknown_member(engine):
    with pytest.raises(NotFound):
        engine.ban("ghost", "whatever", "admin")
    with pytest.raises(NotFound):
        engine.unban("ghost", "admin")


def test_unbanned_member_can_borrow_again(engine):
    engine.ban("M1", "lost book", "admin")
    engine.unban("M1", "admin")

    assert engine.checkout("C1", "M1", "desk").loan.member_id == "M1"
