import pytest

from circulation.errors import NoActiveLoan, NotFound
from circulation.models import CopyState


def test_return_closes_loan_and_frees_copy(engine, clock):
    loan_id = engine.checkout("C1", "M1", "desk-1").loan_id
    clock.advance(days=3)

    result = engine.return_copy("C1", "desk-2")

    assert result.loan_id == loan_id
    assert result.was_late is False
    assert result.loan.returned_at == clock()
    assert result.loan.return_operator == "desk-2"
    assert engine.query_copy_status("C1").state == CopyState.AVAILABLE
    assert engine.query_copy_status("C1").current_loan is None


def test_late_return_is_flagged_and_counted(engine, clock):
    engine.checkout("C1", "M1", "desk")
    clock.advance(days=15)

    result = engine.return_copy("C1", "desk")

    assert result.was_late is True
    member = engine.get_member("M1")
    assert member.late_return_count == 1
    # late returns never ban on their own
    assert member.banned is False


def test_return_exactly_at_due_date_is_on_time(engine, clock):
    engine.checkout("C1", "M1", "desk")
    clock.advance(days=14)

    assert engine.return_copy("C1", "desk").was_late is False


def test_second_return_fails_without_touching_the_ledger(engine):
    engine.checkout("C1", "M1", "desk")
    engine.return_copy("C1", "desk")

    with pytest.raises(NoActiveLoan):
        engine.return_copy("C1", "desk")

    loans = engine.query_member_loans("M1")
    assert len(loans) == 1
    assert loans[0].loan.returned_at is not None


def test_return_of_copy_never_lent(engine):
    with pytest.raises(NoActiveLoan):
        engine.return_copy("C2", "desk")


def test_return_of_unknown_copy(engine):
    with pytest.raises(NotFound):
        engine.return_copy("ghost", "desk")


def test_return_is_accepted_after_membership_lapses(engine, clock):
    engine.checkout("C1", "M1", "desk")
    clock.advance(days=365)

    result = engine.return_copy("C1", "desk")

    assert result.was_late is True
    assert engine.query_copy_status("C1").state == CopyState.AVAILABLE
