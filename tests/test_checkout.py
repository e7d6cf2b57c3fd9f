from datetime import timedelta

import pytest

from circulation.errors import (
    CopyUnavailable,
    LoanLimitReached,
    MemberBanned,
    MembershipExpired,
    NotFound,
)
from circulation.models import CopyState


def test_checkout_creates_loan_and_marks_copy_on_loan(engine, clock):
    result = engine.checkout("C1", "M1", "desk-1")

    assert result.loan_id.startswith("loan_")
    assert result.due_date == clock() + timedelta(days=14)
    assert result.loan.checkout_operator == "desk-1"
    assert result.loan.card_number == "CARD-1"

    status = engine.query_copy_status("C1")
    assert status.state == CopyState.ON_LOAN
    assert status.current_loan.loan.loan_id == result.loan_id
    assert status.current_loan.is_overdue is False


def test_checkout_of_copy_on_loan_is_refused(engine):
    engine.checkout("C1", "M1", "desk")

    with pytest.raises(CopyUnavailable):
        engine.checkout("C1", "M2", "desk")

    assert len(engine.query_member_loans("M2")) == 0


def test_expired_membership_is_refused(engine):
    with pytest.raises(MembershipExpired):
        engine.checkout("C1", "M3", "desk")
    assert engine.query_copy_status("C1").state == CopyState.AVAILABLE


def test_membership_not_yet_started_is_refused(engine, clock):
    clock.advance(days=-30)
    with pytest.raises(MembershipExpired):
        engine.checkout("C1", "M1", "desk")


def test_banned_member_is_refused_with_cause(engine):
    engine.ban("M1", "damaged book", "admin")

    with pytest.raises(MemberBanned) as excinfo:
        engine.checkout("C1", "M1", "desk")

    assert excinfo.value.cause == "damaged book"
    assert excinfo.value.to_dict()["cause"] == "damaged book"


def test_loan_cap_is_enforced(engine):
    for copy_id in ("C1", "C2", "C3"):
        engine.checkout(copy_id, "M1", "desk")

    with pytest.raises(LoanLimitReached):
        engine.checkout("C4", "M1", "desk")

    assert engine.query_copy_status("C4").state == CopyState.AVAILABLE
    assert len(engine.query_member_loans("M1", open_only=True)) == 3


def test_returning_frees_a_slot_under_the_cap(engine):
    for copy_id in ("C1", "C2", "C3"):
        engine.checkout(copy_id, "M1", "desk")
    engine.return_copy("C2", "desk")

    assert engine.checkout("C4", "M1", "desk").loan.copy_id == "C4"


def test_copy_check_runs_before_member_checks(engine):
    engine.checkout("C1", "M1", "desk")
    # M3 is expired too, but the copy being out is reported first
    with pytest.raises(CopyUnavailable):
        engine.checkout("C1", "M3", "desk")


@pytest.mark.parametrize("copy_id, member_id, kind", [
    ("NOPE", "M1", "copy"),
    ("C1", "NOPE", "member"),
])
def test_unknown_ids_raise_not_found(engine, copy_id, member_id, kind):
    with pytest.raises(NotFound) as excinfo:
        engine.checkout(copy_id, member_id, "desk")
    assert excinfo.value.kind == kind


def test_checkout_counts_towards_member_total(engine):
    engine.checkout("C1", "M1", "desk")
    engine.return_copy("C1", "desk")
    engine.checkout("C1", "M1", "desk")

    assert engine.get_member("M1").total_loans == 2
