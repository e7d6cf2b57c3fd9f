"""Overdue status, derived on every read and never stored.

Everything here is a pure function of its arguments: the same loan and the
same ``now`` always give the same answer.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from circulation.models import Loan, LoanView


def is_overdue(loan: Loan, now: datetime) -> bool:
    """An open loan whose due date has passed. A closed loan is never overdue."""
    return loan.returned_at is None and now > loan.due_at


def days_overdue(loan: Loan, now: datetime) -> int:
    if not is_overdue(loan, now):
        return 0
    return max(1, (now.date() - loan.due_at.date()).days)


def annotate(loan: Loan, now: datetime) -> LoanView:
    return LoanView(loan=loan, is_overdue=is_overdue(loan, now), days_overdue=days_overdue(loan, now))


def annotate_all(loans: Iterable[Loan], now: datetime) -> List[LoanView]:
    return [annotate(loan, now) for loan in loans]


def overdue_only(loans: Iterable[Loan], now: datetime) -> List[Loan]:
    return [loan for loan in loans if is_overdue(loan, now)]


def member_is_late(loans: Iterable[Loan], now: datetime) -> bool:
    """True when any of the member's open loans is overdue."""
    return any(is_overdue(loan, now) for loan in loans)


def copy_is_late(open_loan: Optional[Loan], now: datetime) -> bool:
    """A copy on the shelf is never late; one out on loan follows its loan."""
    return open_loan is not None and is_overdue(open_loan, now)
