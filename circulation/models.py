from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Store timestamps as fixed-width UTC ISO strings so they sort lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_day(raw) -> date:
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(raw)


class CopyState(str, Enum):
    AVAILABLE = "available"
    ON_LOAN = "on_loan"


class Book:
    """A title in the catalog; copies point at it by ISBN."""

    def __init__(self, isbn: str, title: str, author: str = "") -> None:
        self.isbn = isbn.strip()
        self.title = title.strip()
        self.author = author.strip()

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {"isbn": self.isbn, "title": self.title, "author": self.author}

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(isbn=data["isbn"], title=data["title"], author=data.get("author") or "")


class Copy:
    """One physical, individually trackable copy of a title."""

    def __init__(self, copy_id: str, isbn: str, state: CopyState = CopyState.AVAILABLE,
                 version: int = 0, title: str | None = None) -> None:
        self.copy_id = copy_id
        self.isbn = isbn
        self.state = CopyState(state)
        self.version = version
        self.title = title

    def to_dict(self) -> dict:
        return {
            "copy_id": self.copy_id,
            "isbn": self.isbn,
            "title": self.title,
            "state": self.state.value,
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: dict) -> "Copy":
        return Copy(
            copy_id=data["copy_id"],
            isbn=data["isbn"],
            state=CopyState(data["state"]),
            version=int(data.get("version") or 0),
            title=data.get("title"),
        )


class Member:
    """An adherent: identity, membership window, ban status and lifetime counters."""

    def __init__(self, member_id: str, card_number: str, name: str,
                 membership_start: date, membership_end: date,
                 banned: bool = False, ban_cause: str | None = None,
                 banned_at: datetime | None = None,
                 total_loans: int = 0, late_return_count: int = 0) -> None:
        self.member_id = member_id
        self.card_number = card_number.strip()
        self.name = name.strip()
        self.membership_start = parse_day(membership_start)
        self.membership_end = parse_day(membership_end)
        self.banned = bool(banned)
        self.ban_cause = ban_cause
        self.banned_at = banned_at
        self.total_loans = total_loans
        self.late_return_count = late_return_count

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} (card {self.card_number})"

    def membership_valid_on(self, day: date) -> bool:
        return self.membership_start <= day <= self.membership_end

    def to_dict(self) -> dict:
        return {
            "member_id": self.member_id,
            "card_number": self.card_number,
            "name": self.name,
            "membership_start": self.membership_start.isoformat(),
            "membership_end": self.membership_end.isoformat(),
            "banned": self.banned,
            "ban_cause": self.ban_cause,
            "banned_at": format_ts(self.banned_at),
            "total_loans": self.total_loans,
            "late_return_count": self.late_return_count,
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        return Member(
            member_id=data["member_id"],
            card_number=data["card_number"],
            name=data["name"],
            membership_start=parse_day(data["membership_start"]),
            membership_end=parse_day(data["membership_end"]),
            banned=bool(data.get("banned")),
            ban_cause=data.get("ban_cause"),
            banned_at=parse_ts(data.get("banned_at")),
            total_loans=int(data.get("total_loans") or 0),
            late_return_count=int(data.get("late_return_count") or 0),
        )


class Loan:
    """A record of one copy held by one member between checkout and return.

    ``title``, ``isbn``, ``card_number`` and ``member_name`` are display fields
    filled in by listing queries; they are not part of the stored record.
    """

    def __init__(self, loan_id: str, copy_id: str, member_id: str,
                 checkout_at: datetime, due_at: datetime,
                 returned_at: datetime | None = None, renewal_count: int = 0,
                 checkout_operator: str = "", return_operator: str | None = None,
                 was_late: bool | None = None,
                 title: str | None = None, isbn: str | None = None,
                 card_number: str | None = None, member_name: str | None = None) -> None:
        self.loan_id = loan_id
        self.copy_id = copy_id
        self.member_id = member_id
        self.checkout_at = checkout_at
        self.due_at = due_at
        self.returned_at = returned_at
        self.renewal_count = renewal_count
        self.checkout_operator = checkout_operator
        self.return_operator = return_operator
        self.was_late = was_late
        self.title = title
        self.isbn = isbn
        self.card_number = card_number
        self.member_name = member_name

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def to_dict(self) -> dict:
        return {
            "loan_id": self.loan_id,
            "copy_id": self.copy_id,
            "member_id": self.member_id,
            "checkout_at": format_ts(self.checkout_at),
            "due_at": format_ts(self.due_at),
            "returned_at": format_ts(self.returned_at),
            "renewal_count": self.renewal_count,
            "checkout_operator": self.checkout_operator,
            "return_operator": self.return_operator,
            "was_late": self.was_late,
            "title": self.title,
            "isbn": self.isbn,
            "card_number": self.card_number,
            "member_name": self.member_name,
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        was_late = data.get("was_late")
        return Loan(
            loan_id=data["loan_id"],
            copy_id=data["copy_id"],
            member_id=data["member_id"],
            checkout_at=parse_ts(data["checkout_at"]),
            due_at=parse_ts(data["due_at"]),
            returned_at=parse_ts(data.get("returned_at")),
            renewal_count=int(data.get("renewal_count") or 0),
            checkout_operator=data.get("checkout_operator") or "",
            return_operator=data.get("return_operator"),
            was_late=None if was_late is None else bool(was_late),
            title=data.get("title"),
            isbn=data.get("isbn"),
            card_number=data.get("card_number"),
            member_name=data.get("member_name"),
        )


@dataclass(frozen=True)
class Policy:
    """Immutable snapshot of the loan policy taken at the start of an operation."""

    loan_duration_days: int
    max_renewals: int
    max_concurrent_loans: int
    version: int = 1
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def validate(self) -> None:
        if self.loan_duration_days < 1:
            raise ValueError("Loan duration must be at least one day.")
        if self.max_renewals < 0:
            raise ValueError("Max renewals cannot be negative.")
        if self.max_concurrent_loans < 1:
            raise ValueError("Max concurrent loans must be at least one.")

    def to_dict(self) -> dict:
        return {
            "loan_duration_days": self.loan_duration_days,
            "max_renewals": self.max_renewals,
            "max_concurrent_loans": self.max_concurrent_loans,
            "version": self.version,
            "updated_at": format_ts(self.updated_at),
            "updated_by": self.updated_by,
        }


class AuditEntry:
    def __init__(self, entry_id: int, created_at: datetime, actor: str, action: str,
                 target: str, before: dict | None = None, after: dict | None = None) -> None:
        self.entry_id = entry_id
        self.created_at = created_at
        self.actor = actor
        self.action = action
        self.target = target
        self.before = before or {}
        self.after = after or {}

    def to_dict(self) -> dict:
        return {
            "id": self.entry_id,
            "timestamp": format_ts(self.created_at),
            "actor": self.actor,
            "action": self.action,
            "target": self.target,
            "before": self.before,
            "after": self.after,
        }


# --- Operation results ---

@dataclass
class CheckoutResult:
    loan_id: str
    due_date: datetime
    loan: Loan


@dataclass
class ReturnResult:
    loan_id: str
    was_late: bool
    loan: Loan


@dataclass
class RenewResult:
    new_due_date: datetime
    renewals_remaining: int
    loan: Loan


@dataclass
class Ack:
    member_id: str
    action: str
    changed: bool = True
    ok: bool = True


@dataclass
class LoanView:
    """A loan annotated with its overdue flag, computed at read time."""

    loan: Loan
    is_overdue: bool
    days_overdue: int = 0

    def to_dict(self) -> dict:
        payload = self.loan.to_dict()
        payload["is_overdue"] = self.is_overdue
        payload["days_overdue"] = self.days_overdue
        return payload


@dataclass
class CopyStatus:
    copy: Copy
    current_loan: Optional[LoanView] = None
    is_late: bool = False

    @property
    def state(self) -> CopyState:
        return self.copy.state

    def to_dict(self) -> dict:
        return {
            "copy_id": self.copy.copy_id,
            "isbn": self.copy.isbn,
            "title": self.copy.title,
            "state": self.copy.state.value,
            "current_loan": self.current_loan.to_dict() if self.current_loan else None,
            "is_late": self.is_late,
        }


@dataclass
class MemberSheet:
    """What the circulation desk sees after scanning a member card."""

    member: Member
    membership_valid: bool
    open_loans: List[LoanView] = field(default_factory=list)
    can_borrow: bool = False
    is_late: bool = False

    @property
    def overdue_loans(self) -> List[LoanView]:
        return [view for view in self.open_loans if view.is_overdue]

    def to_dict(self) -> dict:
        payload = self.member.to_dict()
        payload.update({
            "membership_valid": self.membership_valid,
            "open_loans": [view.to_dict() for view in self.open_loans],
            "overdue_loans": [view.to_dict() for view in self.overdue_loans],
            "can_borrow": self.can_borrow,
            "is_late": self.is_late,
        })
        return payload
