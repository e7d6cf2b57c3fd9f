"""Typed outcomes raised by the circulation engine.

Every business-rule rejection has its own class so callers (the HTTP API,
the CLI, tests) can branch on the type or on the stable ``code`` string.
``PersistenceError`` is kept apart from the business rejections: it means
the durable write failed and nothing was committed.
"""

from __future__ import annotations

from typing import Optional


class CirculationError(Exception):
    """Base class for all engine errors."""

    code = "circulation_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class CopyUnavailable(CirculationError):
    code = "copy_unavailable"

    def __init__(self, copy_id: str) -> None:
        super().__init__(f"Copy {copy_id} is not available for loan.")
        self.copy_id = copy_id


class MembershipExpired(CirculationError):
    code = "membership_expired"

    def __init__(self, member_id: str) -> None:
        super().__init__(f"Membership of member {member_id} is not valid today.")
        self.member_id = member_id


class MemberBanned(CirculationError):
    code = "member_banned"

    def __init__(self, member_id: str, cause: Optional[str]) -> None:
        super().__init__(f"Member {member_id} is banned: {cause or 'no cause recorded'}.")
        self.member_id = member_id
        self.cause = cause

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["cause"] = self.cause
        return payload


class LoanLimitReached(CirculationError):
    code = "loan_limit_reached"

    def __init__(self, member_id: str, limit: int) -> None:
        super().__init__(f"Member {member_id} already holds {limit} open loan(s).")
        self.member_id = member_id
        self.limit = limit


class NoActiveLoan(CirculationError):
    code = "no_active_loan"

    def __init__(self, target: str) -> None:
        super().__init__(f"No active loan for {target}.")
        self.target = target


class RenewalLimitReached(CirculationError):
    code = "renewal_limit_reached"

    def __init__(self, loan_id: str, limit: int) -> None:
        super().__init__(f"Loan {loan_id} has already been renewed {limit} time(s).")
        self.loan_id = loan_id
        self.limit = limit


class LoanOverdue(CirculationError):
    code = "loan_overdue"

    def __init__(self, loan_id: str) -> None:
        super().__init__(f"Loan {loan_id} is overdue and cannot be renewed.")
        self.loan_id = loan_id


class NotFound(CirculationError, LookupError):
    code = "not_found"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"Unknown {kind}: {identifier}.")
        self.kind = kind
        self.identifier = identifier


class InvalidRequest(CirculationError, ValueError):
    code = "invalid_request"


class ConcurrentModification(CirculationError):
    """Another operation changed the record first; the caller should retry."""

    code = "concurrent_modification"


class PersistenceError(CirculationError):
    """The durable write failed; the operation was rolled back."""

    code = "persistence_error"
