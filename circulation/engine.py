import logging
from datetime import date, datetime
from typing import Callable, List, Optional

from config import settings
from circulation.audit import AuditLog
from circulation.bans import BanManager
from circulation.catalog import CatalogIndex
from circulation.checkout import CheckoutGuard
from circulation.database import connect, initialize_database
from circulation.errors import NotFound
from circulation.ledger import CirculationLedger
from circulation.locks import KeyedLocks
from circulation.members import MemberDirectory
from circulation.models import (
    Ack,
    AuditEntry,
    Book,
    CheckoutResult,
    Copy,
    CopyStatus,
    LoanView,
    Member,
    MemberSheet,
    Policy,
    RenewResult,
    ReturnResult,
    utc_now,
)
from circulation import overdue
from circulation.policy import PolicyStore
from circulation.renewal import RenewalManager
from circulation.returns import ReturnProcessor

logger = logging.getLogger(__name__)


def default_policy() -> Policy:
    return Policy(
        loan_duration_days=settings.default_loan_duration_days,
        max_renewals=settings.default_max_renewals,
        max_concurrent_loans=settings.default_max_concurrent_loans,
    )


class CirculationEngine:
    """Facade over the circulation components.

    This is the only entry point the HTTP API and the CLI use. Mutating
    operations raise a ``CirculationError`` subclass when a rule refuses
    them; queries compute overdue flags at read time with the engine clock.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None,
                 lock_timeout: Optional[float] = None, policy_defaults: Optional[Policy] = None) -> None:
        self.db_file = initialize_database(db_file)
        self.clock = clock or utc_now
        self.locks = KeyedLocks(settings.lock_timeout_seconds if lock_timeout is None else lock_timeout)

        self.audit = AuditLog(self.db_file, max_page_size=settings.max_page_size)
        self.catalog = CatalogIndex(self.db_file)
        self.members = MemberDirectory(self.db_file)
        self.ledger = CirculationLedger(self.db_file)
        self.policies = PolicyStore(self.db_file, self.audit, self.clock, policy_defaults or default_policy())

        self.checkout_guard = CheckoutGuard(
            self.db_file, self.catalog, self.members, self.ledger, self.policies,
            self.audit, self.locks, self.clock,
        )
        self.return_processor = ReturnProcessor(
            self.db_file, self.catalog, self.members, self.ledger, self.audit, self.locks, self.clock,
        )
        self.renewal_manager = RenewalManager(
            self.db_file, self.members, self.ledger, self.policies, self.audit, self.locks, self.clock,
        )
        self.ban_manager = BanManager(self.db_file, self.members, self.audit, self.locks, self.clock)
        logger.debug("Circulation engine ready on %s", self.db_file)

    # ------------------------- Circulation operations ------------------------- #
    def checkout(self, copy_id: str, member_id: str, operator_id: str) -> CheckoutResult:
        loan = self.checkout_guard.checkout(copy_id, member_id, operator_id)
        return CheckoutResult(loan_id=loan.loan_id, due_date=loan.due_at, loan=loan)

    def return_copy(self, copy_id: str, operator_id: str) -> ReturnResult:
        loan = self.return_processor.return_copy(copy_id, operator_id)
        return ReturnResult(loan_id=loan.loan_id, was_late=bool(loan.was_late), loan=loan)

    def renew(self, loan_id: str, operator_id: str) -> RenewResult:
        loan, policy = self.renewal_manager.renew(loan_id, operator_id)
        return RenewResult(
            new_due_date=loan.due_at,
            renewals_remaining=max(0, policy.max_renewals - loan.renewal_count),
            loan=loan,
        )

    def ban(self, member_id: str, cause: str, operator_id: str) -> Ack:
        return self.ban_manager.ban(member_id, cause, operator_id)

    def unban(self, member_id: str, operator_id: str) -> Ack:
        return self.ban_manager.unban(member_id, operator_id)

    # ------------------------- Queries ------------------------- #
    def query_member_loans(self, member_id: str, open_only: bool = False) -> List[LoanView]:
        now = self.clock()
        with connect(self.db_file) as conn:
            if self.members.get(conn, member_id) is None:
                raise NotFound("member", member_id)
            loans = self.ledger.member_loans(conn, member_id, open_only=open_only)
        return overdue.annotate_all(loans, now)

    def query_copy_status(self, copy_id: str) -> CopyStatus:
        now = self.clock()
        with connect(self.db_file) as conn:
            copy = self.catalog.get_copy(conn, copy_id)
            if copy is None:
                raise NotFound("copy", copy_id)
            loan = self.ledger.find_open_loan(conn, copy_id)
        return CopyStatus(
            copy=copy,
            current_loan=overdue.annotate(loan, now) if loan else None,
            is_late=overdue.copy_is_late(loan, now),
        )

    def member_sheet(self, card_number: str) -> MemberSheet:
        """Member lookup by card number, as the circulation desk does before a checkout."""
        member = self.members.find_by_card(card_number)
        if member is None:
            raise NotFound("card", card_number)
        policy = self.policies.current_policy()
        now = self.clock()
        with connect(self.db_file) as conn:
            loans = self.ledger.member_loans(conn, member.member_id, open_only=True)
        valid = member.membership_valid_on(now.date())
        return MemberSheet(
            member=member,
            membership_valid=valid,
            open_loans=overdue.annotate_all(loans, now),
            can_borrow=valid and not member.banned and len(loans) < policy.max_concurrent_loans,
            is_late=overdue.member_is_late(loans, now),
        )

    def list_loans(self, status: str = "all", search: Optional[str] = None,
                   limit: Optional[int] = None, offset: int = 0) -> List[LoanView]:
        now = self.clock()
        loans = self.ledger.list_loans(status=status, search=search)
        if status == "overdue":
            loans = overdue.overdue_only(loans, now)
        limit = min(limit or settings.default_page_size, settings.max_page_size)
        offset = max(0, offset)
        return overdue.annotate_all(loans[offset:offset + limit], now)

    def overdue_loans(self) -> List[LoanView]:
        now = self.clock()
        return overdue.annotate_all(overdue.overdue_only(self.ledger.list_loans(status="open"), now), now)

    def return_info(self, isbn: str) -> List[LoanView]:
        """Copies of a title currently out, for the return-by-ISBN desk flow."""
        if self.catalog.find_book(isbn) is None:
            raise NotFound("book", isbn)
        return overdue.annotate_all(self.ledger.open_loans_for_isbn(isbn), self.clock())

    # ------------------------- Policy ------------------------- #
    def current_policy(self) -> Policy:
        return self.policies.current_policy()

    def update_policy(self, operator_id: str, **values) -> Policy:
        return self.policies.update_policy(operator_id, **values)

    # ------------------------- Audit log ------------------------- #
    def audit_recent(self, limit: int = 15) -> List[AuditEntry]:
        return self.audit.recent(limit)

    def audit_for_date(self, day: date) -> List[AuditEntry]:
        return self.audit.for_date(day)

    def audit_search(self, **criteria) -> List[AuditEntry]:
        return self.audit.search(**criteria)

    # ------------------------- Provisioning hooks ------------------------- #
    def register_book(self, isbn: str, title: str, author: str = "") -> Book:
        return self.catalog.register_book(Book(isbn=isbn, title=title, author=author))

    def register_copy(self, copy_id: str, isbn: str) -> Copy:
        return self.catalog.register_copy(copy_id, isbn)

    def register_member(self, member_id: str, card_number: str, name: str,
                        membership_start: date, membership_end: date) -> Member:
        return self.members.register_member(member_id, card_number, name, membership_start, membership_end)

    def get_member(self, member_id: str) -> Member:
        member = self.members.find(member_id)
        if member is None:
            raise NotFound("member", member_id)
        return member

    def check_consistency(self) -> List[str]:
        """Copy ids whose availability disagrees with the ledger (expected: none)."""
        return self.ledger.inconsistent_copies()

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
