import logging
from datetime import datetime, timedelta
from typing import Callable

from circulation.audit import AuditLog
from circulation.catalog import CatalogIndex
from circulation.database import transaction
from circulation.errors import (
    CirculationError,
    CopyUnavailable,
    LoanLimitReached,
    MemberBanned,
    MembershipExpired,
    NotFound,
)
from circulation.ledger import CirculationLedger
from circulation.locks import KeyedLocks, copy_key, member_key
from circulation.members import MemberDirectory
from circulation.models import CopyState, Loan, format_ts
from circulation.policy import PolicyStore

logger = logging.getLogger(__name__)


class CheckoutGuard:
    """Validates and executes a checkout.

    The copy and the member are locked together, then the checks run in a
    fixed order inside one write transaction: copy available, membership
    valid, member not banned, member under the loan cap. The new loan, the
    copy state change, the member counter and the audit entry commit as
    one unit.
    """

    def __init__(self, db_file: str, catalog: CatalogIndex, members: MemberDirectory,
                 ledger: CirculationLedger, policies: PolicyStore, audit: AuditLog,
                 locks: KeyedLocks, clock: Callable[[], datetime]) -> None:
        self.db_file = db_file
        self.catalog = catalog
        self.members = members
        self.ledger = ledger
        self.policies = policies
        self.audit = audit
        self.locks = locks
        self.clock = clock

    def checkout(self, copy_id: str, member_id: str, operator_id: str) -> Loan:
        policy = self.policies.current_policy()
        try:
            with self.locks.hold(copy_key(copy_id), member_key(member_id)):
                now = self.clock()
                with transaction(self.db_file) as conn:
                    copy = self.catalog.get_copy(conn, copy_id)
                    if copy is None:
                        raise NotFound("copy", copy_id)
                    if copy.state != CopyState.AVAILABLE:
                        raise CopyUnavailable(copy_id)

                    member = self.members.get(conn, member_id)
                    if member is None:
                        raise NotFound("member", member_id)
                    if not member.membership_valid_on(now.date()):
                        raise MembershipExpired(member_id)
                    if member.banned:
                        raise MemberBanned(member_id, member.ban_cause)

                    if self.ledger.count_open_loans(conn, member_id) >= policy.max_concurrent_loans:
                        raise LoanLimitReached(member_id, policy.max_concurrent_loans)

                    due_at = now + timedelta(days=policy.loan_duration_days)
                    loan = self.ledger.open_loan(conn, copy, member_id, operator_id, now, due_at)
                    self.members.increment_total_loans(conn, member_id)
                    self.audit.record(
                        conn, operator_id, "checkout", f"copy:{copy_id}", now,
                        before={"copy_state": copy.state.value},
                        after={
                            "copy_state": CopyState.ON_LOAN.value,
                            "loan_id": loan.loan_id,
                            "member_id": member_id,
                            "due_at": format_ts(due_at),
                            "policy_version": policy.version,
                        },
                    )
        except CirculationError as exc:
            logger.info("Checkout of %s by %s refused: %s", copy_id, member_id, exc.code)
            raise

        loan.card_number = member.card_number
        loan.member_name = member.name
        logger.info("Copy %s checked out to %s, due %s (loan %s)", copy_id, member_id, due_at.date(), loan.loan_id)
        return loan
