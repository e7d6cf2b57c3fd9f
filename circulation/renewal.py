import logging
from datetime import datetime, timedelta
from typing import Callable, Tuple

from circulation.audit import AuditLog
from circulation.database import transaction
from circulation.errors import (
    CirculationError,
    LoanOverdue,
    MemberBanned,
    NoActiveLoan,
    NotFound,
    RenewalLimitReached,
)
from circulation.ledger import CirculationLedger
from circulation.locks import KeyedLocks, copy_key, loan_key, member_key
from circulation.members import MemberDirectory
from circulation.models import Loan, Policy, format_ts
from circulation.policy import PolicyStore

logger = logging.getLogger(__name__)


class RenewalManager:
    """Pushes the due date of an open loan forward by one loan period.

    The new due date is counted from the current due date, not from now.
    Renewal is refused for closed loans, loans at the renewal cap, loans
    already past due and loans whose borrower is banned.
    """

    def __init__(self, db_file: str, members: MemberDirectory, ledger: CirculationLedger,
                 policies: PolicyStore, audit: AuditLog, locks: KeyedLocks,
                 clock: Callable[[], datetime]) -> None:
        self.db_file = db_file
        self.members = members
        self.ledger = ledger
        self.policies = policies
        self.audit = audit
        self.locks = locks
        self.clock = clock

    def renew(self, loan_id: str, operator_id: str) -> Tuple[Loan, Policy]:
        """Return the renewed loan together with the policy snapshot used."""
        policy = self.policies.current_policy()
        existing = self.ledger.find_loan(loan_id)
        if existing is None:
            logger.info("Renewal of %s refused: not_found", loan_id)
            raise NotFound("loan", loan_id)

        keys = (loan_key(loan_id), copy_key(existing.copy_id), member_key(existing.member_id))
        try:
            with self.locks.hold(*keys):
                now = self.clock()
                with transaction(self.db_file) as conn:
                    loan = self.ledger.get_loan(conn, loan_id)
                    if loan is None:
                        raise NotFound("loan", loan_id)
                    if not loan.is_open:
                        raise NoActiveLoan(f"loan {loan_id}")
                    if loan.renewal_count >= policy.max_renewals:
                        raise RenewalLimitReached(loan_id, policy.max_renewals)
                    if now > loan.due_at:
                        raise LoanOverdue(loan_id)
                    member = self.members.get(conn, loan.member_id)
                    if member is None:
                        raise NotFound("member", loan.member_id)
                    if member.banned:
                        raise MemberBanned(member.member_id, member.ban_cause)

                    previous_due = loan.due_at
                    previous_count = loan.renewal_count
                    new_due = previous_due + timedelta(days=policy.loan_duration_days)
                    loan = self.ledger.extend_loan(conn, loan, new_due)
                    self.audit.record(
                        conn, operator_id, "renew", f"loan:{loan_id}", now,
                        before={"due_at": format_ts(previous_due), "renewal_count": previous_count},
                        after={
                            "due_at": format_ts(new_due),
                            "renewal_count": loan.renewal_count,
                            "policy_version": policy.version,
                        },
                    )
        except CirculationError as exc:
            logger.info("Renewal of %s refused: %s", loan_id, exc.code)
            raise

        logger.info("Loan %s renewed until %s (%s/%s)", loan_id, new_due.date(),
                    loan.renewal_count, policy.max_renewals)
        return loan, policy
