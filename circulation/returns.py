import logging
from datetime import datetime
from typing import Callable

from circulation.audit import AuditLog
from circulation.catalog import CatalogIndex
from circulation.database import connect, transaction
from circulation.errors import CirculationError, NoActiveLoan, NotFound
from circulation.ledger import CirculationLedger
from circulation.locks import KeyedLocks, copy_key, member_key
from circulation.members import MemberDirectory
from circulation.models import CopyState, Loan

logger = logging.getLogger(__name__)


class ReturnProcessor:
    """Closes the open loan of a copy and frees the copy.

    A return is accepted whatever the borrower's ban or membership status:
    refusing it would make the physical item unrecoverable. A second return
    of the same copy finds no open loan and fails with NoActiveLoan rather
    than closing anything twice.
    """

    def __init__(self, db_file: str, catalog: CatalogIndex, members: MemberDirectory,
                 ledger: CirculationLedger, audit: AuditLog, locks: KeyedLocks,
                 clock: Callable[[], datetime]) -> None:
        self.db_file = db_file
        self.catalog = catalog
        self.members = members
        self.ledger = ledger
        self.audit = audit
        self.locks = locks
        self.clock = clock

    def return_copy(self, copy_id: str, operator_id: str) -> Loan:
        try:
            with self.locks.hold(copy_key(copy_id)):
                open_loan = self._open_loan_of(copy_id)
                # "copy:" sorts before "member:", same order as a checkout
                with self.locks.hold(member_key(open_loan.member_id)):
                    loan = self._close(copy_id, operator_id)
        except CirculationError as exc:
            logger.info("Return of %s refused: %s", copy_id, exc.code)
            raise

        logger.info("Copy %s returned (loan %s, late=%s)", copy_id, loan.loan_id, loan.was_late)
        return loan

    def _open_loan_of(self, copy_id: str) -> Loan:
        with connect(self.db_file) as conn:
            if self.catalog.get_copy(conn, copy_id) is None:
                raise NotFound("copy", copy_id)
            loan = self.ledger.find_open_loan(conn, copy_id)
        if loan is None:
            raise NoActiveLoan(f"copy {copy_id}")
        return loan

    def _close(self, copy_id: str, operator_id: str) -> Loan:
        now = self.clock()
        with transaction(self.db_file) as conn:
            copy = self.catalog.get_copy(conn, copy_id)
            loan = self.ledger.find_open_loan(conn, copy_id)
            if copy is None or loan is None:
                raise NoActiveLoan(f"copy {copy_id}")

            loan = self.ledger.close_loan(conn, loan, copy, operator_id, now)
            if loan.was_late:
                # reporting signal only, banning stays a manual decision
                self.members.increment_late_returns(conn, loan.member_id)
            self.audit.record(
                conn, operator_id, "return", f"copy:{copy_id}", now,
                before={"copy_state": copy.state.value, "loan_id": loan.loan_id},
                after={
                    "copy_state": CopyState.AVAILABLE.value,
                    "member_id": loan.member_id,
                    "was_late": loan.was_late,
                },
            )
        return loan
