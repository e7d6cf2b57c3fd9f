import logging
import sqlite3
import threading
from datetime import datetime
from typing import Callable, Optional

from circulation.audit import AuditLog
from circulation.database import connect, transaction
from circulation.errors import ConcurrentModification, InvalidRequest, PersistenceError
from circulation.models import Policy, format_ts, parse_ts

logger = logging.getLogger(__name__)


def _row_to_policy(row: sqlite3.Row) -> Policy:
    return Policy(
        loan_duration_days=row["loan_duration_days"],
        max_renewals=row["max_renewals"],
        max_concurrent_loans=row["max_concurrent_loans"],
        version=row["version"],
        updated_at=parse_ts(row["updated_at"]),
        updated_by=row["updated_by"],
    )


class PolicyStore:
    """Versioned read model of the loan policy.

    The policy lives in a single database row. ``current_policy`` always
    returns a fresh immutable snapshot; operations read it once and never
    look at the row again, so a concurrent update cannot change the rules
    halfway through a checkout or renewal.
    """

    def __init__(self, db_file: str, audit: AuditLog, clock: Callable[[], datetime],
                 defaults: Policy) -> None:
        self.db_file = db_file
        self.audit = audit
        self.clock = clock
        self._update_lock = threading.Lock()
        defaults.validate()
        self._seed(defaults)

    def _seed(self, defaults: Policy) -> None:
        with transaction(self.db_file) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO loan_policy
                    (id, loan_duration_days, max_renewals, max_concurrent_loans, version, updated_at, updated_by)
                VALUES (1, ?, ?, ?, 1, ?, 'system')
                """,
                (defaults.loan_duration_days, defaults.max_renewals,
                 defaults.max_concurrent_loans, format_ts(self.clock())),
            )

    def current_policy(self) -> Policy:
        with connect(self.db_file) as conn:
            row = conn.execute("SELECT * FROM loan_policy WHERE id = 1").fetchone()
        if row is None:
            raise PersistenceError("Loan policy row is missing.")
        return _row_to_policy(row)

    def update_policy(self, operator_id: str, *, loan_duration_days: Optional[int] = None,
                      max_renewals: Optional[int] = None,
                      max_concurrent_loans: Optional[int] = None) -> Policy:
        """Change one or more policy values and bump the version."""
        if loan_duration_days is None and max_renewals is None and max_concurrent_loans is None:
            raise InvalidRequest("Nothing to update. Provide at least one policy value.")

        with self._update_lock, transaction(self.db_file) as conn:
            row = conn.execute("SELECT * FROM loan_policy WHERE id = 1").fetchone()
            before = _row_to_policy(row)
            now = self.clock()
            after = Policy(
                loan_duration_days=before.loan_duration_days if loan_duration_days is None else loan_duration_days,
                max_renewals=before.max_renewals if max_renewals is None else max_renewals,
                max_concurrent_loans=before.max_concurrent_loans if max_concurrent_loans is None else max_concurrent_loans,
                version=before.version + 1,
                updated_at=now,
                updated_by=operator_id,
            )
            try:
                after.validate()
            except ValueError as exc:
                raise InvalidRequest(str(exc)) from exc

            cursor = conn.execute(
                """
                UPDATE loan_policy
                SET loan_duration_days = ?, max_renewals = ?, max_concurrent_loans = ?,
                    version = ?, updated_at = ?, updated_by = ?
                WHERE id = 1 AND version = ?
                """,
                (after.loan_duration_days, after.max_renewals, after.max_concurrent_loans,
                 after.version, format_ts(now), operator_id, before.version),
            )
            if cursor.rowcount != 1:
                raise ConcurrentModification("Loan policy changed during update, retry.")
            self.audit.record(
                conn, operator_id, "policy_update", "policy", now,
                before=_policy_fields(before), after=_policy_fields(after),
            )

        logger.info("Loan policy v%s saved by %s", after.version, operator_id)
        return after


def _policy_fields(policy: Policy) -> dict:
    return {
        "loan_duration_days": policy.loan_duration_days,
        "max_renewals": policy.max_renewals,
        "max_concurrent_loans": policy.max_concurrent_loans,
        "version": policy.version,
    }
