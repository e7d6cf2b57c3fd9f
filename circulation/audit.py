"""Audit trail of circulation mutations.

One row per committed checkout, return, renewal, ban, unban or policy
change. The row is written on the same connection, inside the same
transaction, as the mutation it describes: if the mutation rolls back, so
does its audit entry.
"""

import json
import logging
import sqlite3
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from circulation.database import connect
from circulation.errors import InvalidRequest
from circulation.models import AuditEntry, format_ts, parse_ts

logger = logging.getLogger(__name__)

ACTIONS = ("checkout", "return", "renew", "ban", "unban", "policy_update")


def _row_to_entry(row: sqlite3.Row) -> AuditEntry:
    return AuditEntry(
        entry_id=row["id"],
        created_at=parse_ts(row["created_at"]),
        actor=row["actor"],
        action=row["action"],
        target=row["target"],
        before=json.loads(row["before_state"]) if row["before_state"] else {},
        after=json.loads(row["after_state"]) if row["after_state"] else {},
    )


def _day_bounds(day: date) -> tuple:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return format_ts(start), format_ts(start + timedelta(days=1))


class AuditLog:
    def __init__(self, db_file: str, max_page_size: int = 100) -> None:
        self.db_file = db_file
        self.max_page_size = max_page_size

    def record(self, conn: sqlite3.Connection, actor: str, action: str, target: str,
               when: datetime, before: Optional[dict] = None, after: Optional[dict] = None) -> None:
        conn.execute(
            """
            INSERT INTO audit_log (created_at, actor, action, target, before_state, after_state)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                format_ts(when), actor, action, target,
                json.dumps(before or {}, default=str, sort_keys=True),
                json.dumps(after or {}, default=str, sort_keys=True),
            ),
        )
        logger.debug("audit entry staged: %s %s %s", actor, action, target)

    # ------------------------- Log viewer queries ------------------------- #
    def recent(self, limit: int = 15) -> List[AuditEntry]:
        return self.search(limit=limit)

    def for_date(self, day: date, limit: Optional[int] = None) -> List[AuditEntry]:
        start, end = _day_bounds(day)
        return self.search(start=start, end=end, limit=limit or self.max_page_size)

    def search(self, *, action: Optional[str] = None, actor: Optional[str] = None,
               start: Optional[str] = None, end: Optional[str] = None,
               query: Optional[str] = None, limit: int = 15, offset: int = 0) -> List[AuditEntry]:
        """Newest-first search; ``start`` is inclusive, ``end`` exclusive (ISO timestamps)."""
        if action and action not in ACTIONS:
            raise InvalidRequest(f"Unknown action {action}. Allowed: {', '.join(ACTIONS)}")
        clauses = []
        params: list = []
        if action:
            clauses.append("action = ?")
            params.append(action)
        if actor:
            clauses.append("actor LIKE ?")
            params.append(f"%{actor}%")
        if start:
            clauses.append("created_at >= ?")
            params.append(start)
        if end:
            clauses.append("created_at < ?")
            params.append(end)
        if query:
            clauses.append("(target LIKE ? OR before_state LIKE ? OR after_state LIKE ?)")
            params.extend([f"%{query}%"] * 3)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit = max(1, min(limit, self.max_page_size))
        params.extend([limit, max(0, offset)])
        with connect(self.db_file) as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def count(self, action: Optional[str] = None) -> int:
        with connect(self.db_file) as conn:
            if action:
                row = conn.execute("SELECT COUNT(*) FROM audit_log WHERE action = ?", (action,)).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()
        return row[0]
