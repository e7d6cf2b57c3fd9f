"""The circulation ledger: single source of truth for loans and copy availability.

Every transition is a compare-and-swap on the row it changes. Callers run
the methods that take a ``conn`` inside ``database.transaction`` so the
loan write and the copy write commit together or not at all. A zero row
count means someone else moved the record first and surfaces as
``ConcurrentModification``.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional

from circulation.database import connect
from circulation.errors import ConcurrentModification, InvalidRequest
from circulation.models import Copy, CopyState, Loan, format_ts

logger = logging.getLogger(__name__)

LOAN_STATUSES = ("all", "open", "overdue", "returned")

_LOAN_SELECT = """
    SELECT l.*, c.isbn AS isbn, b.title AS title, m.card_number AS card_number, m.name AS member_name
    FROM loans l
    JOIN copies c ON c.copy_id = l.copy_id
    JOIN books b ON b.isbn = c.isbn
    JOIN members m ON m.member_id = l.member_id
"""


def _new_loan_id() -> str:
    return f"loan_{uuid.uuid4().hex[:12]}"


def _rows_to_loans(rows) -> List[Loan]:
    return [Loan.from_dict(dict(row)) for row in rows]


class CirculationLedger:
    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    # ------------------------- Reads ------------------------- #
    def get_loan(self, conn: sqlite3.Connection, loan_id: str) -> Optional[Loan]:
        row = conn.execute(_LOAN_SELECT + " WHERE l.loan_id = ?", (loan_id,)).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def find_loan(self, loan_id: str) -> Optional[Loan]:
        with connect(self.db_file) as conn:
            return self.get_loan(conn, loan_id)

    def find_open_loan(self, conn: sqlite3.Connection, copy_id: str) -> Optional[Loan]:
        row = conn.execute(
            _LOAN_SELECT + " WHERE l.copy_id = ? AND l.returned_at IS NULL", (copy_id,)
        ).fetchone()
        return Loan.from_dict(dict(row)) if row else None

    def count_open_loans(self, conn: sqlite3.Connection, member_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) FROM loans WHERE member_id = ? AND returned_at IS NULL", (member_id,)
        ).fetchone()
        return row[0]

    def member_loans(self, conn: sqlite3.Connection, member_id: str, open_only: bool = False) -> List[Loan]:
        sql = _LOAN_SELECT + " WHERE l.member_id = ?"
        if open_only:
            sql += " AND l.returned_at IS NULL"
        rows = conn.execute(sql + " ORDER BY l.checkout_at DESC", (member_id,)).fetchall()
        return _rows_to_loans(rows)

    def open_loans_for_isbn(self, isbn: str) -> List[Loan]:
        with connect(self.db_file) as conn:
            rows = conn.execute(
                _LOAN_SELECT + " WHERE c.isbn = ? AND l.returned_at IS NULL ORDER BY l.due_at",
                (isbn,),
            ).fetchall()
        return _rows_to_loans(rows)

    def list_loans(self, status: str = "all", search: Optional[str] = None) -> List[Loan]:
        """Loans newest first. ``overdue`` is not a stored status: callers narrow
        the ``open`` set with the overdue calculator."""
        if status not in LOAN_STATUSES:
            raise InvalidRequest(f"Invalid status. Allowed: {', '.join(LOAN_STATUSES)}")
        clauses = []
        params: list = []
        if status in ("open", "overdue"):
            clauses.append("l.returned_at IS NULL")
        elif status == "returned":
            clauses.append("l.returned_at IS NOT NULL")
        if search:
            term = f"%{search.strip().lower()}%"
            clauses.append(
                "(LOWER(b.title) LIKE ? OR LOWER(m.card_number) LIKE ? "
                "OR LOWER(l.checkout_operator) LIKE ? OR LOWER(l.copy_id) LIKE ?)"
            )
            params.extend([term] * 4)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with connect(self.db_file) as conn:
            rows = conn.execute(_LOAN_SELECT + where + " ORDER BY l.checkout_at DESC", params).fetchall()
        return _rows_to_loans(rows)

    def inconsistent_copies(self) -> List[str]:
        """Copies whose state disagrees with their open loans. Always empty unless the database was edited by hand."""
        with connect(self.db_file) as conn:
            rows = conn.execute(
                """
                SELECT c.copy_id
                FROM copies c
                LEFT JOIN loans l ON l.copy_id = c.copy_id AND l.returned_at IS NULL
                GROUP BY c.copy_id, c.state
                HAVING (c.state = 'available' AND COUNT(l.loan_id) != 0)
                    OR (c.state = 'on_loan' AND COUNT(l.loan_id) != 1)
                """
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------- Transitions ------------------------- #
    def _swap_copy_state(self, conn: sqlite3.Connection, copy: Copy,
                         expected: CopyState, new: CopyState) -> None:
        cursor = conn.execute(
            "UPDATE copies SET state = ?, version = version + 1 WHERE copy_id = ? AND state = ? AND version = ?",
            (new.value, copy.copy_id, expected.value, copy.version),
        )
        if cursor.rowcount != 1:
            logger.warning("Copy %s changed under us (expected %s v%s)", copy.copy_id, expected.value, copy.version)
            raise ConcurrentModification(f"Copy {copy.copy_id} was modified concurrently, retry.")

    def open_loan(self, conn: sqlite3.Connection, copy: Copy, member_id: str, operator_id: str,
                  checkout_at: datetime, due_at: datetime) -> Loan:
        """Available -> OnLoan plus the new loan row, in the caller's transaction."""
        self._swap_copy_state(conn, copy, CopyState.AVAILABLE, CopyState.ON_LOAN)
        loan = Loan(
            loan_id=_new_loan_id(),
            copy_id=copy.copy_id,
            member_id=member_id,
            checkout_at=checkout_at,
            due_at=due_at,
            checkout_operator=operator_id,
            title=copy.title,
            isbn=copy.isbn,
        )
        try:
            conn.execute(
                """
                INSERT INTO loans (loan_id, copy_id, member_id, checkout_at, due_at, renewal_count, checkout_operator)
                VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (loan.loan_id, loan.copy_id, loan.member_id,
                 format_ts(checkout_at), format_ts(due_at), operator_id),
            )
        except sqlite3.IntegrityError as exc:
            # the partial unique index caught a second open loan for this copy
            raise ConcurrentModification(f"Copy {copy.copy_id} already has an open loan.") from exc
        return loan

    def close_loan(self, conn: sqlite3.Connection, loan: Loan, copy: Copy, operator_id: str,
                   returned_at: datetime) -> Loan:
        """Close the open loan and put the copy back on the shelf, in the caller's transaction."""
        was_late = returned_at > loan.due_at
        cursor = conn.execute(
            """
            UPDATE loans SET returned_at = ?, return_operator = ?, was_late = ?
            WHERE loan_id = ? AND returned_at IS NULL
            """,
            (format_ts(returned_at), operator_id, int(was_late), loan.loan_id),
        )
        if cursor.rowcount != 1:
            raise ConcurrentModification(f"Loan {loan.loan_id} was closed concurrently.")
        self._swap_copy_state(conn, copy, CopyState.ON_LOAN, CopyState.AVAILABLE)
        loan.returned_at = returned_at
        loan.return_operator = operator_id
        loan.was_late = was_late
        return loan

    def extend_loan(self, conn: sqlite3.Connection, loan: Loan, new_due_at: datetime) -> Loan:
        """Single read-modify-write on the loan: CAS on its renewal count."""
        cursor = conn.execute(
            """
            UPDATE loans SET due_at = ?, renewal_count = renewal_count + 1
            WHERE loan_id = ? AND returned_at IS NULL AND renewal_count = ?
            """,
            (format_ts(new_due_at), loan.loan_id, loan.renewal_count),
        )
        if cursor.rowcount != 1:
            raise ConcurrentModification(f"Loan {loan.loan_id} was modified concurrently, retry.")
        loan.due_at = new_due_at
        loan.renewal_count += 1
        return loan
