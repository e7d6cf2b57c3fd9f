import logging
import sqlite3
from typing import Optional

from circulation.database import connect, transaction
from circulation.errors import InvalidRequest, NotFound
from circulation.models import Book, Copy, CopyState

logger = logging.getLogger(__name__)

_COPY_COLUMNS = "c.copy_id, c.isbn, c.state, c.version, b.title"


class CatalogIndex:
    """Copy identifier -> availability state and owning title.

    Cataloging owns books and copies; the engine only reads them here. The
    ``register_*`` helpers exist for provisioning (seed data, tests).
    Availability changes go through the ledger, never through this class.
    """

    def __init__(self, db_file: str) -> None:
        self.db_file = db_file

    # ------------------------- Provisioning ------------------------- #
    def register_book(self, book: Book) -> Book:
        if not book.isbn or not book.title:
            raise InvalidRequest("A book needs an ISBN and a title.")
        with transaction(self.db_file) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO books (isbn, title, author) VALUES (?, ?, ?)",
                (book.isbn, book.title, book.author),
            )
        return book

    def register_copy(self, copy_id: str, isbn: str) -> Copy:
        copy_id = copy_id.strip()
        if not copy_id:
            raise InvalidRequest("A copy needs an identifier.")
        with transaction(self.db_file) as conn:
            if conn.execute("SELECT 1 FROM books WHERE isbn = ?", (isbn,)).fetchone() is None:
                raise NotFound("book", isbn)
            try:
                conn.execute(
                    "INSERT INTO copies (copy_id, isbn, state, version) VALUES (?, ?, ?, 0)",
                    (copy_id, isbn, CopyState.AVAILABLE.value),
                )
            except sqlite3.IntegrityError as exc:
                raise InvalidRequest(f"Copy {copy_id} already exists.") from exc
        logger.debug("Registered copy %s of %s", copy_id, isbn)
        return self.find_copy(copy_id)

    # ------------------------- Reads ------------------------- #
    def get_copy(self, conn: sqlite3.Connection, copy_id: str) -> Optional[Copy]:
        row = conn.execute(
            f"SELECT {_COPY_COLUMNS} FROM copies c JOIN books b ON b.isbn = c.isbn WHERE c.copy_id = ?",
            (copy_id,),
        ).fetchone()
        return Copy.from_dict(dict(row)) if row else None

    def find_copy(self, copy_id: str) -> Optional[Copy]:
        with connect(self.db_file) as conn:
            return self.get_copy(conn, copy_id)

    def find_book(self, isbn: str) -> Optional[Book]:
        with connect(self.db_file) as conn:
            row = conn.execute("SELECT isbn, title, author FROM books WHERE isbn = ?", (isbn,)).fetchone()
        return Book.from_dict(dict(row)) if row else None
