import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings
from circulation.errors import PersistenceError

# Make sure .env is loaded before LIBRARY_DB_FILE is read, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_FILE = "circulation.db"


def resolve_database_file(db_file: Optional[str] = None) -> str:
    """Pick the database file.

    Priority:
    1) an explicit ``db_file`` argument
    2) LIBRARY_DB_FILE from the environment (read at call time, so tests can set it)
    3) ``circulation.db`` in the working directory
    """
    return db_file or os.environ.get("LIBRARY_DB_FILE") or settings.database_file or DEFAULT_DATABASE_FILE


def get_db_connection(db_file: str) -> sqlite3.Connection:
    """Open a connection in autocommit mode; transactions are started explicitly."""
    conn = sqlite3.connect(
        db_file,
        timeout=settings.db_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


@contextmanager
def connect(db_file: str) -> Iterator[sqlite3.Connection]:
    """Read-only helper: a connection that is always closed."""
    conn = get_db_connection(db_file)
    try:
        yield conn
    except sqlite3.Error as exc:
        logger.error("Database read failed on %s: %s", db_file, exc)
        raise PersistenceError(f"Database read failed: {exc}") from exc
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("Rollback failed: %s", exc)


@contextmanager
def transaction(db_file: str) -> Iterator[sqlite3.Connection]:
    """Run the body in one write transaction.

    BEGIN IMMEDIATE takes the write lock up front so the reads inside the
    block see the state the writes are based on. Any sqlite error rolls
    back and surfaces as PersistenceError; other exceptions (business
    rejections) also roll back and propagate unchanged.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.Error as exc:
        _rollback(conn)
        logger.error("Transaction rolled back on %s: %s", db_file, exc)
        raise PersistenceError(f"Durable write failed: {exc}") from exc
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def create_tables(db_file: str) -> None:
    """Create the circulation tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL lets readers proceed while a checkout holds the write lock
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("""
            CREATE TABLE IF NOT EXISTS books (
                isbn TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL DEFAULT '',
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS copies (
                copy_id TEXT PRIMARY KEY,
                isbn TEXT NOT NULL REFERENCES books(isbn),
                state TEXT NOT NULL DEFAULT 'available'
                    CHECK (state IN ('available', 'on_loan')),
                version INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS members (
                member_id TEXT PRIMARY KEY,
                card_number TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                membership_start TEXT NOT NULL,
                membership_end TEXT NOT NULL,
                banned INTEGER NOT NULL DEFAULT 0,
                ban_cause TEXT,
                banned_at TEXT,
                total_loans INTEGER NOT NULL DEFAULT 0,
                late_return_count INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                loan_id TEXT PRIMARY KEY,
                copy_id TEXT NOT NULL REFERENCES copies(copy_id),
                member_id TEXT NOT NULL REFERENCES members(member_id),
                checkout_at TEXT NOT NULL,
                due_at TEXT NOT NULL,
                returned_at TEXT,
                renewal_count INTEGER NOT NULL DEFAULT 0,
                checkout_operator TEXT NOT NULL,
                return_operator TEXT,
                was_late INTEGER
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS loan_policy (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                loan_duration_days INTEGER NOT NULL,
                max_renewals INTEGER NOT NULL,
                max_concurrent_loans INTEGER NOT NULL,
                version INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT,
                updated_by TEXT
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TEXT NOT NULL,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                target TEXT NOT NULL,
                before_state TEXT,
                after_state TEXT
            )
        """)

        # At most one open loan per copy, enforced by the database itself
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_open_copy ON loans(copy_id) WHERE returned_at IS NULL"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_member ON loans(member_id, returned_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_loans_due_at ON loans(due_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_copies_isbn ON copies(isbn)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_created_at ON audit_log(created_at DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log(actor)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> str:
    """Create the schema and return the resolved database file."""
    path = resolve_database_file(db_file)
    try:
        create_tables(path)
    except sqlite3.Error as exc:
        logger.error("Could not initialise database %s: %s", path, exc)
        raise PersistenceError(f"Could not initialise database: {exc}") from exc
    logger.debug("Database ready at %s", path)
    return path
