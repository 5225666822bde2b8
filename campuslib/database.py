import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from campuslib.config import settings
from campuslib.errors import StorageError

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
        id TEXT PRIMARY KEY,
        email TEXT UNIQUE NOT NULL,
        full_name TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('STUDENT', 'STAFF', 'ADMIN')),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS books (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        author TEXT NOT NULL,
        isbn TEXT UNIQUE NOT NULL,
        description TEXT,
        genre TEXT,
        cover_image_url TEXT,
        total_copies INTEGER NOT NULL CHECK(total_copies >= 1),
        available_copies INTEGER NOT NULL CHECK(available_copies >= 0),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS borrow_requests (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        book_id TEXT NOT NULL,
        status TEXT NOT NULL CHECK(status IN ('PENDING', 'APPROVED', 'REJECTED')),
        request_date TEXT NOT NULL,
        processed_date TEXT,
        processed_by TEXT,
        notes TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES profiles(id),
        FOREIGN KEY (book_id) REFERENCES books(id),
        FOREIGN KEY (processed_by) REFERENCES profiles(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS loans (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        book_id TEXT NOT NULL,
        checkout_date TEXT NOT NULL,
        due_date TEXT NOT NULL,
        return_date TEXT,
        status TEXT NOT NULL CHECK(status IN ('ACTIVE', 'OVERDUE', 'RETURNED')),
        renewed_count INTEGER NOT NULL DEFAULT 0 CHECK(renewed_count >= 0),
        checked_out_by TEXT,
        created_at TEXT NOT NULL,
        FOREIGN KEY (user_id) REFERENCES profiles(id),
        FOREIGN KEY (book_id) REFERENCES books(id),
        FOREIGN KEY (checked_out_by) REFERENCES profiles(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS fines (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        loan_id TEXT NOT NULL,
        amount REAL NOT NULL CHECK(amount >= 0),
        paid INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        paid_at TEXT,
        reason TEXT,
        FOREIGN KEY (user_id) REFERENCES profiles(id),
        FOREIGN KEY (loan_id) REFERENCES loans(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS system_settings (
        id TEXT PRIMARY KEY,
        setting_key TEXT UNIQUE NOT NULL,
        setting_value TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        updated_by TEXT
    )
    """,
]

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)",
    "CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)",
    "CREATE INDEX IF NOT EXISTS idx_profiles_role ON profiles(role)",
    "CREATE INDEX IF NOT EXISTS idx_requests_user_id ON borrow_requests(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_requests_book_id ON borrow_requests(book_id)",
    "CREATE INDEX IF NOT EXISTS idx_requests_status ON borrow_requests(status)",
    "CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)",
    "CREATE INDEX IF NOT EXISTS idx_loans_status_due ON loans(status, due_date)",
    "CREATE INDEX IF NOT EXISTS idx_fines_user_paid ON fines(user_id, paid)",
    "CREATE INDEX IF NOT EXISTS idx_fines_loan_id ON fines(loan_id)",
]


class Database:
    """SQLite-backed store shared by the repositories.

    Every call opens a short-lived connection. Writes that must be atomic go
    through ``transaction()``, which serializes writers with a process-wide
    lock and ``BEGIN IMMEDIATE`` so SQLite holds the write lock from the first
    read of the transaction.
    """

    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file or settings.database_file
        self.timeout = settings.database_timeout if timeout is None else timeout
        self._write_lock = threading.RLock()

    def get_connection(self) -> sqlite3.Connection:
        """Open a connection in autocommit mode; transactions are explicit."""
        try:
            conn = sqlite3.connect(
                self.db_file,
                timeout=self.timeout,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.Error as exc:
            logger.error(f"Could not open database {self.db_file}: {exc}")
            raise StorageError(f"Could not open database: {exc}") from exc
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Read-only helper: yields a connection and always closes it."""
        conn = self.get_connection()
        try:
            yield conn
        except sqlite3.Error as exc:
            logger.error(f"Database read failed: {exc}")
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block as one serializable write transaction.

        Any exception rolls back every write made on the yielded connection.
        ``sqlite3.Error`` is re-raised as ``StorageError``; other exceptions
        propagate unchanged.
        """
        with self._write_lock:
            conn = self.get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.rollback()
                    raise
                conn.commit()
            except sqlite3.Error as exc:
                logger.error(f"Transaction rolled back: {exc}")
                raise StorageError(str(exc)) from exc
            finally:
                conn.close()

    def create_tables(self) -> None:
        """Create tables and indexes if they do not exist yet."""
        conn = self.get_connection()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            for statement in SCHEMA:
                conn.execute(statement)
            for statement in INDEXES:
                conn.execute(statement)
        except sqlite3.Error as exc:
            logger.error(f"Schema creation failed: {exc}")
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Initialize the database file and schema."""
        self.create_tables()
        logger.debug(f"Database ready at {self.db_file}")
