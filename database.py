import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings

# Make sure .env is loaded before LIBRARY_DB_FILE is read, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file. Priority:
# 1) LIBRARY_DB_FILE at call time
# 2) settings.database_file
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def resolve_database_file(db_file: Optional[str] = None) -> str:
    """Pick the database file for a new Library: explicit path, env override, then config."""
    return db_file or os.environ.get("LIBRARY_DB_FILE") or DATABASE_FILE


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    ``transaction()`` so the read-check-write happens under one write lock.
    """
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=10.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA busy_timeout = 10000;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` and commit or roll back."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                phone TEXT,
                role TEXT NOT NULL DEFAULT 'Student'
                    CHECK (role IN ('Admin', 'Librarian', 'Student', 'Member')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                book_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                category TEXT,
                description TEXT,
                pages INTEGER CHECK (pages IS NULL OR pages > 0),
                publication_year INTEGER,
                cover_image_url TEXT,
                copies_total INTEGER NOT NULL DEFAULT 1 CHECK (copies_total >= 1),
                copies_available INTEGER NOT NULL DEFAULT 1,
                availability_status TEXT NOT NULL DEFAULT 'Available'
                    CHECK (availability_status IN ('Available', 'Borrowed', 'Reserved')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK (copies_available >= 0 AND copies_available <= copies_total)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                loan_id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'Borrowed'
                    CHECK (status IN ('Borrowed', 'Returned')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK ((status = 'Returned') = (return_date IS NOT NULL)),
                FOREIGN KEY (book_id) REFERENCES books(book_id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fines (
                fine_id TEXT PRIMARY KEY,
                loan_id TEXT NOT NULL UNIQUE,
                amount REAL NOT NULL DEFAULT 0 CHECK (amount >= 0),
                payment_status TEXT NOT NULL DEFAULT 'Unpaid'
                    CHECK (payment_status IN ('Paid', 'Unpaid')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (loan_id) REFERENCES loans(loan_id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reservations (
                reservation_id TEXT PRIMARY KEY,
                book_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                reservation_date TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Pending'
                    CHECK (status IN ('Pending', 'Collected', 'Cancelled')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (book_id) REFERENCES books(book_id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users(user_id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS reports (
                report_id TEXT PRIMARY KEY,
                generated_by TEXT NOT NULL,
                report_type TEXT NOT NULL,
                date_generated TIMESTAMP NOT NULL,
                report_data TEXT,
                FOREIGN KEY (generated_by) REFERENCES users(user_id) ON DELETE CASCADE
            )
        """)

        # One active loan and one pending reservation per (book, user)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_loans_active_book_user
            ON loans(book_id, user_id) WHERE status = 'Borrowed'
        """)
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS uq_reservations_pending_book_user
            ON reservations(book_id, user_id) WHERE status = 'Pending'
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_users_email ON users(email)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_isbn ON books(isbn)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_availability ON books(availability_status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status ON loans(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_reservations_book_id ON reservations(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_reservations_user_id ON reservations(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_reservations_status ON reservations(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_reports_generated_by ON reports(generated_by)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready: {db_file or DATABASE_FILE}")
