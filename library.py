import logging
import sqlite3
import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

import database
from config import settings
from database import get_db_connection, initialize_database, transaction
from errors import (
    DuplicateLoanError,
    DuplicateReservationError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from lifecycle import (
    DateLike,
    availability_for,
    calculate_due_date,
    calculate_fine,
    check_reservation_transition,
    days_overdue,
    to_date,
    validate_copies,
)
from models import (
    Book,
    Fine,
    Loan,
    LoanStatus,
    PaymentStatus,
    Reservation,
    ReservationStatus,
    Role,
    User,
)

logger = logging.getLogger(__name__)

# Availability flips to Borrowed when the last copy goes out
_DECREASE_SQL = """
    UPDATE books
    SET copies_available = copies_available - 1,
        availability_status = CASE WHEN copies_available - 1 > 0 THEN 'Available' ELSE 'Borrowed' END,
        updated_at = CURRENT_TIMESTAMP
    WHERE book_id = ? AND copies_available > 0
"""

_INCREASE_SQL = """
    UPDATE books
    SET copies_available = MIN(copies_available + 1, copies_total),
        availability_status = CASE
            WHEN MIN(copies_available + 1, copies_total) > 0 THEN 'Available'
            ELSE availability_status
        END,
        updated_at = CURRENT_TIMESTAMP
    WHERE book_id = ?
"""

_BOOK_FIELDS = (
    "title", "author", "isbn", "category", "description",
    "pages", "publication_year", "cover_image_url",
)


class Library:
    """Catalog, loan ledger, reservation queue and fines on top of SQLite."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = database.resolve_database_file(db_file)
        initialize_database(self.db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    # ------------------------- Users ------------------------- #
    def add_user(self, name: str, email: str, role: Role = Role.STUDENT, phone: Optional[str] = None) -> User:
        name = (name or "").strip()
        email = (email or "").strip().lower()
        if not name or not email:
            raise ValidationError("Name and email are required")
        if "@" not in email:
            raise ValidationError("Invalid email address")

        user = User(user_id=str(uuid.uuid4()), name=name, email=email, role=Role(role), phone=phone or None)
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO users (user_id, name, email, phone, role) VALUES (?, ?, ?, ?, ?)",
                (user.user_id, user.name, user.email, user.phone, user.role.value),
            )
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user.user_id,)).fetchone()
        except sqlite3.IntegrityError as e:
            raise ValidationError("User with this email already exists") from e
        finally:
            conn.close()
        logger.info(f"User created: {user.user_id} ({user.role.value})")
        return User.from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
            return User.from_row(row) if row else None
        finally:
            conn.close()

    def require_user(self, user_id: str) -> User:
        user = self.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_users(self, role: Optional[Role] = None, search: Optional[str] = None) -> List[User]:
        clauses, params = [], []
        if role:
            clauses.append("role = ?")
            params.append(Role(role).value)
        if search:
            clauses.append("(name LIKE ? OR email LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(f"SELECT * FROM users {where} ORDER BY created_at DESC, name", params).fetchall()
            return [User.from_row(r) for r in rows]
        finally:
            conn.close()

    # ------------------------- Catalog ------------------------- #
    def add_book(
        self,
        title: str,
        author: str,
        *,
        isbn: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        pages: Optional[int] = None,
        publication_year: Optional[int] = None,
        cover_image_url: Optional[str] = None,
        copies_total: int = 1,
        copies_available: Optional[int] = None,
    ) -> Book:
        """Add a catalog entry. ``copies_available`` defaults to ``copies_total``."""
        title = (title or "").strip()
        author = (author or "").strip()
        if not title or not author:
            raise ValidationError("Title and author are required")
        if copies_available is None:
            copies_available = copies_total
        validate_copies(copies_total, copies_available)
        self._validate_book_numbers(pages, publication_year)

        book_id = str(uuid.uuid4())
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO books (
                    book_id, title, author, isbn, category, description, pages,
                    publication_year, cover_image_url, copies_total, copies_available,
                    availability_status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    book_id, title, author, self._normalize_isbn(isbn), _none_if_blank(category),
                    _none_if_blank(description), pages, publication_year, _none_if_blank(cover_image_url),
                    copies_total, copies_available, availability_for(copies_available).value,
                ),
            )
            book = self._fetch_book(conn, book_id)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Book with ISBN {isbn} already exists.") from e
        finally:
            conn.close()
        logger.info(f"Book added: {book_id} '{title}' ({copies_available}/{copies_total})")
        return book

    def get_book(self, book_id: str) -> Optional[Book]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM books WHERE book_id = ?", (book_id,)).fetchone()
            return Book.from_row(row) if row else None
        finally:
            conn.close()

    def require_book(self, book_id: str) -> Book:
        book = self.get_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        return book

    def list_books(
        self,
        search: Optional[str] = None,
        category: Optional[str] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Tuple[List[Book], int]:
        """Search the catalog by title, author or ISBN. Returns (page of books, total matches)."""
        limit = limit or settings.default_page_size
        page = max(page, 1)
        clauses, params = [], []
        if search:
            clauses.append("(title LIKE ? OR author LIKE ? OR isbn LIKE ?)")
            params.extend([f"%{search}%"] * 3)
        if category:
            clauses.append("category = ?")
            params.append(category)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = self._connect()
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM books {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM books {where} ORDER BY created_at DESC, title LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
            return [Book.from_row(r) for r in rows], total
        finally:
            conn.close()

    def count_books(self) -> int:
        conn = self._connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
        finally:
            conn.close()

    def update_book(self, book_id: str, **changes: Any) -> Book:
        """Update bibliographic fields and/or copy counts of a book."""
        unknown = set(changes) - set(_BOOK_FIELDS) - {"copies_total", "copies_available"}
        if unknown:
            raise ValidationError(f"Unknown book fields: {', '.join(sorted(unknown))}")
        for key in ("title", "author"):
            if key in changes and not (changes[key] or "").strip():
                raise ValidationError(f"{key.capitalize()} cannot be empty")
        self._validate_book_numbers(changes.get("pages"), changes.get("publication_year"))

        conn = self._connect()
        try:
            with transaction(conn):
                current = self._fetch_book(conn, book_id)
                if not current:
                    raise NotFoundError("Book not found")

                fields = {k: v for k, v in changes.items() if k in _BOOK_FIELDS}
                if "isbn" in fields:
                    fields["isbn"] = self._normalize_isbn(fields["isbn"])
                for key in ("title", "author"):
                    if key in fields:
                        fields[key] = fields[key].strip()
                for key in ("category", "description", "cover_image_url"):
                    if key in fields:
                        fields[key] = _none_if_blank(fields[key])
                if fields:
                    assignments = ", ".join(f"{k} = ?" for k in fields)
                    conn.execute(
                        f"UPDATE books SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE book_id = ?",
                        [*fields.values(), book_id],
                    )

                if "copies_total" in changes or "copies_available" in changes:
                    self._set_copies(
                        conn,
                        current,
                        changes.get("copies_total"),
                        changes.get("copies_available"),
                    )
                book = self._fetch_book(conn, book_id)
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Book with ISBN {changes.get('isbn')} already exists.") from e
        finally:
            conn.close()
        logger.info(f"Book updated: {book_id}")
        return book

    def remove_book(self, book_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM books WHERE book_id = ?", (book_id,))
            removed = cursor.rowcount > 0
        finally:
            conn.close()
        if removed:
            logger.info(f"Book removed: {book_id}")
        return removed

    # ------------------------- Availability ------------------------- #
    def decrease_availability(self, book_id: str) -> Book:
        """Take one copy off the shelf. Fails with UnavailableError when none is left."""
        conn = self._connect()
        try:
            with transaction(conn):
                self._decrease(conn, book_id)
                return self._fetch_book(conn, book_id)
        finally:
            conn.close()

    def increase_availability(self, book_id: str) -> Book:
        """Put one copy back, never beyond ``copies_total``."""
        conn = self._connect()
        try:
            with transaction(conn):
                self._increase(conn, book_id)
                return self._fetch_book(conn, book_id)
        finally:
            conn.close()

    def set_copies(
        self,
        book_id: str,
        copies_total: Optional[int] = None,
        copies_available: Optional[int] = None,
    ) -> Book:
        """Set total and/or available copies and recompute the availability status."""
        conn = self._connect()
        try:
            with transaction(conn):
                current = self._fetch_book(conn, book_id)
                if not current:
                    raise NotFoundError("Book not found")
                self._set_copies(conn, current, copies_total, copies_available)
                return self._fetch_book(conn, book_id)
        finally:
            conn.close()

    def _decrease(self, conn: sqlite3.Connection, book_id: str) -> None:
        cursor = conn.execute(_DECREASE_SQL, (book_id,))
        if cursor.rowcount == 0:
            if not self._fetch_book(conn, book_id):
                raise NotFoundError("Book not found")
            raise UnavailableError("Book is not available")

    def _increase(self, conn: sqlite3.Connection, book_id: str) -> None:
        cursor = conn.execute(_INCREASE_SQL, (book_id,))
        if cursor.rowcount == 0:
            raise NotFoundError("Book not found")

    def _set_copies(
        self,
        conn: sqlite3.Connection,
        current: Book,
        copies_total: Optional[int],
        copies_available: Optional[int],
    ) -> None:
        total = current.copies_total if copies_total is None else copies_total
        available = current.copies_available if copies_available is None else copies_available
        validate_copies(total, available)
        conn.execute(
            """
            UPDATE books
            SET copies_total = ?, copies_available = ?, availability_status = ?,
                updated_at = CURRENT_TIMESTAMP
            WHERE book_id = ?
            """,
            (total, available, availability_for(available).value, current.book_id),
        )

    @staticmethod
    def _fetch_book(conn: sqlite3.Connection, book_id: str) -> Optional[Book]:
        row = conn.execute("SELECT * FROM books WHERE book_id = ?", (book_id,)).fetchone()
        return Book.from_row(row) if row else None

    # ------------------------- Loans ------------------------- #
    def create_loan(
        self,
        book_id: str,
        user_id: str,
        borrow_date: Optional[DateLike] = None,
        due_date: Optional[DateLike] = None,
    ) -> Loan:
        """Lend one copy of a book to a user.

        Due date defaults to borrow date + ``settings.loan_period_days``. The
        availability check, duplicate check, decrement and insert run in one
        ``BEGIN IMMEDIATE`` transaction so concurrent requests cannot over-lend.
        """
        borrowed_on = to_date(borrow_date) if borrow_date is not None else date.today()
        due_on = to_date(due_date) if due_date is not None else calculate_due_date(borrowed_on)
        if due_on < borrowed_on:
            raise ValidationError("Due date cannot be before borrow date")

        loan_id = str(uuid.uuid4())
        conn = self._connect()
        try:
            with transaction(conn):
                book = self._fetch_book(conn, book_id)
                if not book:
                    raise NotFoundError("Book not found")
                if not conn.execute("SELECT 1 FROM users WHERE user_id = ?", (user_id,)).fetchone():
                    raise NotFoundError("User not found")
                if book.copies_available <= 0:
                    logger.warning(f"Loan rejected, no copies left: book={book_id}")
                    raise UnavailableError("Book is not available")
                existing = conn.execute(
                    "SELECT 1 FROM loans WHERE book_id = ? AND user_id = ? AND status = 'Borrowed'",
                    (book_id, user_id),
                ).fetchone()
                if existing:
                    logger.warning(f"Loan rejected, already borrowed: book={book_id} user={user_id}")
                    raise DuplicateLoanError("User already has this book borrowed")

                self._decrease(conn, book_id)
                try:
                    conn.execute(
                        """
                        INSERT INTO loans (loan_id, book_id, user_id, borrow_date, due_date, status)
                        VALUES (?, ?, ?, ?, ?, 'Borrowed')
                        """,
                        (loan_id, book_id, user_id, borrowed_on.isoformat(), due_on.isoformat()),
                    )
                except sqlite3.IntegrityError as e:
                    raise DuplicateLoanError("User already has this book borrowed") from e
                loan = self._fetch_loan(conn, loan_id)
        finally:
            conn.close()
        logger.info(f"Loan created: {loan_id} book={book_id} user={user_id} due={due_on.isoformat()}")
        return loan

    def return_loan(
        self,
        loan_id: str,
        return_date: Optional[DateLike] = None,
        assess_fine: Optional[bool] = None,
    ) -> Loan:
        """Mark a loan returned and put the copy back on the shelf.

        No fine is created unless ``assess_fine`` is true, or it is left as
        ``None`` while ``settings.auto_fine_on_return`` is enabled.
        """
        returned_on = to_date(return_date) if return_date is not None else date.today()
        if assess_fine is None:
            assess_fine = settings.auto_fine_on_return

        conn = self._connect()
        try:
            with transaction(conn):
                loan = self._fetch_loan(conn, loan_id)
                if not loan:
                    raise NotFoundError("Loan not found")
                if not loan.is_active:
                    raise ValidationError("Loan has already been returned")
                conn.execute(
                    """
                    UPDATE loans
                    SET status = 'Returned', return_date = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE loan_id = ? AND status = 'Borrowed'
                    """,
                    (returned_on.isoformat(), loan_id),
                )
                self._increase(conn, loan.book_id)
                loan = self._fetch_loan(conn, loan_id)

                if assess_fine and self.loan_days_overdue(loan) > 0:
                    if not self._fetch_fine_for_loan(conn, loan_id):
                        self._insert_fine(conn, loan, None)
        finally:
            conn.close()
        logger.info(f"Loan returned: {loan_id} on {returned_on.isoformat()}")
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        conn = self._connect()
        try:
            return self._fetch_loan(conn, loan_id)
        finally:
            conn.close()

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("Loan not found")
        return loan

    @staticmethod
    def loan_days_overdue(loan: Loan, today: Optional[DateLike] = None) -> int:
        """Overdue days, measured at the return date for returned loans."""
        if loan.return_date:
            return days_overdue(loan.due_date, loan.return_date)
        return days_overdue(loan.due_date, today)

    def get_loan_details(self, loan_id: str, today: Optional[DateLike] = None) -> Dict[str, Any]:
        conn = self._connect()
        try:
            loan = self._fetch_loan(conn, loan_id)
            if not loan:
                raise NotFoundError("Loan not found")
            return self._loan_details(conn, loan, today)
        finally:
            conn.close()

    def list_loans(
        self,
        user_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        today: Optional[DateLike] = None,
    ) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status:
            clauses.append("status = ?")
            params.append(LoanStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(f"SELECT * FROM loans {where} ORDER BY borrow_date DESC, created_at DESC", params).fetchall()
            return [self._loan_details(conn, Loan.from_row(r), today) for r in rows]
        finally:
            conn.close()

    def _loan_details(self, conn: sqlite3.Connection, loan: Loan, today: Optional[DateLike] = None) -> Dict[str, Any]:
        book = self._fetch_book(conn, loan.book_id)
        user_row = conn.execute("SELECT * FROM users WHERE user_id = ?", (loan.user_id,)).fetchone()
        fine = self._fetch_fine_for_loan(conn, loan.loan_id)
        return {
            **loan.to_dict(),
            "days_overdue": self.loan_days_overdue(loan, today),
            "book": book.to_dict() if book else None,
            "user": User.from_row(user_row).to_dict() if user_row else None,
            "fine": fine.to_dict() if fine else None,
        }

    @staticmethod
    def _fetch_loan(conn: sqlite3.Connection, loan_id: str) -> Optional[Loan]:
        row = conn.execute("SELECT * FROM loans WHERE loan_id = ?", (loan_id,)).fetchone()
        return Loan.from_row(row) if row else None

    # ------------------------- Reservations ------------------------- #
    def create_reservation(
        self,
        book_id: str,
        user_id: str,
        reservation_date: Optional[DateLike] = None,
    ) -> Reservation:
        """Place a hold on a book. Availability is not checked."""
        reserved_on = to_date(reservation_date) if reservation_date is not None else date.today()
        reservation_id = str(uuid.uuid4())
        conn = self._connect()
        try:
            with transaction(conn):
                if not self._fetch_book(conn, book_id):
                    raise NotFoundError("Book not found")
                if not conn.execute("SELECT 1 FROM users WHERE user_id = ?", (user_id,)).fetchone():
                    raise NotFoundError("User not found")
                existing = conn.execute(
                    "SELECT 1 FROM reservations WHERE book_id = ? AND user_id = ? AND status = 'Pending'",
                    (book_id, user_id),
                ).fetchone()
                if existing:
                    logger.warning(f"Reservation rejected, already pending: book={book_id} user={user_id}")
                    raise DuplicateReservationError("You already have a pending reservation for this book")
                try:
                    conn.execute(
                        """
                        INSERT INTO reservations (reservation_id, book_id, user_id, reservation_date, status)
                        VALUES (?, ?, ?, ?, 'Pending')
                        """,
                        (reservation_id, book_id, user_id, reserved_on.isoformat()),
                    )
                except sqlite3.IntegrityError as e:
                    raise DuplicateReservationError("You already have a pending reservation for this book") from e
                reservation = self._fetch_reservation(conn, reservation_id)
        finally:
            conn.close()
        logger.info(f"Reservation created: {reservation_id} book={book_id} user={user_id}")
        return reservation

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        conn = self._connect()
        try:
            return self._fetch_reservation(conn, reservation_id)
        finally:
            conn.close()

    def require_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.get_reservation(reservation_id)
        if not reservation:
            raise NotFoundError("Reservation not found")
        return reservation

    def update_reservation_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        actor: Optional[User] = None,
    ) -> Reservation:
        """Move a reservation to a new status.

        Staff may set any status; the reservation's own user may only cancel.
        """
        status = ReservationStatus(status)
        conn = self._connect()
        try:
            with transaction(conn):
                reservation = self._fetch_reservation(conn, reservation_id)
                if not reservation:
                    raise NotFoundError("Reservation not found")
                if actor is not None and not actor.is_staff:
                    if actor.user_id != reservation.user_id or status != ReservationStatus.CANCELLED:
                        raise ForbiddenError("Forbidden")
                check_reservation_transition(reservation.status, status)
                conn.execute(
                    "UPDATE reservations SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE reservation_id = ?",
                    (status.value, reservation_id),
                )
                reservation = self._fetch_reservation(conn, reservation_id)
        finally:
            conn.close()
        logger.info(f"Reservation {reservation_id} -> {status.value}")
        return reservation

    def cancel_reservation(self, reservation_id: str, actor: Optional[User] = None) -> None:
        """Delete a reservation. Only its own user or staff may do this."""
        conn = self._connect()
        try:
            with transaction(conn):
                reservation = self._fetch_reservation(conn, reservation_id)
                if not reservation:
                    raise NotFoundError("Reservation not found")
                if actor is not None and not actor.is_staff and actor.user_id != reservation.user_id:
                    raise ForbiddenError("Forbidden")
                conn.execute("DELETE FROM reservations WHERE reservation_id = ?", (reservation_id,))
        finally:
            conn.close()
        logger.info(f"Reservation deleted: {reservation_id}")

    def list_reservations(
        self,
        user_id: Optional[str] = None,
        status: Optional[ReservationStatus] = None,
    ) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status:
            clauses.append("status = ?")
            params.append(ReservationStatus(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM reservations {where} ORDER BY reservation_date DESC, created_at DESC", params
            ).fetchall()
            return [self._reservation_details(conn, Reservation.from_row(r)) for r in rows]
        finally:
            conn.close()

    def get_reservation_details(self, reservation_id: str) -> Dict[str, Any]:
        conn = self._connect()
        try:
            reservation = self._fetch_reservation(conn, reservation_id)
            if not reservation:
                raise NotFoundError("Reservation not found")
            return self._reservation_details(conn, reservation)
        finally:
            conn.close()

    def _reservation_details(self, conn: sqlite3.Connection, reservation: Reservation) -> Dict[str, Any]:
        book = self._fetch_book(conn, reservation.book_id)
        user_row = conn.execute("SELECT * FROM users WHERE user_id = ?", (reservation.user_id,)).fetchone()
        return {
            **reservation.to_dict(),
            "book": book.to_dict() if book else None,
            "user": User.from_row(user_row).to_dict() if user_row else None,
        }

    @staticmethod
    def _fetch_reservation(conn: sqlite3.Connection, reservation_id: str) -> Optional[Reservation]:
        row = conn.execute("SELECT * FROM reservations WHERE reservation_id = ?", (reservation_id,)).fetchone()
        return Reservation.from_row(row) if row else None

    # ------------------------- Fines ------------------------- #
    def assess_fine(
        self,
        loan_id: str,
        amount: Optional[float] = None,
        today: Optional[DateLike] = None,
    ) -> Fine:
        """Create the fine for a loan.

        Without an explicit ``amount`` the fine is overdue days times
        ``settings.fine_rate_per_day``; a loan that is not overdue is rejected.
        """
        if amount is not None and amount < 0:
            raise ValidationError("Fine amount cannot be negative")
        conn = self._connect()
        try:
            with transaction(conn):
                loan = self._fetch_loan(conn, loan_id)
                if not loan:
                    raise NotFoundError("Loan not found")
                if self._fetch_fine_for_loan(conn, loan_id):
                    raise ValidationError("Loan already has a fine")
                if amount is None and self.loan_days_overdue(loan, today) == 0:
                    raise ValidationError("Loan is not overdue")
                fine = self._insert_fine(conn, loan, amount, today)
        finally:
            conn.close()
        return fine

    def _insert_fine(
        self,
        conn: sqlite3.Connection,
        loan: Loan,
        amount: Optional[float],
        today: Optional[DateLike] = None,
    ) -> Fine:
        if amount is None:
            amount = calculate_fine(self.loan_days_overdue(loan, today), settings.fine_rate_per_day)
        fine_id = str(uuid.uuid4())
        conn.execute(
            "INSERT INTO fines (fine_id, loan_id, amount, payment_status) VALUES (?, ?, ?, 'Unpaid')",
            (fine_id, loan.loan_id, round(float(amount), 2)),
        )
        logger.info(f"Fine assessed: {fine_id} loan={loan.loan_id} amount={amount:.2f}")
        return self._fetch_fine(conn, fine_id)

    def get_fine(self, fine_id: str) -> Optional[Fine]:
        conn = self._connect()
        try:
            return self._fetch_fine(conn, fine_id)
        finally:
            conn.close()

    def set_payment_status(
        self,
        fine_id: str,
        payment_status: PaymentStatus,
        actor: Optional[User] = None,
    ) -> Fine:
        """Mark a fine paid or unpaid. A borrower may only mark their own fine paid."""
        payment_status = PaymentStatus(payment_status)
        conn = self._connect()
        try:
            with transaction(conn):
                fine = self._fetch_fine(conn, fine_id)
                if not fine:
                    raise NotFoundError("Fine not found")
                if actor is not None and not actor.is_staff:
                    loan = self._fetch_loan(conn, fine.loan_id)
                    if not loan or loan.user_id != actor.user_id or payment_status != PaymentStatus.PAID:
                        raise ForbiddenError("Forbidden")
                conn.execute(
                    "UPDATE fines SET payment_status = ?, updated_at = CURRENT_TIMESTAMP WHERE fine_id = ?",
                    (payment_status.value, fine_id),
                )
                fine = self._fetch_fine(conn, fine_id)
        finally:
            conn.close()
        logger.info(f"Fine {fine_id} -> {payment_status.value}")
        return fine

    def get_fine_details(self, fine_id: str) -> Dict[str, Any]:
        conn = self._connect()
        try:
            fine = self._fetch_fine(conn, fine_id)
            if not fine:
                raise NotFoundError("Fine not found")
            return self._fine_details(conn, fine)
        finally:
            conn.close()

    def list_fines(
        self,
        user_id: Optional[str] = None,
        payment_status: Optional[PaymentStatus] = None,
    ) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if user_id:
            clauses.append("l.user_id = ?")
            params.append(user_id)
        if payment_status:
            clauses.append("f.payment_status = ?")
            params.append(PaymentStatus(payment_status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = self._connect()
        try:
            rows = conn.execute(
                f"""
                SELECT f.* FROM fines f
                LEFT JOIN loans l ON l.loan_id = f.loan_id
                {where}
                ORDER BY f.created_at DESC
                """,
                params,
            ).fetchall()
            return [self._fine_details(conn, Fine.from_row(r)) for r in rows]
        finally:
            conn.close()

    def _fine_details(self, conn: sqlite3.Connection, fine: Fine) -> Dict[str, Any]:
        loan = self._fetch_loan(conn, fine.loan_id)
        loan_data = None
        if loan:
            book = self._fetch_book(conn, loan.book_id)
            user_row = conn.execute("SELECT * FROM users WHERE user_id = ?", (loan.user_id,)).fetchone()
            loan_data = {
                **loan.to_dict(),
                "book": book.to_dict() if book else None,
                "user": User.from_row(user_row).to_dict() if user_row else None,
            }
        return {**fine.to_dict(), "loan": loan_data}

    @staticmethod
    def _fetch_fine(conn: sqlite3.Connection, fine_id: str) -> Optional[Fine]:
        row = conn.execute("SELECT * FROM fines WHERE fine_id = ?", (fine_id,)).fetchone()
        return Fine.from_row(row) if row else None

    @staticmethod
    def _fetch_fine_for_loan(conn: sqlite3.Connection, loan_id: str) -> Optional[Fine]:
        row = conn.execute("SELECT * FROM fines WHERE loan_id = ?", (loan_id,)).fetchone()
        return Fine.from_row(row) if row else None

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _normalize_isbn(raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        cleaned = "".join(ch for ch in raw if ch.isalnum())
        return cleaned.upper() or None

    @staticmethod
    def _validate_book_numbers(pages: Optional[int], publication_year: Optional[int]) -> None:
        if pages is not None and pages <= 0:
            raise ValidationError("Pages must be positive")
        if publication_year is not None and not 1000 <= publication_year <= 2100:
            raise ValidationError("Publication year must be between 1000 and 2100")


def _none_if_blank(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None
