from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class Role(str, Enum):
    """Authorization tier of a user"""
    ADMIN = "Admin"
    LIBRARIAN = "Librarian"
    STUDENT = "Student"
    MEMBER = "Member"

    @property
    def is_staff(self) -> bool:
        return self in (Role.ADMIN, Role.LIBRARIAN)


class AvailabilityStatus(str, Enum):
    AVAILABLE = "Available"
    BORROWED = "Borrowed"
    # Declared in the schema but never assigned by the lifecycle rules
    RESERVED = "Reserved"


class LoanStatus(str, Enum):
    BORROWED = "Borrowed"
    RETURNED = "Returned"


class PaymentStatus(str, Enum):
    PAID = "Paid"
    UNPAID = "Unpaid"


class ReservationStatus(str, Enum):
    PENDING = "Pending"
    COLLECTED = "Collected"
    CANCELLED = "Cancelled"


class ReportType(str, Enum):
    BORROWING_TRENDS = "borrowing_trends"
    POPULAR_BOOKS = "popular_books"
    OVERDUE = "overdue"
    FINES_COLLECTED = "fines_collected"
    ACTIVE_USERS = "active_users"


@dataclass
class User:
    user_id: str
    name: str
    email: str
    role: Role = Role.STUDENT
    phone: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role.is_staff

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "phone": self.phone,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "User":
        data = dict(row)
        return User(
            user_id=data["user_id"],
            name=data["name"],
            email=data["email"],
            role=Role(data["role"]),
            phone=data.get("phone"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Book:
    """A catalog entry with its copy counters."""
    book_id: str
    title: str
    author: str
    isbn: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    pages: Optional[int] = None
    publication_year: Optional[int] = None
    cover_image_url: Optional[str] = None
    copies_total: int = 1
    copies_available: int = 1
    availability_status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.copies_available}/{self.copies_total} available)"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "category": self.category,
            "description": self.description,
            "pages": self.pages,
            "publication_year": self.publication_year,
            "cover_image_url": self.cover_image_url,
            "copies_total": self.copies_total,
            "copies_available": self.copies_available,
            "availability_status": self.availability_status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "Book":
        data = dict(row)
        return Book(
            book_id=data["book_id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            category=data.get("category"),
            description=data.get("description"),
            pages=data.get("pages"),
            publication_year=data.get("publication_year"),
            cover_image_url=data.get("cover_image_url"),
            copies_total=int(data["copies_total"]),
            copies_available=int(data["copies_available"]),
            availability_status=AvailabilityStatus(data["availability_status"]),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Loan:
    loan_id: str
    book_id: str
    user_id: str
    borrow_date: str
    due_date: str
    return_date: Optional[str] = None
    status: LoanStatus = LoanStatus.BORROWED
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.BORROWED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loan_id": self.loan_id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "borrow_date": self.borrow_date,
            "due_date": self.due_date,
            "return_date": self.return_date,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "Loan":
        data = dict(row)
        return Loan(
            loan_id=data["loan_id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            borrow_date=data["borrow_date"],
            due_date=data["due_date"],
            return_date=data.get("return_date"),
            status=LoanStatus(data["status"]),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Fine:
    fine_id: str
    loan_id: str
    amount: float = 0.0
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fine_id": self.fine_id,
            "loan_id": self.loan_id,
            "amount": self.amount,
            "payment_status": self.payment_status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "Fine":
        data = dict(row)
        return Fine(
            fine_id=data["fine_id"],
            loan_id=data["loan_id"],
            amount=float(data["amount"]),
            payment_status=PaymentStatus(data["payment_status"]),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class Reservation:
    reservation_id: str
    book_id: str
    user_id: str
    reservation_date: str
    status: ReservationStatus = ReservationStatus.PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "reservation_date": self.reservation_date,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Any) -> "Reservation":
        data = dict(row)
        return Reservation(
            reservation_id=data["reservation_id"],
            book_id=data["book_id"],
            user_id=data["user_id"],
            reservation_date=data["reservation_date"],
            status=ReservationStatus(data["status"]),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
