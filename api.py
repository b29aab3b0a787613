"""HTTP API for the library circulation service.

The caller identity comes from the ``X-User-Id`` header, which stands in for
the session provider; its role decides what the caller may change.
"""
import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from errors import ForbiddenError, LibraryError, NotFoundError, UnauthorizedError, ValidationError
from library import Library
from models import (
    AvailabilityStatus,
    LoanStatus,
    PaymentStatus,
    ReportType,
    ReservationStatus,
    Role,
    User,
)
from reports import ReportService

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library()
reports = ReportService(library.db_file)

app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    return response


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Schema failures (bad enum values, missing fields) answer like any other ValidationError."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    message = first.get("msg", ValidationError.__doc__)
    if field:
        message = f"{field}: {message}"
    logger.warning(f"{request.method} {request.url.path} rejected: {message}")
    return JSONResponse(status_code=ValidationError.status_code, content={"detail": message, "code": ValidationError.code})


# --- Identity ---
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)


def get_optional_user(user_id: Optional[str] = Security(user_id_header)) -> Optional[User]:
    if not user_id:
        return None
    user = library.get_user(user_id)
    if not user:
        raise UnauthorizedError("Unauthorized")
    return user


def get_current_user(user: Optional[User] = Depends(get_optional_user)) -> User:
    """Dependency: every endpoint except /health and registration needs an identity."""
    if user is None:
        raise UnauthorizedError("Unauthorized")
    return user


def require_staff(user: User = Depends(get_current_user)) -> User:
    if not user.is_staff:
        raise ForbiddenError("Forbidden")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != Role.ADMIN:
        raise ForbiddenError("Forbidden")
    return user


def _scope_user_id(user: User, requested: Optional[str]) -> Optional[str]:
    """Non-staff only ever see their own rows; staff may filter by user."""
    return requested if user.is_staff else user.user_id


# --- Models ---
class BookModel(BaseModel):
    book_id: str
    title: str
    author: str
    isbn: str | None = None
    category: str | None = None
    description: str | None = None
    pages: int | None = None
    publication_year: int | None = None
    cover_image_url: str | None = None
    copies_total: int
    copies_available: int
    availability_status: AvailabilityStatus
    created_at: str | None = None
    updated_at: str | None = None


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str | None = None
    category: str | None = None
    description: str | None = None
    pages: int | None = Field(default=None, gt=0)
    publication_year: int | None = Field(default=None, ge=1000, le=2100)
    cover_image_url: str | None = None
    copies_total: int = Field(default=1, ge=1)
    copies_available: int | None = Field(default=None, ge=0, description="Defaults to copies_total")


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    category: str | None = None
    description: str | None = None
    pages: int | None = Field(default=None, gt=0)
    publication_year: int | None = Field(default=None, ge=1000, le=2100)
    cover_image_url: str | None = None
    copies_total: int | None = Field(default=None, ge=1)
    copies_available: int | None = Field(default=None, ge=0)


class PaginationModel(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class BookListResponse(BaseModel):
    books: List[BookModel]
    pagination: PaginationModel


class UserModel(BaseModel):
    user_id: str
    name: str
    email: str
    role: Role
    phone: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class UserCreateModel(BaseModel):
    name: str = Field(min_length=1)
    email: str = Field(min_length=3)
    phone: str | None = None
    role: Role = Role.STUDENT


class UserCreatedResponse(BaseModel):
    message: str
    user: UserModel


class UserListResponse(BaseModel):
    users: List[UserModel]


class FineModel(BaseModel):
    fine_id: str
    loan_id: str
    amount: float
    payment_status: PaymentStatus
    created_at: str | None = None
    updated_at: str | None = None


class LoanModel(BaseModel):
    loan_id: str
    book_id: str
    user_id: str
    borrow_date: str
    due_date: str
    return_date: str | None = None
    status: LoanStatus
    created_at: str | None = None
    updated_at: str | None = None


class LoanSummaryModel(LoanModel):
    book: BookModel | None = None
    user: UserModel | None = None


class LoanDetailModel(LoanSummaryModel):
    days_overdue: int = 0
    fine: FineModel | None = None


class LoanCreateModel(BaseModel):
    book_id: str
    user_id: str
    borrow_date: date | None = None
    due_date: date | None = None


class LoanUpdateModel(BaseModel):
    action: str
    return_date: date | None = None
    assess_fine: bool | None = Field(default=None, description="Create a fine if the loan is overdue")


class LoanListResponse(BaseModel):
    loans: List[LoanDetailModel]


class ReservationModel(BaseModel):
    reservation_id: str
    book_id: str
    user_id: str
    reservation_date: str
    status: ReservationStatus
    created_at: str | None = None
    updated_at: str | None = None


class ReservationDetailModel(ReservationModel):
    book: BookModel | None = None
    user: UserModel | None = None


class ReservationCreateModel(BaseModel):
    book_id: str
    user_id: str | None = Field(default=None, description="Defaults to the caller")


class ReservationUpdateModel(BaseModel):
    status: ReservationStatus


class ReservationListResponse(BaseModel):
    reservations: List[ReservationDetailModel]


class FineDetailModel(FineModel):
    loan: LoanSummaryModel | None = None


class FineCreateModel(BaseModel):
    loan_id: str
    amount: float | None = Field(default=None, ge=0, description="Computed from overdue days when omitted")


class FineUpdateModel(BaseModel):
    payment_status: PaymentStatus


class FineListResponse(BaseModel):
    fines: List[FineDetailModel]


class ReportMetaModel(BaseModel):
    report_id: str
    generated_by: str
    report_type: ReportType
    date_generated: str


class ReportResponse(BaseModel):
    report: ReportMetaModel
    data: Dict[str, Any]


class MessageResponse(BaseModel):
    message: str


# --- Health ---
@app.get("/health")
def health():
    """Lightweight health check: database reachability and catalog size."""
    db_ok = True
    total_books = 0
    try:
        total_books = library.count_books()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        db_ok = False
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
        "total_books": total_books,
    }


# --- Books ---
@app.get("/books", response_model=BookListResponse)
def list_books(
    search: Optional[str] = Query(None, description="Title, author or ISBN substring"),
    category: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user: User = Depends(get_current_user),
):
    limit = min(limit or settings.default_page_size, settings.max_page_size)
    books, total = library.list_books(search=search, category=category, page=page, limit=limit)
    return {
        "books": [b.to_dict() for b in books],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str, user: User = Depends(get_current_user)):
    return library.require_book(book_id).to_dict()


@app.post("/books", response_model=BookModel, status_code=201)
def create_book(payload: BookCreateModel, user: User = Depends(require_staff)):
    book = library.add_book(**payload.model_dump())
    return book.to_dict()


@app.put("/books/{book_id}", response_model=BookModel)
def update_book(book_id: str, payload: BookUpdateModel, user: User = Depends(require_staff)):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("Nothing to update")
    return library.update_book(book_id, **changes).to_dict()


@app.delete("/books/{book_id}", response_model=MessageResponse)
def delete_book(book_id: str, user: User = Depends(require_staff)):
    if not library.remove_book(book_id):
        raise NotFoundError("Book not found")
    return {"message": "Book deleted successfully"}


# --- Users ---
@app.post("/users", response_model=UserCreatedResponse, status_code=201)
def register_user(payload: UserCreateModel, caller: Optional[User] = Depends(get_optional_user)):
    """Open registration for Students and Members; staff accounts need an Admin caller."""
    if payload.role.is_staff and (caller is None or caller.role != Role.ADMIN):
        raise ForbiddenError("Only an Admin can create Admin or Librarian accounts")
    user = library.add_user(payload.name, payload.email, role=payload.role, phone=payload.phone)
    return {"message": "User created successfully", "user": user.to_dict()}


@app.get("/users", response_model=UserListResponse)
def list_users(
    role: Optional[Role] = None,
    search: Optional[str] = None,
    user: User = Depends(require_admin),
):
    return {"users": [u.to_dict() for u in library.list_users(role=role, search=search)]}


@app.get("/users/me", response_model=UserModel)
def get_me(user: User = Depends(get_current_user)):
    return user.to_dict()


@app.get("/users/{user_id}", response_model=UserModel)
def get_user(user_id: str, user: User = Depends(get_current_user)):
    if user.user_id != user_id and user.role != Role.ADMIN:
        raise ForbiddenError("Forbidden")
    return library.require_user(user_id).to_dict()


# --- Loans ---
@app.get("/loans", response_model=LoanListResponse)
def list_loans(
    status: Optional[LoanStatus] = None,
    user_id: Optional[str] = None,
    user: User = Depends(get_current_user),
):
    return {"loans": library.list_loans(user_id=_scope_user_id(user, user_id), status=status)}


@app.post("/loans", response_model=LoanDetailModel, status_code=201)
def create_loan(payload: LoanCreateModel, user: User = Depends(require_staff)):
    loan = library.create_loan(
        payload.book_id,
        payload.user_id,
        borrow_date=payload.borrow_date,
        due_date=payload.due_date,
    )
    return library.get_loan_details(loan.loan_id)


@app.get("/loans/{loan_id}", response_model=LoanDetailModel)
def get_loan(loan_id: str, user: User = Depends(get_current_user)):
    details = library.get_loan_details(loan_id)
    if not user.is_staff and details["user_id"] != user.user_id:
        raise ForbiddenError("Forbidden")
    return details


@app.patch("/loans/{loan_id}", response_model=LoanDetailModel)
def update_loan(loan_id: str, payload: LoanUpdateModel, user: User = Depends(require_staff)):
    if payload.action != "return":
        raise ValidationError("Invalid action")
    library.return_loan(loan_id, return_date=payload.return_date, assess_fine=payload.assess_fine)
    return library.get_loan_details(loan_id)


# --- Reservations ---
@app.get("/reservations", response_model=ReservationListResponse)
def list_reservations(
    status: Optional[ReservationStatus] = None,
    user_id: Optional[str] = None,
    user: User = Depends(get_current_user),
):
    return {"reservations": library.list_reservations(user_id=_scope_user_id(user, user_id), status=status)}


@app.post("/reservations", response_model=ReservationDetailModel, status_code=201)
def create_reservation(payload: ReservationCreateModel, user: User = Depends(get_current_user)):
    target_user_id = payload.user_id or user.user_id
    if target_user_id != user.user_id and not user.is_staff:
        raise ForbiddenError("Forbidden")
    reservation = library.create_reservation(payload.book_id, target_user_id)
    return library.get_reservation_details(reservation.reservation_id)


@app.patch("/reservations/{reservation_id}", response_model=ReservationDetailModel)
def update_reservation(
    reservation_id: str,
    payload: ReservationUpdateModel,
    user: User = Depends(get_current_user),
):
    library.update_reservation_status(reservation_id, payload.status, actor=user)
    return library.get_reservation_details(reservation_id)


@app.delete("/reservations/{reservation_id}", response_model=MessageResponse)
def delete_reservation(reservation_id: str, user: User = Depends(get_current_user)):
    library.cancel_reservation(reservation_id, actor=user)
    return {"message": "Reservation deleted successfully"}


# --- Fines ---
@app.get("/fines", response_model=FineListResponse)
def list_fines(
    payment_status: Optional[PaymentStatus] = None,
    user_id: Optional[str] = None,
    user: User = Depends(get_current_user),
):
    return {"fines": library.list_fines(user_id=_scope_user_id(user, user_id), payment_status=payment_status)}


@app.post("/fines", response_model=FineDetailModel, status_code=201)
def create_fine(payload: FineCreateModel, user: User = Depends(require_staff)):
    fine = library.assess_fine(payload.loan_id, amount=payload.amount)
    return library.get_fine_details(fine.fine_id)


@app.patch("/fines/{fine_id}", response_model=FineDetailModel)
def update_fine(fine_id: str, payload: FineUpdateModel, user: User = Depends(get_current_user)):
    library.set_payment_status(fine_id, payload.payment_status, actor=user)
    return library.get_fine_details(fine_id)


# --- Reports ---
@app.get("/reports", response_model=ReportResponse)
def get_report(
    report_type: Optional[str] = Query(None, alias="type", description=", ".join(t.value for t in ReportType)),
    user: User = Depends(require_staff),
):
    if not report_type:
        raise ValidationError("Invalid report type")
    return reports.generate(report_type, generated_by=user.user_id)
