"""Circulation rules: due dates, overdue days, fines, availability, reservation transitions.

Everything here is pure; ``library.Library`` applies these rules to stored rows.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, FrozenSet, Optional, Union

from config import settings
from errors import ValidationError
from models import AvailabilityStatus, ReservationStatus

DateLike = Union[str, date, datetime]

RESERVATION_TRANSITIONS: Dict[ReservationStatus, FrozenSet[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset({ReservationStatus.COLLECTED, ReservationStatus.CANCELLED}),
    ReservationStatus.COLLECTED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
}


def to_date(value: DateLike) -> date:
    """Coerce an ISO string, date or datetime to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if len(text) > 10:
            # Full timestamps are accepted; only the calendar day is kept
            if text[10] not in "T ":
                raise ValueError(text)
            return datetime.fromisoformat(text).date()
        return date.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"Invalid date: {value!r}") from e


def calculate_due_date(borrow_date: DateLike, days: Optional[int] = None) -> date:
    period = settings.loan_period_days if days is None else days
    return to_date(borrow_date) + timedelta(days=period)


def days_overdue(due_date: DateLike, today: Optional[DateLike] = None) -> int:
    """Whole days past ``due_date``; 0 when not yet due."""
    ref = to_date(today) if today is not None else date.today()
    diff = (ref - to_date(due_date)).days
    return diff if diff > 0 else 0


def calculate_fine(days: int, rate_per_day: float = 1.0) -> float:
    if days < 0:
        raise ValidationError("Overdue days cannot be negative")
    if rate_per_day < 0:
        raise ValidationError("Fine rate cannot be negative")
    return days * rate_per_day


def availability_for(copies_available: int) -> AvailabilityStatus:
    if copies_available > 0:
        return AvailabilityStatus.AVAILABLE
    return AvailabilityStatus.BORROWED


def validate_copies(copies_total: int, copies_available: int) -> None:
    if copies_total < 1:
        raise ValidationError("Total copies must be at least 1")
    if copies_available < 0:
        raise ValidationError("Available copies cannot be negative")
    if copies_available > copies_total:
        raise ValidationError("Available copies cannot exceed total copies")


def check_reservation_transition(current: ReservationStatus, new: ReservationStatus) -> None:
    """Reject status changes out of a terminal state. Re-setting the same status is allowed.

    Collected and Cancelled are terminal: a move such as Cancelled to Collected,
    which a plain status overwrite would accept, fails with ValidationError.
    """
    if current == new:
        return
    if new not in RESERVATION_TRANSITIONS[current]:
        raise ValidationError(
            f"Cannot change reservation status from {current.value} to {new.value}"
        )
