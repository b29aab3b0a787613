class LibraryError(Exception):
    """Base error for circulation operations. Carries the HTTP status it maps to."""

    status_code = 500
    code = "library_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self)


class UnauthorizedError(LibraryError):
    """Authentication required"""
    status_code = 401
    code = "unauthorized"


class ForbiddenError(LibraryError):
    """Forbidden"""
    status_code = 403
    code = "forbidden"


class NotFoundError(LibraryError):
    """Not found"""
    status_code = 404
    code = "not_found"


class ValidationError(LibraryError):
    """Invalid input"""
    status_code = 400
    code = "validation_error"


class UnavailableError(LibraryError):
    """Book is not available"""
    status_code = 400
    code = "unavailable"


class DuplicateLoanError(LibraryError):
    """User already has this book borrowed"""
    status_code = 400
    code = "duplicate_loan"


class DuplicateReservationError(LibraryError):
    """User already has a pending reservation for this book"""
    status_code = 400
    code = "duplicate_reservation"
