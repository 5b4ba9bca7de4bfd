"""Domain errors raised by the booking and payment services.

Services raise these; routes turn them into HTTP responses with
``to_http_exception()``. Nothing in the core retries on its own.
"""

from typing import Any

from fastapi import HTTPException, status


class BookingError(Exception):
    """Base class for every error the booking core reports to its caller."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = False

    def __init__(self, message: str, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                'message': self.message,
                'code': self.code,
                'details': self.details,
                'retryable': self.retryable,
            },
        )


class ValidationError(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthorized(BookingError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransition(BookingError):
    """The appointment is not in a status that allows the requested move."""

    status_code = status.HTTP_409_CONFLICT


class SlotConflictError(BookingError):
    status_code = status.HTTP_409_CONFLICT


class UnknownPaymentReference(BookingError):
    """No local payment was ever created for this processor reference."""

    status_code = status.HTTP_404_NOT_FOUND


class PreconditionFailed(BookingError):
    status_code = status.HTTP_409_CONFLICT


class ExternalServiceError(BookingError):
    """The payment processor could not be reached or returned an error."""

    status_code = status.HTTP_502_BAD_GATEWAY
    retryable = True
