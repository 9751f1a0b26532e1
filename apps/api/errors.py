"""Domain exceptions raised by services and translated to JSON by main.py"""
from fastapi import status


class ClinicError(Exception):
    """Base class for business-rule violations surfaced to API callers"""

    status_code: int = status.HTTP_400_BAD_REQUEST
    default_message: str = "Request could not be processed"

    def __init__(self, message: str = None, status_code: int = None):
        self.message = message or self.default_message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)


class ValidationError(ClinicError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class AuthenticationError(ClinicError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "Invalid authentication credentials"


class AuthorizationError(ClinicError):
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized"


class NotFoundError(ClinicError):
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class ConflictError(ClinicError):
    status_code = status.HTTP_409_CONFLICT
    default_message = "Resource already exists"


class BookingConflictError(ClinicError):
    """Booking refused by the conflict guard"""
    status_code = status.HTTP_400_BAD_REQUEST


class SlotTakenError(BookingConflictError):
    default_message = "Slot already booked"


class PendingLimitError(BookingConflictError):
    default_message = "Maximum pending appointments reached"


class RateLimitError(ClinicError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Too many requests. Please try again later."


class ServiceUnavailableError(ClinicError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Service temporarily unavailable"
