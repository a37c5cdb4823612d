"""Named errors returned to callers of the negotiation operations.

Every error carries the HTTP status the API layer maps it to, so the routers
never need to translate individual exception types.
"""

from fastapi import status


class BookingError(Exception):
    """Base class for request/hold errors surfaced to callers."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "BOOKING_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, request_id: str):
        super().__init__(f"Booking request {request_id} not found")
        self.request_id = request_id


class VersionConflict(BookingError):
    """The record changed since the caller read it."""

    status_code = status.HTTP_409_CONFLICT
    code = "VERSION_CONFLICT"

    def __init__(self, request_id: str, expected: int, actual: int | None = None, detail: str | None = None):
        super().__init__(
            detail
            or f"Booking request {request_id} is at version {actual}, not {expected}; reread and retry"
        )
        self.request_id = request_id
        self.expected = expected
        self.actual = actual


class RequestAlreadyResolved(VersionConflict):
    """A competing mutation moved the record somewhere the action cannot follow."""

    code = "ALREADY_RESOLVED"

    def __init__(self, request_id: str, expected: int, actual: int, current_status: str):
        super().__init__(
            request_id,
            expected,
            actual,
            detail=f"Booking request {request_id} was just resolved ({current_status})",
        )
        self.current_status = current_status


class InvalidTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_TRANSITION"


class InvalidTimeError(BookingError):
    status_code = 422
    code = "INVALID_TIME"


class AlternatesError(BookingError):
    status_code = 422


class TooManyAlternatesError(AlternatesError):
    code = "TOO_MANY_ALTERNATES"

    def __init__(self, count: int, limit: int):
        super().__init__(f"At most {limit} alternates may be offered, got {count}")


class EmptyAlternatesError(AlternatesError):
    code = "EMPTY_ALTERNATES"

    def __init__(self):
        super().__init__("At least one alternate time must be offered")
