"""Custom application exceptions.

Every exception carries a stable machine-readable ``code`` next to the
human message so clients can branch on it.
"""


class AppException(Exception):
    """Base application exception."""

    code = "internal_error"

    def __init__(self, message: str, status_code: int = 500, code: str | None = None):
        """Initialize exception with message, status code and error code."""
        self.message = message
        self.status_code = status_code
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    code = "not_found"

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    code = "unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        """Initialize with 401 status code."""
        super().__init__(message, status_code=401)


class ForbiddenException(AppException):
    """Forbidden access exception."""

    code = "forbidden"

    def __init__(self, message: str = "Forbidden"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class BadRequestException(AppException):
    """Bad request exception."""

    code = "bad_request"

    def __init__(self, message: str = "Bad request"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class ConflictException(AppException):
    """Conflict exception."""

    code = "conflict"

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class ValidationException(AppException):
    """Validation error exception."""

    code = "validation_error"

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)


class InvalidTransitionException(ConflictException):
    """Target status is not reachable from the current status."""

    code = "invalid_transition"

    def __init__(
        self,
        current_status: str,
        target_status: str,
        message: str | None = None,
    ):
        """Initialize with the rejected edge."""
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            message or f"Cannot move appointment from {current_status} to {target_status}"
        )


class SlotUnavailableException(ConflictException):
    """Slot was already booked or is not open for booking."""

    code = "slot_unavailable"

    def __init__(self, message: str = "Slot already booked"):
        """Initialize with 409 status code."""
        super().__init__(message)


class DuplicateBookingException(ConflictException):
    """Patient already holds a blocking appointment for the day or specialty."""

    code = "duplicate_booking"

    def __init__(self, message: str = "Patient already has an appointment on this day"):
        """Initialize with 409 status code."""
        super().__init__(message)


class HoldExpiredException(BadRequestException):
    """Payment attempted after the hold deadline."""

    code = "hold_expired"

    def __init__(self, message: str = "Payment time expired, please rebook"):
        """Initialize with 400 status code."""
        super().__init__(message)


class TooLateToCancelException(BadRequestException):
    """Cancellation requested inside the cutoff window."""

    code = "too_late_to_cancel"

    def __init__(self, message: str = "Appointments cannot be cancelled this close to the start"):
        """Initialize with 400 status code."""
        super().__init__(message)


class ConsentExpiredException(AppException):
    """Extension consent arrived after its deadline."""

    code = "consent_expired"

    def __init__(self, message: str = "Consent request has expired"):
        """Initialize with 410 status code."""
        super().__init__(message, status_code=410)
