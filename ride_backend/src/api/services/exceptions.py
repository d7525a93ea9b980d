"""Custom exceptions for ride lifecycle and pricing operations."""


class RideServiceError(Exception):
    """Base class for errors raised by the ride services."""
    pass


class RideNotFoundError(RideServiceError):
    """Raised when a ride cannot be found."""
    pass


class PreconditionFailedError(RideServiceError):
    """
    Raised when a ride is not in a status that permits the operation.

    Also raised when a conditional update affects zero rows because another
    writer changed the ride between the read and the write.
    """

    def __init__(self, message: str, *, current_status=None):
        super().__init__(message)
        self.current_status = current_status


class RideValidationError(RideServiceError):
    """Raised when input to a ride operation is malformed; nothing is written."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = errors or []
