"""
Error taxonomy for Nerve Cord.

Domain code raises these; the FastAPI exception handler in `nervecord.main`
renders every one of them as `{"error": message}` with `status_code`.
"""


class BrokerError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(BrokerError):
    """Missing/malformed field or unreadable request body."""

    status_code = 400


class AuthError(BrokerError):
    """No credential, or one that matches no configured token."""

    status_code = 401


class ForbiddenError(BrokerError):
    """Valid credential whose tier lacks the capability, or a failed admin check."""

    status_code = 403


class NotFoundError(BrokerError):
    status_code = 404


class StorageError(BrokerError):
    """Disk/database read or write failure. Logged at the durability boundary."""

    status_code = 500
