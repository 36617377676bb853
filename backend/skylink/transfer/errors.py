"""Error taxonomy for the transfer subsystem.

Each error carries the HTTP status the control plane answers with.
"""


class TransferError(Exception):
    """Base class for failures scoped to a single upload or download."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class BadUpload(TransferError):
    """Malformed request: wrong Content-Type, missing boundary, unparsable body."""
    status_code = 400


class AccessDenied(TransferError):
    status_code = 403


class PayloadTooLarge(TransferError):
    status_code = 413


class UnsupportedMediaType(TransferError):
    status_code = 415


class RateLimited(TransferError):
    status_code = 429


class TransferIOError(TransferError):
    """Disk, bind, dial or socket failure."""
    status_code = 500
