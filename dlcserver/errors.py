"""Failure taxonomy for file delivery. Each error knows its HTTP status."""


class ServeError(Exception):
    """Base class for classified delivery failures."""

    status = 500
    reason = "Server error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)


class NotFound(ServeError):
    """No regular file at any candidate path."""

    status = 404
    reason = "File not found"


class Forbidden(ServeError):
    """The resolved path escapes every configured root."""

    status = 403
    reason = "Access denied"


class RangeNotSatisfiable(ServeError):
    status = 416
    reason = "Range Not Satisfiable"

    def __init__(self, size: int, message: str = ""):
        super().__init__(message)
        self.size = size


class TransferFailure(ServeError):
    """I/O error after the read source was opened."""

    status = 500
    reason = "Error streaming file"
