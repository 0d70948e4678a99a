"""
Domain Errors

Only RecordNotFoundError aborts a request. The others describe
attachment-level problems that are logged, reported and skipped.
"""

from typing import Optional


class RecordNotFoundError(Exception):
    """Raised when the referenced record id does not exist."""

    def __init__(self, record_id: int):
        self.record_id = record_id
        super().__init__(f"Record {record_id} not found")


class DeltaValidationError(ValueError):
    """Raised when a client-supplied delta field cannot be parsed."""

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")


class StoreFailure(Exception):
    """Raised when a blob-store or metadata-store operation fails."""

    def __init__(self, operation: str, key: Optional[str] = None, cause: Optional[BaseException] = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        detail = f"{operation} failed"
        if key:
            detail += f" for {key}"
        if cause is not None:
            detail += f": {cause}"
        super().__init__(detail)


class FileTooLargeError(Exception):
    """Raised when an upload exceeds the maximum allowed size."""
    pass
