"""
Errors raised by the sqlite store. All derive from StorageError.
"""

from typing import Optional


class StorageError(Exception):
    """The local store could not be read or written."""


class DatabaseUnavailableError(StorageError):
    """Raised when the database file cannot be opened or is not open."""

    def __init__(self, operation: str = "database operation", cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(
            f"Database not available for {operation}{detail}. "
            "Check the database path and initialization."
        )


class DatabaseOperationError(StorageError):
    """Raised when a database operation fails."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Database operation '{operation}' failed: {cause}")


class SchemaMismatch(StorageError):
    """Raised when the store's schema is not the one this build expects."""

    def __init__(self, expected: int, found: Optional[int], detail: str = ""):
        self.expected = expected
        self.found = found
        message = f"Schema mismatch: expected version {expected}, found {found}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
