"""
Error taxonomy for backup and restore operations.

Every error carries a stable ``kind`` string so that the HTTP layer, the
API client and the CLI can map it without inspecting messages. Errors raised
by a restore attempt also record whether a safety snapshot was written and
under which name, so the operator always knows the recovery path.
"""

from __future__ import annotations

from typing import Any


class BackupError(Exception):
    """Base exception for backup and restore errors."""

    kind = "internal"

    def __init__(self, message: str, safety_snapshot: str | None = None) -> None:
        self.message = message
        self.safety_snapshot = safety_snapshot
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a structured dictionary."""
        return {"kind": self.kind, "message": self.message}


class AuthorizationError(BackupError):
    """Raised when the caller is not an authenticated administrator."""

    kind = "authorization"

    def __init__(
        self,
        message: str = "Administrator privileges required",
        authenticated: bool = True,
    ) -> None:
        super().__init__(message)
        self.authenticated = authenticated


class ValidationError(BackupError):
    """Raised when a snapshot name or document breaks a validation rule."""

    kind = "validation"


class NotFoundError(BackupError):
    """Raised when a named snapshot does not exist."""

    kind = "not_found"


class StorageError(BackupError):
    """Raised when snapshot bytes cannot be read, written or deleted."""

    kind = "storage"


class TransactionError(BackupError):
    """
    Raised when the transactional phase of a restore fails.

    The live store has been rolled back in full when this is raised.
    """

    kind = "transaction"


class SafetyBackupFailedError(BackupError):
    """Raised when the mandatory pre-restore snapshot cannot be created."""

    kind = "safety_backup_failed"


class PayloadTooLargeError(BackupError):
    """Raised when an uploaded document exceeds the configured ceiling."""

    kind = "payload_too_large"

    def __init__(
        self,
        message: str,
        size: int | None = None,
        limit: int | None = None,
    ) -> None:
        super().__init__(message)
        self.size = size
        self.limit = limit

    @classmethod
    def for_size(cls, size: int, limit: int) -> PayloadTooLargeError:
        """Build the error for a document of a known size."""
        return cls(
            f"Uploaded document is {size:,} bytes; the limit is {limit:,} bytes",
            size=size,
            limit=limit,
        )


class RestoreInProgressError(BackupError):
    """Raised when a restore is requested while another one is running."""

    kind = "restore_in_progress"


ERROR_KINDS: dict[str, type[BackupError]] = {
    cls.kind: cls
    for cls in (
        BackupError,
        AuthorizationError,
        ValidationError,
        NotFoundError,
        StorageError,
        TransactionError,
        SafetyBackupFailedError,
        PayloadTooLargeError,
        RestoreInProgressError,
    )
}
