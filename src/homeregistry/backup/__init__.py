"""
Backup and restore for Home Registry.

Point-in-time snapshots of the whole dataset, kept as JSON files in a flat
catalog directory, and atomic replacement of the live dataset with a
snapshot's contents. Every restore is preceded by an automatic safety
snapshot of the current state.

Usage:
    from homeregistry.backup import BackupService

    service = BackupService.from_settings(settings)
    caller = service.identity.resolve("admin")

    entry = service.create(caller)
    outcome = service.restore(caller, entry.name)
"""

from homeregistry.backup.catalog import CatalogEntry, SnapshotCatalog, format_file_size
from homeregistry.backup.document import (
    FORMAT_VERSION,
    Snapshot,
    SnapshotMetadata,
    parse_snapshot,
)
from homeregistry.backup.errors import (
    ERROR_KINDS,
    AuthorizationError,
    BackupError,
    NotFoundError,
    PayloadTooLargeError,
    RestoreInProgressError,
    SafetyBackupFailedError,
    StorageError,
    TransactionError,
    ValidationError,
)
from homeregistry.backup.exporter import Exporter
from homeregistry.backup.guard import AccessGuard
from homeregistry.backup.importer import Importer, RestoreOutcome, RestoreState
from homeregistry.backup.naming import generate_snapshot_name, validate_snapshot_name
from homeregistry.backup.sealing import SecretSealer
from homeregistry.backup.service import (
    BackupService,
    SnapshotDownload,
    error_response,
    success_response,
)

__all__ = [
    # Facade
    "BackupService",
    "SnapshotDownload",
    "success_response",
    "error_response",
    # Components
    "AccessGuard",
    "Exporter",
    "Importer",
    "RestoreOutcome",
    "RestoreState",
    "SecretSealer",
    "SnapshotCatalog",
    "CatalogEntry",
    "format_file_size",
    # Documents
    "FORMAT_VERSION",
    "Snapshot",
    "SnapshotMetadata",
    "parse_snapshot",
    "generate_snapshot_name",
    "validate_snapshot_name",
    # Exceptions
    "ERROR_KINDS",
    "BackupError",
    "AuthorizationError",
    "ValidationError",
    "NotFoundError",
    "StorageError",
    "TransactionError",
    "SafetyBackupFailedError",
    "PayloadTooLargeError",
    "RestoreInProgressError",
]
