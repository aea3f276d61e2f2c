"""
Backup operation facade.

BackupService is the single entry point for the six administrator
operations (create, list, download, upload, restore, delete) plus snapshot
inspection. Every operation first passes the access guard, then validates any
snapshot name it was given, and only then touches the catalog or the live
store. Errors are raised as BackupError subclasses; the HTTP layer and the CLI
turn them into structured responses with ``error_response``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from homeregistry.auth import Caller, IdentityService, StoreIdentityService
from homeregistry.backup.catalog import CatalogEntry, SnapshotCatalog
from homeregistry.backup.document import SnapshotMetadata, parse_snapshot
from homeregistry.backup.errors import (
    BackupError,
    PayloadTooLargeError,
    SafetyBackupFailedError,
    TransactionError,
    ValidationError,
)
from homeregistry.backup.exporter import Exporter
from homeregistry.backup.guard import AccessGuard
from homeregistry.backup.importer import Importer, RestoreOutcome
from homeregistry.backup.naming import (
    KIND_SAFETY,
    SNAPSHOT_PREFIX,
    generate_snapshot_name,
    snapshot_kind,
    validate_snapshot_name,
)
from homeregistry.backup.sealing import SecretSealer
from homeregistry.storage.live_store import LiveStore

if TYPE_CHECKING:
    from homeregistry.config.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024

SNAPSHOT_CONTENT_TYPE = "application/json"


@dataclass
class SnapshotDownload:
    """Bytes of a snapshot ready to be sent to a client."""

    filename: str
    content: bytes
    content_type: str = SNAPSHOT_CONTENT_TYPE

    @property
    def content_disposition(self) -> str:
        """Value of the Content-Disposition header for this download."""
        ascii_name = self.filename.encode("ascii", "replace").decode("ascii")
        value = f'attachment; filename="{ascii_name}"'
        if ascii_name != self.filename:
            value += f"; filename*=UTF-8''{quote(self.filename)}"
        return value


class BackupService:
    """
    Administrator-only backup and restore operations.

    Example:
        service = BackupService.from_settings(load_config())
        caller = service.identity.resolve("admin")

        entry = service.create(caller, description="Before moving house")
        outcome = service.restore(caller, entry.name)
        print(outcome.safety_snapshot)

    Attributes:
        store: Live store holding the dataset.
        catalog: Snapshot catalog.
        identity: Identity service consulted by the access guard.
        max_upload_bytes: Largest accepted uploaded document.
    """

    def __init__(
        self,
        store: LiveStore,
        catalog: SnapshotCatalog,
        identity: IdentityService,
        sealer: SecretSealer | None = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        seal_exports: bool = True,
    ) -> None:
        """
        Initialize the service.

        Args:
            store: Live store holding the dataset.
            catalog: Snapshot catalog.
            identity: Identity service for the administrator check.
            sealer: Unseals sealed snapshots on restore, and seals new
                snapshots when ``seal_exports`` is True.
            max_upload_bytes: Largest accepted uploaded document.
            seal_exports: Seal secret fields of snapshots this service creates.
        """
        self.store = store
        self.catalog = catalog
        self.identity = identity
        self.max_upload_bytes = max_upload_bytes
        self.guard = AccessGuard(identity)
        self.exporter = Exporter(store, sealer if seal_exports else None)
        self.importer = Importer(store, catalog, self.exporter, sealer)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        identity: IdentityService | None = None,
    ) -> BackupService:
        """
        Build a service from configuration.

        Raises:
            ConfigurationError: If sealing is enabled without a passphrase,
                or the passphrase is unusable.
        """
        from homeregistry.config.settings import (
            PASSPHRASE_ENV_VAR,
            ConfigurationError,
            get_backup_passphrase,
        )

        passphrase = get_backup_passphrase()
        if settings.backup.seal_secrets and passphrase is None:
            raise ConfigurationError(
                f"backup.seal_secrets is enabled but {PASSPHRASE_ENV_VAR} is not set"
            )

        sealer = None
        if passphrase is not None:
            try:
                sealer = SecretSealer(passphrase, iterations=settings.backup.seal_iterations)
            except ValueError as e:
                raise ConfigurationError(f"{PASSPHRASE_ENV_VAR}: {e}") from e

        store = LiveStore(settings.database_path)
        return cls(
            store=store,
            catalog=SnapshotCatalog(settings.backup_dir),
            identity=identity or StoreIdentityService(store),
            sealer=sealer,
            max_upload_bytes=settings.backup.max_upload_bytes,
            seal_exports=settings.backup.seal_secrets,
        )

    def create(self, caller: Caller | None, description: str | None = None) -> CatalogEntry:
        """
        Snapshot the live store into the catalog.

        Returns:
            Catalog entry of the new snapshot.
        """
        self.guard.require_privileged(caller)

        snapshot = self.exporter.export(description=description)
        entry = self.catalog.write_unique(
            generate_snapshot_name(SNAPSHOT_PREFIX), snapshot.to_bytes()
        )
        logger.info(f"Backup created: {entry.name} ({entry.size})")
        return entry

    def list(self, caller: Caller | None) -> list[CatalogEntry]:
        """List catalogued snapshots, newest first."""
        self.guard.require_privileged(caller)
        return self.catalog.list()

    def download(self, caller: Caller | None, name: str) -> SnapshotDownload:
        """Fetch a snapshot's bytes for download."""
        self.guard.require_privileged(caller)
        validate_snapshot_name(name)

        content = self.catalog.read(name)
        logger.info(f"Backup downloaded: {name}")
        return SnapshotDownload(filename=name, content=content)

    def upload(self, caller: Caller | None, content: bytes, filename: str) -> CatalogEntry:
        """
        Add an externally supplied snapshot to the catalog.

        The document must pass the same structural validation and version
        gate as a restore. A taken name gets a numeric suffix.

        Raises:
            PayloadTooLargeError: If the document exceeds the upload ceiling.
            ValidationError: If the name or the document is invalid.
        """
        self.guard.require_privileged(caller)

        if len(content) > self.max_upload_bytes:
            raise PayloadTooLargeError.for_size(len(content), self.max_upload_bytes)

        validate_snapshot_name(filename)
        if snapshot_kind(filename) == KIND_SAFETY:
            raise ValidationError(
                "Snapshot names with the automatic safety prefix are reserved"
            )

        snapshot = parse_snapshot(content)
        entry = self.catalog.write_unique(filename, content)
        logger.info(
            f"Backup uploaded: {entry.name} ({entry.size}, "
            f"{sum(snapshot.record_counts().values())} records)"
        )
        return entry

    def restore(self, caller: Caller | None, name: str) -> RestoreOutcome:
        """
        Replace the live dataset with a catalogued snapshot.

        A safety snapshot of the current state is always written first.
        """
        caller = self.guard.require_privileged(caller)
        validate_snapshot_name(name)

        logger.info(f"Restore requested by {caller.username}: {name}")
        return self.importer.restore(name)

    def delete(self, caller: Caller | None, name: str) -> None:
        """Delete a catalogued snapshot."""
        self.guard.require_privileged(caller)
        validate_snapshot_name(name)

        self.catalog.delete(name)
        logger.info(f"Backup deleted: {name}")

    def snapshot_info(self, caller: Caller | None, name: str) -> SnapshotMetadata:
        """
        Read a snapshot's metadata without restoring it.

        Raises:
            ValidationError: If the document is not a valid snapshot.
        """
        self.guard.require_privileged(caller)
        validate_snapshot_name(name)

        return parse_snapshot(self.catalog.read(name)).metadata


def success_response(data: Any = None, message: str | None = None) -> dict[str, Any]:
    """Build a structured success payload."""
    return {"success": True, "data": data, "message": message, "error": None}


def error_response(error: BackupError) -> dict[str, Any]:
    """
    Build a structured error payload.

    Restore failures also report the safety snapshot name (or None when none
    was written), so the operator knows how to get back.
    """
    payload: dict[str, Any] = {
        "success": False,
        "data": None,
        "message": error.message,
        "error": error.kind,
    }
    if error.safety_snapshot is not None or isinstance(
        error, (TransactionError, SafetyBackupFailedError)
    ):
        payload["safety_snapshot"] = error.safety_snapshot
    return payload
