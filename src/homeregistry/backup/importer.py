"""
Snapshot importer: the restore state machine.

A restore replaces the whole live dataset with a snapshot's contents. It
moves through explicit states so that the commit and rollback boundaries are
the same on every run:

    RECEIVED
      -> VALIDATED             document loaded, parsed, version-gated, unsealed
      -> SAFETY_BACKED_UP      current state exported and persisted
      -> DEFERRED              write transaction open, FK checks deferred
      -> TRUNCATING            collections cleared, children before parents
      -> IMPORTING             records inserted, parents before children
      -> RESEQUENCING_SERIALS  id sequences moved past the restored ids
      -> COMMITTED | ROLLED_BACK

Failure semantics:
    - Before DEFERRED nothing has been written to the live store.
    - From DEFERRED onwards everything happens in one transaction; any error
      (including a foreign key violation detected at COMMIT) rolls it back.
    - A resequencing failure is only logged; it cannot corrupt data.
    - The safety snapshot is already durable when the transaction starts, so
      a failed restore always leaves a known-good snapshot behind.

Only one restore may run at a time per Importer; a second concurrent call
fails immediately with RestoreInProgressError.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from homeregistry.backup.catalog import SnapshotCatalog
from homeregistry.backup.document import Snapshot, parse_snapshot
from homeregistry.backup.errors import (
    RestoreInProgressError,
    SafetyBackupFailedError,
    TransactionError,
    ValidationError,
)
from homeregistry.backup.exporter import Exporter
from homeregistry.backup.naming import SAFETY_PREFIX, generate_snapshot_name
from homeregistry.backup.registry import import_order, serial_collections, truncation_order
from homeregistry.backup.sealing import SecretSealer, require_unsealed
from homeregistry.storage.live_store import LiveStore, SequenceError, StoreTransaction

logger = logging.getLogger(__name__)


class RestoreState(Enum):
    """States of a restore attempt."""

    RECEIVED = "received"
    VALIDATED = "validated"
    SAFETY_BACKED_UP = "safety_backed_up"
    DEFERRED = "deferred"
    TRUNCATING = "truncating"
    IMPORTING = "importing"
    RESEQUENCING_SERIALS = "resequencing_serials"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class RestoreOutcome:
    """
    Result of a successful restore.

    Attributes:
        source: Catalog name of the restored snapshot (None for documents
            passed in directly).
        safety_snapshot: Name of the snapshot taken just before the restore.
        restored_counts: Records inserted per collection.
        resequence_warnings: Collections whose id sequence could not be reset.
        state: Final state (always COMMITTED for a returned outcome).
        history: States traversed, in order.
        started_at: When the restore was received.
        completed_at: When the transaction committed.
    """

    source: str | None
    safety_snapshot: str
    restored_counts: dict[str, int]
    resequence_warnings: list[str] = field(default_factory=list)
    state: RestoreState = RestoreState.COMMITTED
    history: list[RestoreState] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def total_records(self) -> int:
        """Total number of records restored."""
        return sum(self.restored_counts.values())

    def to_dict(self) -> dict[str, Any]:
        """Convert outcome to dictionary."""
        return {
            "source": self.source,
            "safety_snapshot": self.safety_snapshot,
            "restored_counts": self.restored_counts,
            "total_records": self.total_records,
            "resequence_warnings": self.resequence_warnings,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class Importer:
    """
    Restores snapshots into the live store.

    Example:
        importer = Importer(store, catalog, Exporter(store))
        outcome = importer.restore("home_registry_2026.10.19.14.03.52.json")
        print(outcome.safety_snapshot)

    Attributes:
        state: State of the current (or last) restore attempt.
        history: States traversed by the current (or last) attempt.
    """

    def __init__(
        self,
        store: LiveStore,
        catalog: SnapshotCatalog,
        exporter: Exporter,
        sealer: SecretSealer | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.exporter = exporter
        self.sealer = sealer
        self.state: RestoreState | None = None
        self.history: list[RestoreState] = []
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """True while a restore holds the importer lock."""
        return self._lock.locked()

    def restore(self, source: str | bytes | Snapshot) -> RestoreOutcome:
        """
        Replace the live dataset with a snapshot.

        Args:
            source: Catalog snapshot name, raw document bytes, or a parsed
                Snapshot.

        Returns:
            RestoreOutcome describing the committed restore.

        Raises:
            RestoreInProgressError: If another restore is running.
            ValidationError: If the name or document is invalid.
            NotFoundError: If the named snapshot does not exist.
            StorageError: If the snapshot cannot be read.
            SafetyBackupFailedError: If the safety snapshot cannot be written.
            TransactionError: If the transactional phase failed and was
                rolled back.
        """
        if not self._lock.acquire(blocking=False):
            raise RestoreInProgressError("Another restore is already in progress")

        try:
            return self._run(source)
        finally:
            self._lock.release()

    def _run(self, source: str | bytes | Snapshot) -> RestoreOutcome:
        """Drive one restore attempt through the state machine."""
        self.history = []
        started_at = datetime.now(UTC)
        source_name = source if isinstance(source, str) else None
        self._transition(RestoreState.RECEIVED)

        snapshot = self._load(source)
        self._transition(RestoreState.VALIDATED)

        safety_name = self._take_safety_snapshot(source_name)
        self._transition(RestoreState.SAFETY_BACKED_UP)

        counts: dict[str, int] = {}
        warnings: list[str] = []
        try:
            with self.store.transaction() as txn:
                self._transition(RestoreState.DEFERRED)
                txn.defer_constraints()

                self._transition(RestoreState.TRUNCATING)
                self._truncate(txn)

                self._transition(RestoreState.IMPORTING)
                counts = self._import(txn, snapshot)

                self._transition(RestoreState.RESEQUENCING_SERIALS)
                warnings = self._resequence(txn)
        except Exception as e:
            failed_in = self.state
            self._transition(RestoreState.ROLLED_BACK)
            logger.error(
                f"Restore failed during {failed_in.value if failed_in else 'unknown'} "
                f"and was rolled back: {e}. Safety snapshot: {safety_name}"
            )
            raise TransactionError(
                f"Restore failed and was rolled back: {e}",
                safety_snapshot=safety_name,
            ) from e

        self._transition(RestoreState.COMMITTED)
        completed_at = datetime.now(UTC)
        outcome = RestoreOutcome(
            source=source_name,
            safety_snapshot=safety_name,
            restored_counts=counts,
            resequence_warnings=warnings,
            state=RestoreState.COMMITTED,
            history=list(self.history),
            started_at=started_at,
            completed_at=completed_at,
        )
        logger.info(
            f"Restore committed: {outcome.total_records} records "
            f"from {source_name or 'uploaded document'} "
            f"(safety snapshot: {safety_name})"
        )
        return outcome

    def _transition(self, state: RestoreState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(f"Restore state: {state.value}")

    def _load(self, source: str | bytes | Snapshot) -> Snapshot:
        """Load and validate the target document. Never mutates the store."""
        if isinstance(source, Snapshot):
            # Round-trip through the wire format so the same checks apply
            snapshot = parse_snapshot(source.to_bytes())
        elif isinstance(source, bytes):
            snapshot = parse_snapshot(source)
        elif isinstance(source, str):
            snapshot = parse_snapshot(self.catalog.read(source))
        else:
            raise ValidationError(f"Unsupported restore source: {type(source).__name__}")

        return require_unsealed(snapshot, self.sealer)

    def _take_safety_snapshot(self, source_name: str | None) -> str:
        """Export and persist the current state before anything is replaced."""
        description = (
            f"Automatic safety snapshot before restoring {source_name}"
            if source_name
            else "Automatic safety snapshot before restore"
        )
        try:
            snapshot = self.exporter.export(description=description)
            entry = self.catalog.write_unique(
                generate_snapshot_name(SAFETY_PREFIX), snapshot.to_bytes()
            )
        except Exception as e:
            logger.error(f"Failed to create safety snapshot before restore: {e}")
            raise SafetyBackupFailedError(
                f"Failed to create safety snapshot before restore. Restore aborted: {e}"
            ) from e

        logger.info(f"Safety snapshot created before restore: {entry.name}")
        return entry.name

    def _truncate(self, txn: StoreTransaction) -> None:
        for spec in truncation_order():
            removed = txn.clear_collection(spec.name)
            logger.debug(f"Cleared {spec.name}: {removed} records")

    def _import(self, txn: StoreTransaction, snapshot: Snapshot) -> dict[str, int]:
        counts: dict[str, int] = {}
        for spec in import_order():
            counts[spec.name] = txn.insert_records(spec.name, snapshot.data[spec.name])
            logger.debug(f"Imported {spec.name}: {counts[spec.name]} records")
        return counts

    def _resequence(self, txn: StoreTransaction) -> list[str]:
        warnings: list[str] = []
        for spec in serial_collections():
            try:
                txn.advance_sequence(spec.name)
            except SequenceError as e:
                logger.warning(f"Could not reset id sequence for {spec.name}: {e}")
                warnings.append(spec.name)
        return warnings
