"""
Snapshot exporter.

Reads every registry collection from the live store and wraps the records in
freshly computed metadata. All collections are read inside one SQLite read
transaction, so the result reflects a single committed state of the store.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from homeregistry.backup.document import (
    DATABASE_KIND,
    FORMAT_VERSION,
    Snapshot,
    SnapshotMetadata,
)
from homeregistry.backup.registry import import_order
from homeregistry.backup.sealing import SecretSealer
from homeregistry.storage.live_store import LiveStore

logger = logging.getLogger(__name__)


def _producer_version() -> str:
    """Get the version of the application producing the snapshot."""
    from homeregistry import __version__

    return __version__


class Exporter:
    """
    Builds Snapshots of the live store.

    Example:
        exporter = Exporter(store)
        snapshot = exporter.export(description="Before spring cleaning")
        catalog.write_unique(generate_snapshot_name(), snapshot.to_bytes())
    """

    def __init__(self, store: LiveStore, sealer: SecretSealer | None = None) -> None:
        """
        Initialize the exporter.

        Args:
            store: Live store to read from.
            sealer: Seals secret fields when configured.
        """
        self.store = store
        self.sealer = sealer

    def export(self, description: str | None = None) -> Snapshot:
        """
        Export every collection into a new Snapshot.

        Args:
            description: Optional free-text description stored in metadata.

        Returns:
            Snapshot holding every registry collection in registry order.
        """
        names = [spec.name for spec in import_order()]
        data = self.store.read_collections(names)

        snapshot = Snapshot(
            metadata=SnapshotMetadata(
                format_version=FORMAT_VERSION,
                producer_version=_producer_version(),
                created_at=datetime.now(UTC).isoformat(),
                database_kind=DATABASE_KIND,
                description=description,
            ),
            data=data,
        )

        if self.sealer is not None:
            self.sealer.seal(snapshot)

        total = sum(len(records) for records in data.values())
        logger.info(f"Exported {total} records from {len(names)} collections")
        logger.debug(f"Export record counts: {snapshot.record_counts()}")
        return snapshot
