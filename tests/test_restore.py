"""
Tests for the exporter and the restore state machine.

Uses Python's unittest module with temporary databases and snapshot
directories.
"""

from __future__ import annotations

import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sample_data import SAMPLE_RECORDS, dump_store, seed_store, snapshot_document

from homeregistry import __version__
from homeregistry.backup import (
    Exporter,
    Importer,
    RestoreInProgressError,
    RestoreState,
    SafetyBackupFailedError,
    SnapshotCatalog,
    StorageError,
    TransactionError,
    ValidationError,
    generate_snapshot_name,
    parse_snapshot,
)
from homeregistry.backup.naming import KIND_SAFETY
from homeregistry.storage import LiveStore, SequenceError, StoreTransaction


class RestoreTestCase(unittest.TestCase):
    """Seeded store, catalog, exporter and importer in a temp directory."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.store = LiveStore(Path(self.temp_dir) / "home_registry.db")
        seed_store(self.store)
        self.catalog = SnapshotCatalog(Path(self.temp_dir) / "backups")
        self.exporter = Exporter(self.store)
        self.importer = Importer(self.store, self.catalog, self.exporter)

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def save_export(self, description: str | None = None) -> str:
        """Export the store into the catalog and return the snapshot name."""
        snapshot = self.exporter.export(description=description)
        return self.catalog.write_unique(generate_snapshot_name(), snapshot.to_bytes()).name

    def save_document(self, name: str, document: dict) -> str:
        """Persist a hand-built document."""
        self.catalog.write(name, json.dumps(document).encode("utf-8"))
        return name

    def safety_snapshots(self) -> list[str]:
        return [entry.name for entry in self.catalog.list() if entry.kind == KIND_SAFETY]


class TestExporter(RestoreTestCase):
    """Tests for Exporter."""

    def test_export_contains_every_collection(self) -> None:
        """The snapshot holds each collection with all live records."""
        snapshot = self.exporter.export(description="Weekly")

        for name, records in SAMPLE_RECORDS.items():
            with self.subTest(collection=name):
                self.assertEqual(len(snapshot.data[name]), len(records))

    def test_export_metadata(self) -> None:
        """Metadata is computed at export time."""
        snapshot = self.exporter.export(description="Weekly")

        self.assertEqual(snapshot.metadata.format_version, "1.0")
        self.assertEqual(snapshot.metadata.producer_version, __version__)
        self.assertEqual(snapshot.metadata.database_kind, "sqlite")
        self.assertEqual(snapshot.metadata.description, "Weekly")
        self.assertIsNone(snapshot.metadata.secrets)

    def test_export_is_parseable(self) -> None:
        """Exported bytes pass document validation."""
        snapshot = self.exporter.export()

        parsed = parse_snapshot(snapshot.to_bytes())

        self.assertEqual(parsed.data, snapshot.data)

    def test_secrets_exported_verbatim(self) -> None:
        """Without sealing, secrets are exported as stored."""
        snapshot = self.exporter.export()

        hashes = [user["password_hash"] for user in snapshot.data["users"]]

        self.assertEqual(hashes, [user["password_hash"] for user in SAMPLE_RECORDS["users"]])


class TestRestore(RestoreTestCase):
    """Tests for Importer.restore."""

    def test_round_trip(self) -> None:
        """Restoring an export of the current state changes nothing."""
        before = dump_store(self.store)
        name = self.save_export()

        outcome = self.importer.restore(name)

        self.assertEqual(dump_store(self.store), before)
        self.assertEqual(outcome.state, RestoreState.COMMITTED)
        self.assertEqual(outcome.source, name)
        self.assertEqual(outcome.restored_counts["items"], 5)
        self.assertEqual(
            outcome.total_records,
            sum(len(records) for records in SAMPLE_RECORDS.values()),
        )
        self.assertEqual(outcome.resequence_warnings, [])

    def test_restore_replaces_modified_state(self) -> None:
        """Changes made after the export are undone by the restore."""
        before = dump_store(self.store)
        name = self.save_export()

        # Rename an inventory, add an item and remove another
        with self.store.transaction() as txn:
            txn.clear_collection("item_tags")
            txn.clear_collection("item_custom_values")
            txn.clear_collection("item_organizer_values")
        with self.store.connection() as conn:
            conn.execute("UPDATE inventories SET name = 'Renamed' WHERE id = 1")
            conn.execute("DELETE FROM items WHERE id = 5")
        self.store.insert_record("items", {"inventory_id": 2, "name": "Wheelbarrow"})
        modified = dump_store(self.store)
        self.assertNotEqual(modified, before)

        outcome = self.importer.restore(name)

        self.assertEqual(dump_store(self.store), before)
        inventories = self.store.read_collection("inventories")
        self.assertEqual(len(inventories), 2)
        self.assertEqual(inventories[0]["name"], "Main House")
        self.assertEqual([item["id"] for item in self.store.read_collection("items")], [1, 2, 3, 4, 5])

        # The safety snapshot captured the modified state
        safety = parse_snapshot(self.catalog.read(outcome.safety_snapshot))
        self.assertEqual(safety.data, modified)

    def test_restore_after_deleting_items_and_an_inventory(self) -> None:
        """Deleting every item and one inventory is fully undone."""
        before = dump_store(self.store)
        name = self.save_export()

        with self.store.connection() as conn:
            conn.execute("DELETE FROM items")
            conn.execute("DELETE FROM inventories WHERE id = 2")
        self.assertEqual(self.store.count("items"), 0)
        self.assertEqual(self.store.count("inventories"), 1)

        self.importer.restore(name)

        inventories = self.store.read_collection("inventories")
        items = self.store.read_collection("items")
        self.assertEqual(len(inventories), 2)
        self.assertEqual(len(items), 5)
        self.assertEqual(inventories, before["inventories"])
        self.assertEqual(items, before["items"])
        self.assertEqual(dump_store(self.store), before)

    def test_new_records_do_not_collide(self) -> None:
        """Ids generated after a restore exceed every restored id."""
        name = self.save_export()
        for _ in range(3):
            self.store.insert_record("items", {"inventory_id": 1, "name": "Extra"})

        self.importer.restore(name)
        new_id = self.store.insert_record("items", {"inventory_id": 1, "name": "After"})

        restored_ids = [item["id"] for item in self.store.read_collection("items")]
        self.assertEqual(new_id, max(restored_ids))
        self.assertEqual(new_id, 6)

    def test_restore_empty_snapshot(self) -> None:
        """A snapshot with empty collections empties the store."""
        name = self.save_document("empty.json", snapshot_document())

        outcome = self.importer.restore(name)

        self.assertEqual(outcome.total_records, 0)
        self.assertEqual(self.store.get_statistics()["total_records"], 0)

    def test_restore_from_bytes_and_snapshot(self) -> None:
        """Documents may be passed in directly instead of by name."""
        before = dump_store(self.store)
        snapshot = self.exporter.export()

        outcome = self.importer.restore(snapshot.to_bytes())
        self.assertIsNone(outcome.source)

        outcome = self.importer.restore(snapshot)
        self.assertIsNone(outcome.source)
        self.assertEqual(dump_store(self.store), before)

    def test_history(self) -> None:
        """A committed restore walks every state in order."""
        name = self.save_export()

        outcome = self.importer.restore(name)

        self.assertEqual(
            outcome.history,
            [
                RestoreState.RECEIVED,
                RestoreState.VALIDATED,
                RestoreState.SAFETY_BACKED_UP,
                RestoreState.DEFERRED,
                RestoreState.TRUNCATING,
                RestoreState.IMPORTING,
                RestoreState.RESEQUENCING_SERIALS,
                RestoreState.COMMITTED,
            ],
        )
        self.assertEqual(self.importer.state, RestoreState.COMMITTED)
        self.assertFalse(self.importer.is_running)

    def test_outcome_to_dict(self) -> None:
        """Outcomes serialize state names and timestamps."""
        outcome = self.importer.restore(self.save_export())

        data = outcome.to_dict()

        self.assertEqual(data["state"], "committed")
        self.assertEqual(data["history"][0], "received")
        self.assertEqual(data["safety_snapshot"], outcome.safety_snapshot)
        self.assertIsNotNone(data["completed_at"])

    def test_safety_snapshot_written_each_time(self) -> None:
        """Every restore leaves its own safety snapshot behind."""
        name = self.save_export()

        first = self.importer.restore(name)
        second = self.importer.restore(name)

        self.assertNotEqual(first.safety_snapshot, second.safety_snapshot)
        self.assertEqual(
            sorted(self.safety_snapshots()),
            sorted([first.safety_snapshot, second.safety_snapshot]),
        )


class TestRestoreFailures(RestoreTestCase):
    """Failure paths of Importer.restore."""

    def test_orphan_reference_rolls_back(self) -> None:
        """A foreign key violation at commit leaves the store untouched."""
        before = dump_store(self.store)
        data = json.loads(json.dumps(SAMPLE_RECORDS))
        data["items"].append({"id": 6, "inventory_id": 999, "name": "Orphan"})
        name = self.save_document("orphan.json", snapshot_document(data))

        with self.assertRaises(TransactionError) as ctx:
            self.importer.restore(name)

        self.assertEqual(dump_store(self.store), before)
        self.assertIsNotNone(ctx.exception.safety_snapshot)
        self.assertIn(ctx.exception.safety_snapshot, self.safety_snapshots())
        self.assertEqual(self.importer.state, RestoreState.ROLLED_BACK)

    def test_failed_restore_safety_snapshot_restores(self) -> None:
        """The safety snapshot from a rolled back attempt restores cleanly."""
        self.store.insert_record("tags", {"name": "Only in live data"})
        before = dump_store(self.store)
        data = json.loads(json.dumps(SAMPLE_RECORDS))
        data["items"].append({"id": 6, "inventory_id": 999, "name": "Orphan"})
        name = self.save_document("orphan.json", snapshot_document(data))

        with self.assertRaises(TransactionError) as ctx:
            self.importer.restore(name)
        safety_name = ctx.exception.safety_snapshot

        # Move away from the saved state, then go back through the safety snapshot
        with self.store.connection() as conn:
            conn.execute("DELETE FROM items")
        outcome = self.importer.restore(safety_name)

        self.assertEqual(outcome.state, RestoreState.COMMITTED)
        self.assertEqual(dump_store(self.store), before)

    def test_unknown_column_rolls_back(self) -> None:
        """Records with fields the store lacks abort the restore."""
        before = dump_store(self.store)
        data = json.loads(json.dumps(SAMPLE_RECORDS))
        data["tags"][0]["shade"] = "dark"
        name = self.save_document("unknown_column.json", snapshot_document(data))

        with self.assertRaises(TransactionError) as ctx:
            self.importer.restore(name)

        self.assertIn("shade", str(ctx.exception))
        self.assertEqual(dump_store(self.store), before)
        self.assertIn(RestoreState.IMPORTING, self.importer.history)

    def test_unsupported_version_writes_nothing(self) -> None:
        """Validation failures happen before the safety snapshot."""
        before = dump_store(self.store)
        name = self.save_document("future.json", snapshot_document(format_version="9.0"))

        with self.assertRaises(ValidationError):
            self.importer.restore(name)

        self.assertEqual(dump_store(self.store), before)
        self.assertEqual(self.safety_snapshots(), [])
        self.assertEqual(self.importer.history, [RestoreState.RECEIVED])

    def test_safety_snapshot_failure_aborts(self) -> None:
        """If the safety snapshot cannot be written nothing is restored."""
        before = dump_store(self.store)
        name = self.save_document("empty.json", snapshot_document())

        with patch.object(
            self.catalog, "write_unique", side_effect=StorageError("disk full")
        ):
            with self.assertRaises(SafetyBackupFailedError) as ctx:
                self.importer.restore(name)

        self.assertIn("disk full", str(ctx.exception))
        self.assertEqual(dump_store(self.store), before)
        self.assertNotIn(RestoreState.TRUNCATING, self.importer.history)

    def test_concurrent_restore_rejected(self) -> None:
        """A second restore fails fast while the lock is held."""
        name = self.save_export()
        self.importer._lock.acquire()
        try:
            self.assertTrue(self.importer.is_running)
            with self.assertRaises(RestoreInProgressError):
                self.importer.restore(name)
        finally:
            self.importer._lock.release()

        self.assertEqual(self.safety_snapshots(), [])
        self.importer.restore(name)

    def test_sequence_failure_is_a_warning(self) -> None:
        """A sequence that cannot be reset does not undo the restore."""
        original = StoreTransaction.advance_sequence

        def failing_for_tags(txn: StoreTransaction, name: str) -> int:
            if name == "tags":
                raise SequenceError("sequence table locked")
            return original(txn, name)

        name = self.save_export()
        with patch.object(StoreTransaction, "advance_sequence", failing_for_tags):
            outcome = self.importer.restore(name)

        self.assertEqual(outcome.state, RestoreState.COMMITTED)
        self.assertEqual(outcome.resequence_warnings, ["tags"])

    def test_sealed_snapshot_without_passphrase(self) -> None:
        """Sealed documents cannot be restored without a sealer."""
        document = snapshot_document(
            secrets={"scheme": "fernet-pbkdf2-sha256", "salt": "AAAA", "iterations": 1,
                     "fields": {}},
        )
        name = self.save_document("sealed.json", document)

        with self.assertRaises(ValidationError) as ctx:
            self.importer.restore(name)

        self.assertIn("HOMEREGISTRY_BACKUP_PASSPHRASE", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
