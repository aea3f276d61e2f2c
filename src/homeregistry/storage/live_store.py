"""
Live store for Home Registry data.

This module provides the LiveStore class, the SQLite database that holds
every entity collection of the application. The backup subsystem only uses
a handful of bulk primitives from it:

    - read_collections():  bulk read of whole collections
    - transaction():       a single write transaction yielding a
                           StoreTransaction with clear/insert/defer/advance
                           primitives

Design Decisions:
    - Connections run in autocommit mode; transactions are opened explicitly
      with BEGIN IMMEDIATE so a restore holds the write lock from its first
      statement and no other writer can interleave
    - Foreign keys are enforced on every connection
    - Collection names must be tables of this database before they are
      interpolated into SQL; record keys must be real columns

Thread Safety:
    Connection-per-operation. SQLite serialises writers; readers are not
    blocked by a running restore until it commits.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from homeregistry.storage.schema import CREATE_TABLES_SQL, SCHEMA_VERSION

logger = logging.getLogger(__name__)

Record = dict[str, Any]

# Seconds to wait for another writer's lock before giving up
DEFAULT_BUSY_TIMEOUT = 30.0

# Bookkeeping tables that are not entity collections
_INTERNAL_TABLES = frozenset({"schema_version"})


class LiveStoreError(Exception):
    """Base exception for live store errors."""

    pass


class UnknownCollectionError(LiveStoreError):
    """Raised when a collection name is not a table of the store."""

    pass


class UnknownColumnError(LiveStoreError):
    """Raised when a record carries a field the table does not have."""

    pass


class SequenceError(LiveStoreError):
    """Raised when a collection's id sequence cannot be advanced."""

    pass


def _quote_identifier(name: str) -> str:
    """Quote an SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def _to_column_value(value: Any) -> Any:
    """Convert a JSON value into something SQLite can bind."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return value


class StoreTransaction:
    """
    Write primitives available inside LiveStore.transaction().

    Nothing done through this object is visible to other connections until
    the surrounding transaction commits, and all of it is discarded if the
    transaction rolls back.
    """

    def __init__(self, conn: sqlite3.Connection, tables: frozenset[str]) -> None:
        self._conn = conn
        self._tables = tables
        self._columns: dict[str, frozenset[str]] = {}

    def defer_constraints(self) -> None:
        """Defer foreign key checks until the transaction commits."""
        self._conn.execute("PRAGMA defer_foreign_keys = ON")

    def clear_collection(self, name: str) -> int:
        """
        Delete every record of a collection.

        Returns:
            Number of records removed.
        """
        table = self._table(name)
        cursor = self._conn.execute(f"DELETE FROM {table}")  # noqa: S608
        return cursor.rowcount

    def insert_records(self, name: str, records: Iterable[Record]) -> int:
        """
        Insert records verbatim, keeping the identifiers they carry.

        Args:
            name: Collection name.
            records: Records mapping column name to value.

        Returns:
            Number of records inserted.

        Raises:
            UnknownColumnError: If a record has a field the table lacks.
            sqlite3.Error: On constraint violations.
        """
        table = self._table(name)
        columns = self._table_columns(name)
        statements: dict[tuple[str, ...], str] = {}
        count = 0

        for record in records:
            keys = tuple(record)
            unknown = [key for key in keys if key not in columns]
            if unknown:
                raise UnknownColumnError(
                    f"Collection '{name}' has no column(s): {', '.join(unknown)}"
                )

            sql = statements.get(keys)
            if sql is None:
                sql = _insert_sql(table, keys)
                statements[keys] = sql

            self._conn.execute(sql, [_to_column_value(record[key]) for key in keys])
            count += 1

        return count

    def advance_sequence(self, name: str) -> int:
        """
        Point a collection's id sequence at its current maximum id.

        The next generated id will be one past the largest id present. Runs
        inside a savepoint so a failure leaves the transaction usable.

        Returns:
            The maximum id the sequence now starts after.

        Raises:
            SequenceError: If the sequence cannot be updated.
        """
        try:
            table = self._table(name)
        except UnknownCollectionError as e:
            raise SequenceError(str(e)) from e

        self._conn.execute("SAVEPOINT advance_sequence")
        try:
            row = self._conn.execute(
                f"SELECT COALESCE(MAX(id), 0) FROM {table}"  # noqa: S608
            ).fetchone()
            max_id = int(row[0])

            cursor = self._conn.execute(
                "UPDATE sqlite_sequence SET seq = ? WHERE name = ?",
                (max_id, name),
            )
            if cursor.rowcount == 0:
                self._conn.execute(
                    "INSERT INTO sqlite_sequence (name, seq) VALUES (?, ?)",
                    (name, max_id),
                )
        except (sqlite3.Error, TypeError, ValueError) as e:
            self._conn.execute("ROLLBACK TO SAVEPOINT advance_sequence")
            self._conn.execute("RELEASE SAVEPOINT advance_sequence")
            raise SequenceError(f"Could not reset sequence for '{name}': {e}") from e

        self._conn.execute("RELEASE SAVEPOINT advance_sequence")
        return max_id

    def _table(self, name: str) -> str:
        """Return the quoted table name for a known collection."""
        if name not in self._tables:
            raise UnknownCollectionError(f"Unknown collection: {name!r}")
        return _quote_identifier(name)

    def _table_columns(self, name: str) -> frozenset[str]:
        """Get (and cache) the column names of a table."""
        if name not in self._columns:
            rows = self._conn.execute(
                f"PRAGMA table_info({_quote_identifier(name)})"
            ).fetchall()
            self._columns[name] = frozenset(row[1] for row in rows)
        return self._columns[name]


def _insert_sql(table: str, keys: tuple[str, ...]) -> str:
    """Build a parameterised INSERT for the given columns."""
    column_list = ", ".join(_quote_identifier(key) for key in keys)
    placeholders = ", ".join("?" for _ in keys)
    return f"INSERT INTO {table} ({column_list}) VALUES ({placeholders})"  # noqa: S608


class LiveStore:
    """
    SQLite database holding the live Home Registry dataset.

    Example:
        store = LiveStore(Path("./data/home_registry.db"))

        # Bulk read for export
        data = store.read_collections(["users", "inventories"])

        # Whole-store replacement
        with store.transaction() as txn:
            txn.defer_constraints()
            txn.clear_collection("items")
            txn.insert_records("items", records)

    Attributes:
        db_path: Path to the SQLite database file.
        busy_timeout: Seconds a connection waits for a competing writer.
    """

    DATABASE_FILE = "home_registry.db"

    def __init__(
        self,
        db_path: Path | str,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> None:
        """
        Initialize the live store, creating the schema if needed.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds to wait for a competing writer's lock.
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._tables: frozenset[str] = frozenset()
        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self.connection() as conn:
            conn.executescript(CREATE_TABLES_SQL)

            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()

            if row is None:
                conn.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized database schema version {SCHEMA_VERSION}")
            elif row[0] < SCHEMA_VERSION:
                logger.warning(
                    f"Database schema version {row[0]} is older than "
                    f"expected version {SCHEMA_VERSION}"
                )

            rows = conn.execute(
                "SELECT name FROM sqlite_master "
                "WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
            ).fetchall()
            self._tables = frozenset(
                row["name"] for row in rows if row["name"] not in _INTERNAL_TABLES
            )

    @property
    def collections(self) -> frozenset[str]:
        """Names of the entity collections held by the store."""
        return self._tables

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection in autocommit mode with row factory set.
        """
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout,
            isolation_level=None,  # Autocommit mode, we manage transactions manually
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[StoreTransaction, None, None]:
        """
        Run a block inside one write transaction.

        Commits when the block completes. Rolls back when the block raises or
        when the commit itself fails (deferred foreign key violations are
        reported at commit time).

        Yields:
            StoreTransaction bound to the open transaction.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield StoreTransaction(conn, self._tables)
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                    logger.debug("Live store transaction rolled back")
                raise

    def read_collection(self, name: str) -> list[Record]:
        """
        Read every record of a collection in storage order.

        Raises:
            UnknownCollectionError: If the collection is not a store table.
        """
        return self.read_collections([name])[name]

    def read_collections(self, names: Iterable[str]) -> dict[str, list[Record]]:
        """
        Read several whole collections inside one read transaction.

        Args:
            names: Collection names to read.

        Returns:
            Collection name to list of records, in the order requested.

        Raises:
            UnknownCollectionError: If a name is not a store table.
        """
        tables = [(name, self._table(name)) for name in names]
        result: dict[str, list[Record]] = {}

        with self.connection() as conn:
            conn.execute("BEGIN")
            try:
                for name, table in tables:
                    rows = conn.execute(
                        f"SELECT * FROM {table} ORDER BY rowid"  # noqa: S608
                    ).fetchall()
                    result[name] = [dict(row) for row in rows]
            finally:
                conn.execute("COMMIT")

        return result

    def insert_record(self, name: str, record: Record) -> int:
        """
        Insert a single record in its own transaction.

        Returns:
            The rowid of the new record (the generated id for serial tables).
        """
        sql = _insert_sql(self._table(name), tuple(record))
        with self.connection() as conn:
            cursor = conn.execute(sql, [_to_column_value(value) for value in record.values()])
            return int(cursor.lastrowid or 0)

    def count(self, name: str) -> int:
        """Number of records in a collection."""
        table = self._table(name)
        with self.connection() as conn:
            (count,) = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()  # noqa: S608
        return int(count)

    def get_statistics(self) -> dict[str, Any]:
        """
        Get live store statistics.

        Returns:
            Dictionary with per-collection record counts and database size.
        """
        counts = {name: self.count(name) for name in sorted(self._tables)}
        return {
            "database_path": str(self.db_path),
            "database_size_bytes": (
                self.db_path.stat().st_size if self.db_path.exists() else 0
            ),
            "collections": counts,
            "total_records": sum(counts.values()),
        }

    def _table(self, name: str) -> str:
        """Return the quoted table name for a known collection."""
        if name not in self._tables:
            raise UnknownCollectionError(f"Unknown collection: {name!r}")
        return _quote_identifier(name)
