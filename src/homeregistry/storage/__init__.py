"""
Live store for the Home Registry dataset.

SQLite database holding every entity collection (users, inventories, items,
catalogue and sharing tables). The backup subsystem reads whole collections
from it and replaces them inside a single write transaction.

Usage:
    from homeregistry.storage import LiveStore

    store = LiveStore("./data/home_registry.db")
    records = store.read_collection("items")

    with store.transaction() as txn:
        txn.defer_constraints()
        txn.clear_collection("items")
        txn.insert_records("items", records)
"""

from homeregistry.storage.live_store import (
    LiveStore,
    LiveStoreError,
    SequenceError,
    StoreTransaction,
    UnknownCollectionError,
    UnknownColumnError,
)

__all__ = [
    "LiveStore",
    "StoreTransaction",
    # Exceptions
    "LiveStoreError",
    "UnknownCollectionError",
    "UnknownColumnError",
    "SequenceError",
]
