"""
Collection registry for snapshots.

The registry is the single, ordered description of every entity collection
held by the live store. Export, validation and restore are all written once,
generically, over this table.

Ordering:
    IMPORT ORDER lists parents before children. Every collection only
    references collections that appear earlier in the list.

    TRUNCATION ORDER is the exact reverse (children before parents) and is
    used when the live store is cleared during a restore.

Breaking either order during a restore produces intermediate states that
violate foreign keys, so new collections must be inserted after every
collection they reference.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class CollectionSpec:
    """
    Registry entry for one entity collection.

    Attributes:
        name: Collection (table) name, also the key in a snapshot's data map.
        import_rank: Position in import order (0 = imported first).
        truncate_rank: Position in truncation order (0 = cleared first).
        serial_id: True when ``id`` values come from a store sequence that
            must be advanced after a restore.
        secret_fields: Fields holding authentication secrets.
    """

    name: str
    import_rank: int
    truncate_rank: int
    serial_id: bool = False
    secret_fields: tuple[str, ...] = ()


# (name, serial_id, secret_fields), parents before children
_COLLECTIONS: tuple[tuple[str, bool, tuple[str, ...]], ...] = (
    ("users", False, ("password_hash",)),
    ("inventories", True, ()),
    ("categories", True, ()),
    ("items", True, ()),
    ("tags", True, ()),
    ("item_tags", True, ()),
    ("custom_fields", True, ()),
    ("item_custom_values", True, ()),
    ("organizer_types", True, ()),
    ("organizer_options", True, ()),
    ("item_organizer_values", True, ()),
    ("user_settings", False, ()),
    ("inventory_shares", False, ()),
    ("user_access_grants", False, ()),
    ("recovery_codes", False, ("code_hash",)),
    ("password_reset_tokens", False, ("token",)),
)

REGISTRY: tuple[CollectionSpec, ...] = tuple(
    CollectionSpec(
        name=name,
        import_rank=index,
        truncate_rank=len(_COLLECTIONS) - 1 - index,
        serial_id=serial_id,
        secret_fields=secret_fields,
    )
    for index, (name, serial_id, secret_fields) in enumerate(_COLLECTIONS)
)

COLLECTION_NAMES: frozenset[str] = frozenset(spec.name for spec in REGISTRY)

_BY_NAME: dict[str, CollectionSpec] = {spec.name: spec for spec in REGISTRY}


def import_order() -> list[CollectionSpec]:
    """Collections in import order (parents before children)."""
    return sorted(REGISTRY, key=lambda spec: spec.import_rank)


def truncation_order() -> list[CollectionSpec]:
    """Collections in truncation order (children before parents)."""
    return sorted(REGISTRY, key=lambda spec: spec.truncate_rank)


def serial_collections() -> list[CollectionSpec]:
    """Collections whose identifiers come from a store sequence."""
    return [spec for spec in import_order() if spec.serial_id]


def get_collection(name: str) -> CollectionSpec:
    """
    Look up a registry entry by name.

    Raises:
        KeyError: If the name is not a registered collection.
    """
    return _BY_NAME[name]


def is_registered(name: str) -> bool:
    """Check whether a collection name is in the registry."""
    return name in _BY_NAME
