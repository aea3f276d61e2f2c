"""
Snapshot document model and wire format.

A snapshot is a single JSON document:

    {
        "metadata": {
            "format_version": "1.0",
            "producer_version": "0.3.0",
            "created_at": "2026-10-19T14:03:52.118204+00:00",
            "database_kind": "sqlite",
            "description": null
        },
        "data": {
            "users": [...],
            "inventories": [...],
            ...
        }
    }

``data`` holds one array of record objects per registry collection. Records
are opaque: they are copied field by field and never interpreted here.

Parsing treats the input as untrusted and rejects anything malformed before
a restore is allowed to touch the live store.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from homeregistry.backup.errors import ValidationError
from homeregistry.backup.registry import COLLECTION_NAMES, import_order

FORMAT_VERSION = "1.0"
SUPPORTED_FORMAT_VERSIONS = frozenset({FORMAT_VERSION})
DATABASE_KIND = "sqlite"

Record = dict[str, Any]

_REQUIRED_METADATA_FIELDS = (
    "format_version",
    "producer_version",
    "created_at",
    "database_kind",
)


@dataclass
class SnapshotMetadata:
    """Metadata embedded in every snapshot document."""

    format_version: str
    producer_version: str
    created_at: str
    database_kind: str
    description: str | None = None
    secrets: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert metadata to dictionary, omitting an absent secrets block."""
        data: dict[str, Any] = {
            "format_version": self.format_version,
            "producer_version": self.producer_version,
            "created_at": self.created_at,
            "database_kind": self.database_kind,
            "description": self.description,
        }
        if self.secrets is not None:
            data["secrets"] = self.secrets
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotMetadata:
        """Create metadata from an already validated dictionary."""
        return cls(
            format_version=data["format_version"],
            producer_version=data["producer_version"],
            created_at=data["created_at"],
            database_kind=data["database_kind"],
            description=data.get("description"),
            secrets=data.get("secrets"),
        )


@dataclass
class Snapshot:
    """
    A complete point-in-time copy of the live dataset.

    Attributes:
        metadata: Version and provenance information.
        data: Collection name to ordered list of records.
    """

    metadata: SnapshotMetadata
    data: dict[str, list[Record]] = field(default_factory=dict)

    @property
    def is_sealed(self) -> bool:
        """True when secret fields in this snapshot are encrypted."""
        return self.metadata.secrets is not None

    def record_counts(self) -> dict[str, int]:
        """Number of records per collection, in import order."""
        return {
            spec.name: len(self.data.get(spec.name, []))
            for spec in import_order()
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert snapshot to dictionary with collections in import order."""
        return {
            "metadata": self.metadata.to_dict(),
            "data": {spec.name: self.data.get(spec.name, []) for spec in import_order()},
        }

    def to_bytes(self) -> bytes:
        """Serialize to pretty-printed UTF-8 JSON."""
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")


def parse_snapshot(content: bytes | str) -> Snapshot:
    """
    Parse and structurally validate a snapshot document.

    Checks, in order: UTF-8 JSON syntax, the top-level shape, required
    metadata fields, the format version gate, the exact set of collections,
    and that every collection is an array of objects.

    Args:
        content: Raw document bytes (or already decoded text).

    Returns:
        Validated Snapshot.

    Raises:
        ValidationError: Naming the first rule the document breaks.
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError(f"Snapshot is not valid UTF-8: {e}") from e

    try:
        document = json.loads(content, parse_constant=_reject_constant)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Snapshot is not valid JSON: {e}") from e
    except RecursionError as e:
        raise ValidationError("Snapshot is not valid JSON: nesting too deep") from e

    if not isinstance(document, dict):
        raise ValidationError("Snapshot must be a JSON object")

    metadata = document.get("metadata")
    if not isinstance(metadata, dict):
        raise ValidationError("Snapshot is missing the 'metadata' object")

    data = document.get("data")
    if not isinstance(data, dict):
        raise ValidationError("Snapshot is missing the 'data' object")

    _validate_metadata(metadata)
    _validate_data(data)

    return Snapshot(
        metadata=SnapshotMetadata.from_dict(metadata),
        data={spec.name: data[spec.name] for spec in import_order()},
    )


def _reject_constant(token: str) -> Any:
    """Refuse the non-standard NaN and Infinity literals."""
    raise ValidationError(f"Snapshot is not valid JSON: {token} is not allowed")


def _validate_metadata(metadata: dict[str, Any]) -> None:
    """Validate metadata fields and the format version gate."""
    for field_name in _REQUIRED_METADATA_FIELDS:
        value = metadata.get(field_name)
        if not isinstance(value, str) or not value:
            raise ValidationError(
                f"Snapshot metadata field '{field_name}' must be a non-empty string"
            )

    version = metadata["format_version"]
    if version not in SUPPORTED_FORMAT_VERSIONS:
        raise ValidationError(f"Unsupported snapshot format version: {version}")

    description = metadata.get("description")
    if description is not None and not isinstance(description, str):
        raise ValidationError("Snapshot metadata field 'description' must be a string")

    secrets = metadata.get("secrets")
    if secrets is not None and not isinstance(secrets, dict):
        raise ValidationError("Snapshot metadata field 'secrets' must be an object")


def _validate_data(data: dict[str, Any]) -> None:
    """Validate that data holds exactly the registry collections."""
    present = set(data)

    missing = sorted(COLLECTION_NAMES - present)
    if missing:
        raise ValidationError(
            f"Snapshot is missing collections: {', '.join(missing)}"
        )

    unknown = sorted(present - COLLECTION_NAMES)
    if unknown:
        raise ValidationError(
            f"Snapshot contains unknown collections: {', '.join(unknown)}"
        )

    for spec in import_order():
        records = data[spec.name]
        if not isinstance(records, list):
            raise ValidationError(f"Collection '{spec.name}' must be an array")
        for index, record in enumerate(records):
            if not isinstance(record, dict):
                raise ValidationError(
                    f"Record {index} of collection '{spec.name}' must be an object"
                )
