"""
Snapshot file naming and name validation.

Every externally supplied snapshot name passes through
``validate_snapshot_name`` before any filesystem access. Names the
subsystem generates itself follow a reserved convention:

    home_registry_2026.10.19.14.03.52.json                   (manual)
    home_registry_auto_pre_restore_2026.10.19.14.03.52.json  (safety)

A numeric ``_N`` suffix is appended when a name is already taken.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime

from homeregistry.backup.errors import ValidationError

SNAPSHOT_EXTENSION = ".json"
SNAPSHOT_PREFIX = "home_registry"
SAFETY_PREFIX = "home_registry_auto_pre_restore"
TIMESTAMP_FORMAT = "%Y.%m.%d.%H.%M.%S"
MAX_NAME_LENGTH = 255

KIND_MANUAL = "manual"
KIND_SAFETY = "safety"
KIND_UPLOADED = "uploaded"

_TIMESTAMP_PATTERN = r"\d{4}\.\d{2}\.\d{2}\.\d{2}\.\d{2}\.\d{2}"
_GENERATED_NAME_RE = re.compile(
    rf"^{SNAPSHOT_PREFIX}_(?P<safety>auto_pre_restore_)?"
    rf"(?P<timestamp>{_TIMESTAMP_PATTERN})(?:_\d+)?\.json$"
)

_FORBIDDEN_CHARACTERS = ("/", "\\", "\x00")

# Names end up in Content-Disposition headers
_HEADER_UNSAFE_CHARACTERS = frozenset(
    [chr(code) for code in range(0x20)] + ["\x7f", "\""]
)


def validate_snapshot_name(name: str) -> None:
    """
    Validate a snapshot name against format and path-traversal rules.

    Rules are checked in order: the extension, then separators and parent
    directory tokens, then the remaining shape constraints. Any name that
    passes may be joined onto the catalog directory safely.

    Args:
        name: Candidate snapshot file name (no directory component).

    Raises:
        ValidationError: Describing the first rule the name breaks.
    """
    if not isinstance(name, str) or not name:
        raise ValidationError("Snapshot name must be a non-empty string")

    if not name.lower().endswith(SNAPSHOT_EXTENSION):
        raise ValidationError(
            f"Only {SNAPSHOT_EXTENSION} snapshot files are allowed: {name!r}"
        )

    if any(char in name for char in _FORBIDDEN_CHARACTERS) or ".." in name:
        raise ValidationError(
            f"Snapshot name must not contain path separators or '..': {name!r}"
        )

    if any(char in _HEADER_UNSAFE_CHARACTERS for char in name):
        raise ValidationError(
            f"Snapshot name must not contain control characters or quotes: {name!r}"
        )

    if name.startswith("."):
        raise ValidationError(f"Snapshot name must not start with '.': {name!r}")

    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(
            f"Snapshot name is longer than {MAX_NAME_LENGTH} characters"
        )

    if len(name) == len(SNAPSHOT_EXTENSION):
        raise ValidationError("Snapshot name has an empty stem")


def is_generated_name(name: str) -> bool:
    """Check whether a name follows the reserved auto-generated convention."""
    return _GENERATED_NAME_RE.match(name) is not None


def snapshot_kind(name: str) -> str:
    """
    Classify a snapshot by its name.

    Returns:
        ``"safety"`` for pre-restore snapshots, ``"manual"`` for other
        generated names and ``"uploaded"`` for everything else.
    """
    match = _GENERATED_NAME_RE.match(name)
    if match is None:
        return KIND_UPLOADED
    if match.group("safety"):
        return KIND_SAFETY
    return KIND_MANUAL


def generate_snapshot_name(
    prefix: str = SNAPSHOT_PREFIX,
    now: datetime | None = None,
) -> str:
    """
    Generate a timestamped snapshot name.

    Args:
        prefix: Either SNAPSHOT_PREFIX or SAFETY_PREFIX.
        now: Timestamp to embed (defaults to the current UTC time).

    Returns:
        File name such as ``home_registry_2026.10.19.14.03.52.json``.
    """
    if now is None:
        now = datetime.now(UTC)
    return f"{prefix}_{now.strftime(TIMESTAMP_FORMAT)}{SNAPSHOT_EXTENSION}"


def numbered_name(name: str, number: int) -> str:
    """Return ``name`` with a ``_N`` suffix inserted before the extension."""
    stem = name[: -len(SNAPSHOT_EXTENSION)]
    return f"{stem}_{number}{SNAPSHOT_EXTENSION}"
