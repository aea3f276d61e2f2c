"""
Snapshot catalog backed by a single flat directory.

One file per snapshot, no subdirectories and no sidecar index: every listing
is recomputed from the directory. Files are published atomically (write to a
hidden temp file in the same directory, fsync, then link/rename into place)
so a concurrent list or read never observes a half-written snapshot.
"""

from __future__ import annotations

import errno
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from homeregistry.backup.errors import NotFoundError, StorageError, ValidationError
from homeregistry.backup.naming import (
    SNAPSHOT_EXTENSION,
    numbered_name,
    snapshot_kind,
    validate_snapshot_name,
)

logger = logging.getLogger(__name__)

# Attempts at a free ``name_N.json`` before giving up
MAX_NAME_SUFFIX = 100

# Snapshots may contain password hashes; keep them owner-only
SNAPSHOT_FILE_MODE = 0o600

# link() failures meaning the filesystem has no hard links (vfat, some SMB/FUSE)
_NO_HARD_LINK_ERRNOS = frozenset(
    code
    for code in (
        errno.EPERM,
        errno.ENOSYS,
        errno.EXDEV,
        getattr(errno, "ENOTSUP", None),
        getattr(errno, "EOPNOTSUPP", None),
    )
    if code is not None
)

_O_NOFOLLOW = getattr(os, "O_NOFOLLOW", 0)


def format_file_size(size_bytes: int) -> str:
    """
    Format a byte count for humans.

    Returns:
        String such as ``"512 B"``, ``"1.50 KB"`` or ``"2.00 GB"``.
    """
    kb = 1024
    mb = kb * 1024
    gb = mb * 1024

    if size_bytes >= gb:
        return f"{size_bytes / gb:.2f} GB"
    if size_bytes >= mb:
        return f"{size_bytes / mb:.2f} MB"
    if size_bytes >= kb:
        return f"{size_bytes / kb:.2f} KB"
    return f"{size_bytes} B"


@dataclass
class CatalogEntry:
    """
    Derived description of one persisted snapshot file.

    Attributes:
        name: Snapshot file name.
        modified_at: Last modification time (UTC).
        size_bytes: File size in bytes.
        kind: ``manual``, ``safety`` or ``uploaded``.
    """

    name: str
    modified_at: datetime
    size_bytes: int
    kind: str

    @property
    def size(self) -> str:
        """Human-readable size."""
        return format_file_size(self.size_bytes)

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary."""
        return {
            "name": self.name,
            "date": self.modified_at.isoformat(),
            "size": self.size,
            "size_bytes": self.size_bytes,
            "kind": self.kind,
        }


class SnapshotCatalog:
    """
    Enumerates, reads, writes and deletes snapshot files.

    Every externally supplied name is validated before the filesystem is
    touched.

    Example:
        catalog = SnapshotCatalog(Path("./data/backups"))
        name = catalog.write_unique("home_registry_2026.10.19.14.03.52.json", content)
        for entry in catalog.list():
            print(entry.name, entry.size)

    Attributes:
        directory: Directory holding the snapshot files.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)

    def list(self) -> list[CatalogEntry]:
        """
        List all snapshots, newest first.

        Returns:
            Catalog entries sorted by modification time (then name), newest
            first.

        Raises:
            StorageError: If the directory cannot be created or read.
        """
        self._ensure_directory()

        entries: list[CatalogEntry] = []
        try:
            with os.scandir(self.directory) as it:
                for dir_entry in it:
                    if not dir_entry.name.lower().endswith(SNAPSHOT_EXTENSION):
                        continue
                    try:
                        validate_snapshot_name(dir_entry.name)
                    except ValidationError:
                        continue
                    if not dir_entry.is_file(follow_symlinks=False):
                        continue
                    try:
                        file_stat = dir_entry.stat(follow_symlinks=False)
                    except FileNotFoundError:
                        # Deleted between scandir and stat
                        continue
                    entries.append(self._make_entry(dir_entry.name, file_stat))
        except OSError as e:
            raise StorageError(f"Failed to read snapshot directory: {e}") from e

        entries.sort(key=lambda entry: (entry.modified_at, entry.name), reverse=True)
        return entries

    def read(self, name: str) -> bytes:
        """
        Read a snapshot's raw bytes.

        Symlinks and other non-regular files are treated as absent, matching
        what list() shows.

        Raises:
            ValidationError: If the name is invalid.
            NotFoundError: If the snapshot does not exist.
            StorageError: On other read failures.
        """
        path = self._path(name)
        try:
            fd = os.open(path, os.O_RDONLY | _O_NOFOLLOW)
        except FileNotFoundError as e:
            raise NotFoundError(f"Snapshot '{name}' does not exist") from e
        except OSError as e:
            if e.errno == errno.ELOOP:
                raise NotFoundError(f"Snapshot '{name}' does not exist") from e
            raise StorageError(f"Failed to read snapshot '{name}': {e}") from e

        try:
            with os.fdopen(fd, "rb") as f:
                if not stat.S_ISREG(os.fstat(f.fileno()).st_mode):
                    raise NotFoundError(f"Snapshot '{name}' does not exist")
                return f.read()
        except OSError as e:
            raise StorageError(f"Failed to read snapshot '{name}': {e}") from e

    def write(self, name: str, content: bytes, overwrite: bool = False) -> CatalogEntry:
        """
        Atomically publish a snapshot file.

        Args:
            name: Snapshot name.
            content: Document bytes.
            overwrite: Replace an existing snapshot of the same name.

        Returns:
            Catalog entry for the published file.

        Raises:
            ValidationError: If the name is invalid.
            StorageError: If the name is taken (and overwrite is False) or
                the file cannot be written.
        """
        path = self._path(name)
        self._ensure_directory()

        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=".tmp-",
                suffix=SNAPSHOT_EXTENSION,
                dir=str(self.directory),
            )
        except OSError as e:
            raise StorageError(f"Failed to write snapshot '{name}': {e}") from e

        try:
            with os.fdopen(temp_fd, "wb") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_path, SNAPSHOT_FILE_MODE)

            if overwrite:
                os.replace(temp_path, path)
            else:
                self._publish_new(temp_path, path)
        except FileExistsError as e:
            self._discard(temp_path)
            raise StorageError(f"Snapshot '{name}' already exists") from e
        except OSError as e:
            self._discard(temp_path)
            raise StorageError(f"Failed to write snapshot '{name}': {e}") from e

        logger.info(f"Snapshot written: {name} ({format_file_size(len(content))})")
        return self.entry(name)

    def write_unique(self, name: str, content: bytes) -> CatalogEntry:
        """
        Publish a snapshot without replacing an existing one.

        Tries ``name`` first, then ``stem_1.json`` .. ``stem_100.json``.

        Returns:
            Catalog entry under the name actually used.

        Raises:
            ValidationError: If the name is invalid.
            StorageError: If no free name is found or writing fails.
        """
        validate_snapshot_name(name)
        candidates = [name] + [
            numbered_name(name, number) for number in range(1, MAX_NAME_SUFFIX + 1)
        ]
        for candidate in candidates:
            if self._taken(candidate):
                continue
            try:
                return self.write(candidate, content)
            except StorageError:
                # Lost a race for this name; try the next one
                if self._taken(candidate):
                    continue
                raise

        raise StorageError(f"No free snapshot name available for '{name}'")

    def delete(self, name: str) -> None:
        """
        Delete a snapshot.

        Raises:
            ValidationError: If the name is invalid.
            NotFoundError: If the snapshot does not exist.
            StorageError: On other failures.
        """
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise NotFoundError(f"Snapshot '{name}' does not exist") from e
        except OSError as e:
            raise StorageError(f"Failed to delete snapshot '{name}': {e}") from e

        logger.info(f"Snapshot deleted: {name}")

    def exists(self, name: str) -> bool:
        """Check whether a snapshot exists (a regular file, not a symlink)."""
        try:
            return stat.S_ISREG(self._path(name).lstat().st_mode)
        except FileNotFoundError:
            return False

    def entry(self, name: str) -> CatalogEntry:
        """
        Describe a single snapshot.

        Raises:
            NotFoundError: If the snapshot does not exist.
        """
        path = self._path(name)
        try:
            file_stat = path.lstat()
        except FileNotFoundError as e:
            raise NotFoundError(f"Snapshot '{name}' does not exist") from e
        except OSError as e:
            raise StorageError(f"Failed to stat snapshot '{name}': {e}") from e
        if not stat.S_ISREG(file_stat.st_mode):
            raise NotFoundError(f"Snapshot '{name}' does not exist")
        return self._make_entry(name, file_stat)

    def _path(self, name: str) -> Path:
        """Validate a name and resolve it inside the catalog directory."""
        validate_snapshot_name(name)
        return self.directory / name

    def _taken(self, name: str) -> bool:
        """Check whether anything at all, even a dangling symlink, holds a name."""
        return os.path.lexists(self._path(name))

    def _ensure_directory(self) -> None:
        """Create the catalog directory if it does not exist."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create snapshot directory: {e}") from e

    @staticmethod
    def _publish_new(temp_path: str, path: Path) -> None:
        """
        Move a finished temp file to a name that must not exist yet.

        link() refuses to replace an existing file. Where the filesystem has
        no hard links, fall back to an existence check plus rename.
        """
        try:
            os.link(temp_path, path)
        except OSError as e:
            if e.errno not in _NO_HARD_LINK_ERRNOS:
                raise
            logger.debug(f"Hard links unavailable ({e}); publishing by rename")
            if os.path.lexists(path):
                raise FileExistsError(errno.EEXIST, "Snapshot already exists", str(path)) from e
            os.replace(temp_path, path)
            return
        os.unlink(temp_path)

    @staticmethod
    def _make_entry(name: str, file_stat: os.stat_result) -> CatalogEntry:
        return CatalogEntry(
            name=name,
            modified_at=datetime.fromtimestamp(file_stat.st_mtime, tz=UTC),
            size_bytes=file_stat.st_size,
            kind=snapshot_kind(name),
        )

    @staticmethod
    def _discard(temp_path: str) -> None:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
