"""
Client for the Home Registry backup HTTP API.

Wraps a requests.Session with bearer authentication. Structured error
responses from the server are raised again as the matching BackupError
subclass, so callers handle remote and local failures the same way.

Create, download, upload and restore can take minutes on large datasets, so
the default timeout is long.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote

import requests

from homeregistry.backup.errors import (
    ERROR_KINDS,
    AuthorizationError,
    BackupError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300


class ApiConnectionError(BackupError):
    """Raised when the API server cannot be reached or times out."""

    kind = "connection"


class BackupClient:
    """
    Backup API client.

    Example:
        client = BackupClient("http://127.0.0.1:8080", token="...")
        entry = client.create_backup(description="Nightly")
        client.download_backup(entry["name"], Path("./nightly.json"))
    """

    def __init__(self, base_url: str, token: str, timeout: float = DEFAULT_TIMEOUT) -> None:
        """
        Initialize the client.

        Args:
            base_url: API root, e.g. ``http://127.0.0.1:8080``.
            token: Bearer token.
            timeout: Request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
            }
        )

    def close(self) -> None:
        """Close the underlying session."""
        self._session.close()

    def __enter__(self) -> BackupClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def health(self) -> dict[str, Any]:
        """Check that the server is up."""
        return self._request("GET", "/api/health").json()

    def list_backups(self) -> list[dict[str, Any]]:
        """List snapshots, newest first."""
        return self._request_data("GET", "/api/backup/list")

    def create_backup(self, description: str | None = None) -> dict[str, Any]:
        """Create a snapshot and return its catalog entry."""
        body = {"description": description} if description is not None else {}
        return self._request_data("POST", "/api/backup/create", json=body)

    def backup_info(self, name: str) -> dict[str, Any]:
        """Get a snapshot's metadata."""
        return self._request_data("GET", f"/api/backup/info/{_quote_name(name)}")

    def download_backup(self, name: str, destination: Path | None = None) -> bytes:
        """
        Download a snapshot.

        Args:
            name: Snapshot name.
            destination: Optional file to write the bytes to.

        Returns:
            Snapshot bytes.
        """
        response = self._request("GET", f"/api/backup/download/{_quote_name(name)}")
        content = response.content
        if destination is not None:
            destination.write_bytes(content)
            logger.info(f"Downloaded {name} to {destination}")
        return content

    def upload_backup(self, content: bytes | Path, filename: str | None = None) -> dict[str, Any]:
        """
        Upload a snapshot document.

        Args:
            content: Document bytes or a path to read them from.
            filename: Name to store it under (defaults to the path's name).

        Returns:
            Catalog entry under the name actually used.
        """
        if isinstance(content, Path):
            filename = filename or content.name
            content = content.read_bytes()
        if not filename:
            raise ValueError("filename is required when uploading raw bytes")

        return self._request_data(
            "POST",
            "/api/backup/upload",
            params={"filename": filename},
            data=content,
            headers={"Content-Type": "application/json"},
        )

    def restore_backup(self, name: str) -> dict[str, Any]:
        """Restore a snapshot and return the restore outcome."""
        return self._request_data("POST", f"/api/backup/restore/{_quote_name(name)}")

    def delete_backup(self, name: str) -> None:
        """Delete a snapshot."""
        self._request("DELETE", f"/api/backup/{_quote_name(name)}")

    def _request_data(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make a request and return the ``data`` of its success payload."""
        return self._request(method, endpoint, **kwargs).json().get("data")

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> requests.Response:
        """
        Make an API request.

        Raises:
            BackupError: The subclass matching the server's error kind.
            ApiConnectionError: If the server cannot be reached.
        """
        url = f"{self.base_url}{endpoint}"

        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise ApiConnectionError(f"Backup API request timed out: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise ApiConnectionError(f"Failed to connect to backup API: {e}") from e

        logger.debug(f"{method} {endpoint} -> {response.status_code}")

        if response.status_code >= 400:
            raise _error_from_response(response)

        return response


def _quote_name(name: str) -> str:
    return quote(name, safe="")


def _error_from_response(response: requests.Response) -> BackupError:
    """Rebuild the BackupError described by an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if not isinstance(payload, dict):
        return BackupError(f"HTTP {response.status_code}: {response.text[:200]}")

    kind = payload.get("error") or "internal"
    message = payload.get("message") or f"HTTP {response.status_code}"

    if kind == AuthorizationError.kind:
        error: BackupError = AuthorizationError(
            message, authenticated=response.status_code != 401
        )
    else:
        error = ERROR_KINDS.get(kind, BackupError)(message)

    error.safety_snapshot = payload.get("safety_snapshot")
    return error
