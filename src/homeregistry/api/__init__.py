"""
HTTP API for Home Registry backup administration.

The server exposes the backup operations over http.server; the client talks
to it with requests.
"""

from homeregistry.api.client import ApiConnectionError, BackupClient
from homeregistry.api.server import (
    DEFAULT_HOST,
    DEFAULT_PORT,
    BackupApiServer,
    BackupRequestHandler,
    status_for_error,
)

__all__ = [
    "BackupApiServer",
    "BackupRequestHandler",
    "BackupClient",
    "ApiConnectionError",
    "status_for_error",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
]
