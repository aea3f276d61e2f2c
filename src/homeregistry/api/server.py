"""
HTTP API for Home Registry backup administration.

This module exposes the backup operations over HTTP using Python's built-in
http.server module. No web framework is used.

Routes (all except health require ``Authorization: Bearer <token>``):
    GET    /api/health                       liveness check
    GET    /api/backup/list                  list snapshots
    POST   /api/backup/create                create a snapshot
    GET    /api/backup/download/{name}       download snapshot bytes
    GET    /api/backup/info/{name}           snapshot metadata
    POST   /api/backup/upload?filename=NAME  upload a snapshot (raw JSON body)
    POST   /api/backup/restore/{name}        restore a snapshot
    DELETE /api/backup/{name}                delete a snapshot

JSON responses use the structured ``{"success", "data", "message", "error"}``
shape from homeregistry.backup.service.

Security:
    - Binds to localhost only by default
    - Upload size is checked against Content-Length before the body is read
    - Snapshot names from the URL are validated before any file access
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, unquote, urlparse

from homeregistry.auth import Caller, TokenAuthenticator
from homeregistry.backup.errors import (
    AuthorizationError,
    BackupError,
    PayloadTooLargeError,
    ValidationError,
)
from homeregistry.backup.service import BackupService, error_response, success_response

logger = logging.getLogger(__name__)

# Default host and port
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080

JSON_CONTENT_TYPE = "application/json; charset=utf-8"

# Largest accepted create request body (it only carries a description)
MAX_CREATE_BODY_BYTES = 64 * 1024

STATUS_BY_KIND: dict[str, HTTPStatus] = {
    "authorization": HTTPStatus.FORBIDDEN,
    "validation": HTTPStatus.BAD_REQUEST,
    "not_found": HTTPStatus.NOT_FOUND,
    "payload_too_large": HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
    "restore_in_progress": HTTPStatus.CONFLICT,
}

_DOWNLOAD_PREFIX = "/api/backup/download/"
_INFO_PREFIX = "/api/backup/info/"
_RESTORE_PREFIX = "/api/backup/restore/"
_BACKUP_PREFIX = "/api/backup/"


def status_for_error(error: BackupError) -> HTTPStatus:
    """Map an error to its HTTP status code."""
    if isinstance(error, AuthorizationError) and not error.authenticated:
        return HTTPStatus.UNAUTHORIZED
    return STATUS_BY_KIND.get(error.kind, HTTPStatus.INTERNAL_SERVER_ERROR)


class BackupHTTPServer(ThreadingHTTPServer):
    """ThreadingHTTPServer carrying the backup service and authenticator."""

    daemon_threads = True

    def __init__(
        self,
        address: tuple[str, int],
        service: BackupService,
        authenticator: TokenAuthenticator,
    ) -> None:
        self.service = service
        self.authenticator = authenticator
        super().__init__(address, BackupRequestHandler)


class BackupRequestHandler(BaseHTTPRequestHandler):
    """
    HTTP request handler for the backup API.

    Routes requests to the BackupService and translates BackupError
    subclasses into structured JSON error responses.
    """

    server: BackupHTTPServer
    protocol_version = "HTTP/1.1"

    def log_message(self, format: str, *args: Any) -> None:
        """Log HTTP requests to logger instead of stderr."""
        logger.debug("API request: %s", format % args)

    @property
    def service(self) -> BackupService:
        return self.server.service

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._body_consumed = False
        path = urlparse(self.path).path

        if path == "/api/health":
            self._serve_health()
        elif path == "/api/backup/list":
            self._dispatch(self._handle_list)
        elif path.startswith(_DOWNLOAD_PREFIX):
            self._dispatch(self._handle_download, self._name_from(path, _DOWNLOAD_PREFIX))
        elif path.startswith(_INFO_PREFIX):
            self._dispatch(self._handle_info, self._name_from(path, _INFO_PREFIX))
        else:
            self._send_not_found()

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._body_consumed = False
        parsed = urlparse(self.path)
        path = parsed.path

        if path == "/api/backup/create":
            self._dispatch(self._handle_create)
        elif path == "/api/backup/upload":
            query = parse_qs(parsed.query)
            filename = query.get("filename", [""])[0]
            self._dispatch(self._handle_upload, filename)
        elif path.startswith(_RESTORE_PREFIX):
            self._dispatch(self._handle_restore, self._name_from(path, _RESTORE_PREFIX))
        else:
            self._send_not_found()

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._body_consumed = False
        path = urlparse(self.path).path

        if path.startswith(_BACKUP_PREFIX) and path != _BACKUP_PREFIX:
            self._dispatch(self._handle_delete, self._name_from(path, _BACKUP_PREFIX))
        else:
            self._send_not_found()

    def _dispatch(self, handler: Any, *args: Any) -> None:
        """Authenticate, run a handler and send its error on failure."""
        caller = self.server.authenticator.authenticate(self.headers.get("Authorization"))
        try:
            handler(caller, *args)
        except BackupError as e:
            logger.info(f"Backup API error ({e.kind}): {e.message}")
            self._skip_unread_body()
            self._serve_json(error_response(e), status_for_error(e))
        except Exception:
            logger.exception("Unexpected error in backup API handler")
            self._skip_unread_body()
            self._serve_json(
                error_response(BackupError("Internal server error")),
                HTTPStatus.INTERNAL_SERVER_ERROR,
            )
        else:
            self._skip_unread_body()

    def _handle_list(self, caller: Caller) -> None:
        entries = self.service.list(caller)
        self._serve_json(
            success_response(
                [entry.to_dict() for entry in entries],
                f"Found {len(entries)} backups",
            )
        )

    def _handle_create(self, caller: Caller) -> None:
        self.service.guard.require_privileged(caller)
        body = self._read_body(MAX_CREATE_BODY_BYTES)

        description = None
        if body:
            try:
                payload = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ValidationError(f"Request body is not valid JSON: {e}") from e
            if not isinstance(payload, dict):
                raise ValidationError("Request body must be a JSON object")
            description = payload.get("description")
            if description is not None and not isinstance(description, str):
                raise ValidationError("'description' must be a string")

        entry = self.service.create(caller, description=description)
        self._serve_json(
            success_response(entry.to_dict(), "Backup created successfully"),
            HTTPStatus.CREATED,
        )

    def _handle_download(self, caller: Caller, name: str) -> None:
        download = self.service.download(caller, name)

        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", download.content_type)
        self.send_header("Content-Disposition", download.content_disposition)
        self.send_header("Content-Length", str(len(download.content)))
        self.end_headers()
        self.wfile.write(download.content)

    def _handle_info(self, caller: Caller, name: str) -> None:
        metadata = self.service.snapshot_info(caller, name)
        self._serve_json(success_response(metadata.to_dict()))

    def _handle_upload(self, caller: Caller, filename: str) -> None:
        self.service.guard.require_privileged(caller)
        if not filename:
            raise ValidationError("Missing 'filename' query parameter")

        content = self._read_body(self.service.max_upload_bytes)
        entry = self.service.upload(caller, content, filename)
        self._serve_json(
            success_response(entry.to_dict(), f"Backup uploaded as {entry.name}"),
            HTTPStatus.CREATED,
        )

    def _handle_restore(self, caller: Caller, name: str) -> None:
        outcome = self.service.restore(caller, name)
        self._serve_json(
            success_response(
                outcome.to_dict(),
                f"Backup restored successfully. "
                f"Safety snapshot: {outcome.safety_snapshot}",
            )
        )

    def _handle_delete(self, caller: Caller, name: str) -> None:
        self.service.delete(caller, name)
        self._serve_json(success_response(None, f"Backup {name} deleted"))

    def _read_body(self, limit: int) -> bytes:
        """
        Read the request body, refusing it before reading when too large.

        Raises:
            ValidationError: If Content-Length is malformed.
            PayloadTooLargeError: If Content-Length exceeds ``limit``.
        """
        header = self.headers.get("Content-Length")
        if header is None:
            return b""

        try:
            length = int(header)
        except ValueError as e:
            raise ValidationError(f"Invalid Content-Length: {header!r}") from e
        if length < 0:
            raise ValidationError(f"Invalid Content-Length: {header!r}")

        if length > limit:
            # The body stays unread, so the connection cannot be reused
            self.close_connection = True
            raise PayloadTooLargeError.for_size(length, limit)

        self._body_consumed = True
        return self.rfile.read(length)

    def _skip_unread_body(self) -> None:
        """Discard a small unread body so the connection stays usable; close otherwise."""
        if self._body_consumed or self.close_connection:
            return

        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = -1

        if 0 <= length <= MAX_CREATE_BODY_BYTES:
            self.rfile.read(length)
        else:
            self.close_connection = True

    @staticmethod
    def _name_from(path: str, prefix: str) -> str:
        """Extract the (percent-decoded) snapshot name after a route prefix."""
        return unquote(path[len(prefix):])

    def _serve_health(self) -> None:
        self._skip_unread_body()
        self._serve_json(
            {
                "status": "healthy",
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    def _serve_json(self, data: dict[str, Any], status: HTTPStatus = HTTPStatus.OK) -> None:
        """Serve JSON response."""
        encoded = json.dumps(data, indent=2, default=str).encode("utf-8")

        self.send_response(status)
        self.send_header("Content-Type", JSON_CONTENT_TYPE)
        self.send_header("Content-Length", str(len(encoded)))
        if self.close_connection:
            self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(encoded)

    def _send_not_found(self) -> None:
        self._skip_unread_body()
        self._serve_json(
            {
                "success": False,
                "data": None,
                "message": "The requested resource was not found",
                "error": "not_found",
            },
            HTTPStatus.NOT_FOUND,
        )


class BackupApiServer:
    """
    Backup API server manager.

    Runs the HTTP server in a background thread, or in the foreground when
    started with ``blocking=True``.

    Example:
        server = BackupApiServer(service, TokenAuthenticator(settings.api.tokens))
        server.start(host="127.0.0.1", port=8080)
        print(server.get_url())
        server.stop()

    Attributes:
        host: Host address to bind to.
        port: Port number to bind to (0 picks a free port).
    """

    def __init__(
        self,
        service: BackupService,
        authenticator: TokenAuthenticator,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
    ) -> None:
        self.service = service
        self.authenticator = authenticator
        self.host = host
        self.port = port
        self._server: BackupHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._running = False

    def start(
        self,
        host: str | None = None,
        port: int | None = None,
        blocking: bool = False,
    ) -> bool:
        """
        Start the API server.

        Args:
            host: Host address to bind to (overrides instance setting).
            port: Port number to bind to (overrides instance setting).
            blocking: If True, blocks until server is stopped.

        Returns:
            True if server started successfully, False otherwise.
        """
        if self._running:
            logger.warning("Backup API server is already running")
            return True

        if host:
            self.host = host
        if port is not None:
            self.port = port

        try:
            self._server = BackupHTTPServer(
                (self.host, self.port),
                self.service,
                self.authenticator,
            )
        except OSError as e:
            logger.error("Failed to start backup API server: %s", e)
            return False

        # Port 0 binds an ephemeral port
        self.port = self._server.server_address[1]
        self._running = True
        logger.info("Backup API server starting at %s", self.get_url())

        if blocking:
            self._run_server()
        else:
            self._thread = threading.Thread(target=self._run_server, daemon=True)
            self._thread.start()

        return True

    def _run_server(self) -> None:
        """Run the server loop."""
        if self._server:
            try:
                self._server.serve_forever()
            except Exception as e:
                logger.error("Backup API server error: %s", e)
            finally:
                self._running = False

    def stop(self) -> None:
        """Stop the API server."""
        if self._server is None:
            return

        logger.info("Stopping backup API server")

        self._server.shutdown()
        self._server.server_close()
        self._server = None

        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

        self._running = False

    def is_running(self) -> bool:
        """Check if server is running."""
        return self._running

    def get_url(self) -> str:
        """Get the base URL of the API."""
        return f"http://{self.host}:{self.port}"
