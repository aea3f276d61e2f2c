"""
Caller identity for Home Registry administration.

The backup subsystem only needs to answer one question about a caller: is
this an authenticated administrator? The identity service answers it from the
``users`` collection of the live store.

API tokens are never stored in plaintext. The configuration file maps the
SHA-256 hex digest of each token to the username it acts as, and incoming
bearer tokens are hashed and compared in constant time.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import sqlite3
from dataclasses import dataclass

from homeregistry.storage.live_store import LiveStore

logger = logging.getLogger(__name__)

# Random bytes per generated API token
TOKEN_BYTES = 32


@dataclass(frozen=True)
class Caller:
    """
    The party invoking an operation.

    Attributes:
        username: Username the caller acts as.
        user_id: Identifier from the users collection, when resolved.
        authenticated: False for anonymous requests.
    """

    username: str | None
    user_id: str | None = None
    authenticated: bool = True

    @classmethod
    def anonymous(cls) -> Caller:
        """A caller that presented no credentials."""
        return cls(username=None, authenticated=False)


class IdentityService:
    """Interface consulted by the access guard."""

    def is_privileged(self, caller: Caller) -> bool:
        """Return True if the caller may perform backup operations."""
        raise NotImplementedError

    def resolve(self, username: str) -> Caller:
        """Build a Caller for a username."""
        return Caller(username=username)


class StoreIdentityService(IdentityService):
    """
    Identity service backed by the live store's users collection.

    A caller is privileged when its user exists, is active and is an
    administrator.
    """

    def __init__(self, store: LiveStore) -> None:
        self.store = store

    def _lookup(self, username: str) -> sqlite3.Row | None:
        with self.store.connection() as conn:
            return conn.execute(
                "SELECT id, is_admin, is_active FROM users WHERE username = ?",
                (username,),
            ).fetchone()

    def resolve(self, username: str) -> Caller:
        row = self._lookup(username)
        return Caller(username=username, user_id=row["id"] if row else None)

    def is_privileged(self, caller: Caller) -> bool:
        if not caller.authenticated or not caller.username:
            return False

        row = self._lookup(caller.username)
        if row is None:
            logger.debug(f"Unknown user: {caller.username}")
            return False
        if caller.user_id is not None and caller.user_id != row["id"]:
            return False
        return bool(row["is_active"]) and bool(row["is_admin"])


def hash_token(token: str) -> str:
    """Get the SHA-256 hex digest stored in configuration for a token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> tuple[str, str]:
    """
    Generate a new API token.

    Returns:
        Tuple of (token, digest). Only the digest belongs in configuration.
    """
    token = secrets.token_urlsafe(TOKEN_BYTES)
    return token, hash_token(token)


class TokenAuthenticator:
    """
    Maps bearer tokens to callers.

    Example:
        authenticator = TokenAuthenticator({hash_token("s3cret"): "admin"}, identity)
        caller = authenticator.authenticate("Bearer s3cret")
    """

    def __init__(
        self,
        tokens: dict[str, str],
        identity: IdentityService | None = None,
    ) -> None:
        """
        Initialize the authenticator.

        Args:
            tokens: Mapping of token SHA-256 hex digest to username.
            identity: Resolves usernames to callers.
        """
        self._tokens = {digest.lower(): username for digest, username in tokens.items()}
        self.identity = identity or IdentityService()

    def authenticate(self, authorization: str | None) -> Caller:
        """
        Resolve an Authorization header value.

        Returns:
            The matching Caller, or an anonymous Caller when the header is
            missing, malformed or carries an unknown token.
        """
        if not authorization:
            return Caller.anonymous()

        scheme, _, token = authorization.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return Caller.anonymous()

        digest = hash_token(token)
        for known_digest, username in self._tokens.items():
            if hmac.compare_digest(digest, known_digest):
                return self.identity.resolve(username)

        logger.warning("Rejected request with unknown API token")
        return Caller.anonymous()
