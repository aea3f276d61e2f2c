"""Administrator policy for backup operations."""

from __future__ import annotations

import logging

from homeregistry.auth import Caller, IdentityService
from homeregistry.backup.errors import AuthorizationError

logger = logging.getLogger(__name__)


class AccessGuard:
    """
    Rejects callers that are not authenticated administrators.

    Every backup operation passes through ``require_privileged`` before it
    touches the catalog or the live store.
    """

    def __init__(self, identity: IdentityService) -> None:
        self.identity = identity

    def require_privileged(self, caller: Caller | None) -> Caller:
        """
        Check that a caller may perform backup operations.

        Returns:
            The caller, unchanged.

        Raises:
            AuthorizationError: If the caller is missing, unauthenticated or
                not an administrator.
        """
        if caller is None or not caller.authenticated:
            raise AuthorizationError("Authentication required", authenticated=False)

        if not self.identity.is_privileged(caller):
            logger.warning(f"Backup operation denied for user: {caller.username}")
            raise AuthorizationError()

        return caller
