"""
Field-level sealing of authentication secrets inside snapshots.

Snapshots are downloadable files, and by default they carry password hashes,
recovery code hashes and password reset tokens in plaintext, exactly as the
live store holds them. When sealing is enabled, only those declared secret
fields are replaced by Fernet tokens; everything else stays readable.

Security Design:
    - Key derived from a passphrase with PBKDF2-HMAC-SHA256
    - Random 128-bit salt per snapshot, recorded in ``metadata.secrets``
    - Null values are left as null
    - Restoring a sealed snapshot requires the same passphrase

The passphrase is never written to disk; it is read from the
HOMEREGISTRY_BACKUP_PASSPHRASE environment variable by the configuration
layer.
"""

from __future__ import annotations

import base64
import secrets
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from homeregistry.backup.document import Snapshot
from homeregistry.backup.errors import ValidationError
from homeregistry.backup.registry import import_order

SEAL_SCHEME = "fernet-pbkdf2-sha256"
DEFAULT_ITERATIONS = 600_000
SALT_LENGTH = 16
MIN_PASSPHRASE_LENGTH = 12


class SecretSealer:
    """
    Seals and unseals the registry's secret fields.

    Example:
        sealer = SecretSealer("correct horse battery staple")
        sealer.seal(snapshot)      # before persisting
        sealer.unseal(snapshot)    # before restoring
    """

    def __init__(self, passphrase: str, iterations: int = DEFAULT_ITERATIONS) -> None:
        """
        Initialize the sealer.

        Args:
            passphrase: Secret used to derive the encryption key.
            iterations: PBKDF2 iteration count for newly sealed snapshots.

        Raises:
            ValueError: If the passphrase is too short.
        """
        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(
                f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters"
            )
        self._passphrase = passphrase
        self.iterations = iterations

    def seal(self, snapshot: Snapshot) -> Snapshot:
        """
        Encrypt secret fields in place and record how they were sealed.

        Returns:
            The same snapshot, now sealed.
        """
        if snapshot.is_sealed:
            return snapshot

        salt = secrets.token_bytes(SALT_LENGTH)
        fernet = self._derive_key(salt, self.iterations)
        sealed_fields: dict[str, list[str]] = {}

        for spec in import_order():
            if not spec.secret_fields:
                continue
            sealed_fields[spec.name] = list(spec.secret_fields)
            for record in snapshot.data.get(spec.name, []):
                for field_name in spec.secret_fields:
                    value = record.get(field_name)
                    if value is None:
                        continue
                    record[field_name] = fernet.encrypt(str(value).encode("utf-8")).decode(
                        "ascii"
                    )

        snapshot.metadata.secrets = {
            "scheme": SEAL_SCHEME,
            "salt": base64.b64encode(salt).decode("ascii"),
            "iterations": self.iterations,
            "fields": sealed_fields,
        }
        return snapshot

    def unseal(self, snapshot: Snapshot) -> Snapshot:
        """
        Decrypt secret fields in place.

        Returns:
            The same snapshot with plaintext secrets and no secrets block.

        Raises:
            ValidationError: If the secrets block is malformed or the
                passphrase does not match.
        """
        info = snapshot.metadata.secrets
        if info is None:
            return snapshot

        fernet, fields = self._parse_secrets_block(info)

        for collection, field_names in fields.items():
            for index, record in enumerate(snapshot.data.get(collection, [])):
                for field_name in field_names:
                    value = record.get(field_name)
                    if value is None:
                        continue
                    if not isinstance(value, str):
                        raise ValidationError(
                            f"Sealed field '{collection}.{field_name}' of record "
                            f"{index} is not a token"
                        )
                    try:
                        record[field_name] = fernet.decrypt(value.encode("ascii")).decode(
                            "utf-8"
                        )
                    except (InvalidToken, UnicodeError) as e:
                        raise ValidationError(
                            "Cannot unseal snapshot secrets: wrong passphrase or "
                            "corrupted data"
                        ) from e

        snapshot.metadata.secrets = None
        return snapshot

    def _parse_secrets_block(
        self, info: dict[str, Any]
    ) -> tuple[Fernet, dict[str, list[str]]]:
        """Validate a ``metadata.secrets`` block and derive its key."""
        if info.get("scheme") != SEAL_SCHEME:
            raise ValidationError(
                f"Unsupported secrets sealing scheme: {info.get('scheme')!r}"
            )

        try:
            salt = base64.b64decode(info["salt"], validate=True)
            iterations = int(info["iterations"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed secrets block: {e}") from e

        fields = info.get("fields")
        if not isinstance(fields, dict) or not all(
            isinstance(names, list) and all(isinstance(n, str) for n in names)
            for names in fields.values()
        ):
            raise ValidationError("Malformed secrets block: 'fields' must map to lists")

        if iterations < 1:
            raise ValidationError("Malformed secrets block: iterations must be positive")

        return self._derive_key(salt, iterations), fields

    def _derive_key(self, salt: bytes, iterations: int) -> Fernet:
        """Derive a Fernet key from the passphrase and salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(self._passphrase.encode("utf-8")))
        return Fernet(key)


def require_unsealed(snapshot: Snapshot, sealer: SecretSealer | None) -> Snapshot:
    """
    Return a snapshot whose secrets are plaintext.

    Raises:
        ValidationError: If the snapshot is sealed and no sealer is configured.
    """
    if not snapshot.is_sealed:
        return snapshot
    if sealer is None:
        raise ValidationError(
            "Snapshot secrets are sealed; set HOMEREGISTRY_BACKUP_PASSPHRASE to restore it"
        )
    return sealer.unseal(snapshot)
