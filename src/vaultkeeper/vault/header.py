"""Vault header: salt, iteration count and password verifier.

The header lets a candidate password be tested without storing the key or a
password hash: the verifier is a known plaintext sealed under the derived
key, so it opens iff the password is right.

File format (``<vault_dir>/vault.json``)::

    {"version": "1", "salt": b64, "iterations": int,
     "verifier": b64(nonce || ciphertext+tag), "created_at": iso8601}
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .encryption import (
    DEFAULT_ITERATIONS,
    MIN_ITERATIONS,
    NONCE_LENGTH,
    SALT_LENGTH,
    EncryptionService,
    MasterKey,
)
from .exceptions import (
    AuthenticationFailure,
    InvalidInput,
    StorageIO,
    VaultAlreadyExists,
    VaultNotInitialized,
)

logger = logging.getLogger(__name__)

HEADER_FILENAME = "vault.json"
HEADER_VERSION = "1"
VERIFIER_PLAINTEXT = b"VAULTKEEPER_VAULT_OK"
VERIFIER_AAD = b"vaultkeeper:header"


@dataclass(frozen=True)
class VaultHeader:
    """Persisted {salt, iterations, verifier} record, one per vault."""
    salt: bytes
    iterations: int
    verifier: bytes
    created_at: str
    version: str = HEADER_VERSION

    # ── Construction ────────────────────────────────────────────────

    @classmethod
    def create(
        cls, master_password: str, iterations: Optional[int] = None
    ) -> "VaultHeader":
        """Generate salt, derive the key and seal the verifier.

        The derived key is zeroized before returning.
        """
        iterations = DEFAULT_ITERATIONS if iterations is None else iterations
        if iterations < MIN_ITERATIONS:
            raise InvalidInput(
                f"KDF iterations must be at least {MIN_ITERATIONS}", operation="create"
            )

        salt = EncryptionService.generate_salt()
        with MasterKey(EncryptionService.derive_key(master_password, salt, iterations)) as key:
            nonce = EncryptionService.generate_nonce()
            sealed = EncryptionService.seal(key, nonce, VERIFIER_PLAINTEXT, VERIFIER_AAD)

        return cls(
            salt=salt,
            iterations=iterations,
            verifier=nonce + sealed,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    # ── Verification ────────────────────────────────────────────────

    def unlock(self, master_password: str) -> MasterKey:
        """Derive a candidate key and prove it against the verifier.

        Returns:
            The live MasterKey on success.

        Raises:
            AuthenticationFailure: Wrong password or tampered verifier.
        """
        key = MasterKey(
            EncryptionService.derive_key(master_password, self.salt, self.iterations)
        )
        try:
            nonce = self.verifier[:NONCE_LENGTH]
            plaintext = EncryptionService.open_sealed(
                key, nonce, self.verifier[NONCE_LENGTH:], VERIFIER_AAD
            )
            if plaintext != VERIFIER_PLAINTEXT:
                raise AuthenticationFailure()
        except BaseException:
            key.zeroize()
            raise
        return key

    # ── Persistence ─────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "salt": EncryptionService.encode_for_storage(self.salt),
            "iterations": self.iterations,
            "verifier": EncryptionService.encode_for_storage(self.verifier),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VaultHeader":
        """Parse a header dict. Any malformation is an AuthenticationFailure.

        The caller must not be able to tell an unreadable header from a
        wrong password.
        """
        try:
            salt = EncryptionService.decode_from_storage(data["salt"])
            verifier = EncryptionService.decode_from_storage(data["verifier"])
            iterations = int(data["iterations"])
            created_at = str(data.get("created_at", ""))
            version = str(data.get("version", HEADER_VERSION))
        except (AttributeError, KeyError, TypeError, ValueError):
            raise AuthenticationFailure() from None
        if len(salt) < SALT_LENGTH // 2 or iterations < MIN_ITERATIONS:
            raise AuthenticationFailure()
        return cls(
            salt=salt,
            iterations=iterations,
            verifier=verifier,
            created_at=created_at,
            version=version,
        )

    def save(self, vault_dir: Path) -> Path:
        """Write the header atomically (temp file + rename, mode 0600)."""
        path = header_path(vault_dir)
        if path.exists():
            raise VaultAlreadyExists(
                f"Vault already exists at {vault_dir}", operation="create"
            )
        tmp_path = path.with_name(f".{HEADER_FILENAME}.tmp")
        payload = json.dumps(self.to_dict(), indent=2).encode("utf-8")
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            try:
                os.write(fd, payload)
                os.fsync(fd)
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise StorageIO(f"Failed to write vault header: {exc}", operation="create") from exc
        logger.debug("Vault header written to %s", path)
        return path

    @classmethod
    def load(cls, vault_dir: Path) -> "VaultHeader":
        """Read the header from ``vault_dir``.

        Raises:
            VaultNotInitialized: No header file exists.
            AuthenticationFailure: The file exists but cannot be parsed.
        """
        path = header_path(vault_dir)
        if not path.exists():
            raise VaultNotInitialized(
                f"No vault at {vault_dir}. Create one first.", operation="unlock"
            )
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            raise AuthenticationFailure() from None
        if not isinstance(data, dict):
            raise AuthenticationFailure()
        return cls.from_dict(data)


def header_path(vault_dir: Path) -> Path:
    return Path(vault_dir) / HEADER_FILENAME


def header_exists(vault_dir: Path) -> bool:
    return header_path(vault_dir).exists()
