# Vault - Encryption Service
#
# Master password -> master key (PBKDF2-HMAC-SHA256)
# Record encryption (AES-256-GCM, 96-bit nonce, 128-bit tag)
# Owned, zeroizable master key handle

import base64
import os
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import AuthenticationFailure

# PBKDF2 parameters (OWASP recommendations)
DEFAULT_ITERATIONS = 600_000  # OWASP 2023: 600k iterations for PBKDF2-SHA256
MIN_ITERATIONS = 100_000
KEY_LENGTH = 32  # 256 bits for AES-256
SALT_LENGTH = 32  # 256-bit salt
NONCE_LENGTH = 12  # 96-bit nonce for GCM
TAG_LENGTH = 16  # 128-bit GCM tag

BytesLike = Union[bytes, bytearray, memoryview]


class MasterKey:
    """
    Owned handle for the live 256-bit master key.

    The key lives in a mutable buffer so it can be overwritten in place.
    Only the VaultManager that unlocked the vault holds one; it must call
    zeroize() on every path that ends the session.

    Limitation: the handle copies its material. PBKDF2HMAC.derive() returns
    an immutable ``bytes`` object, so the copy it hands us cannot be wiped
    and is only released to the allocator when the caller drops it. Callers
    should pass the derived key straight in and keep no other reference.
    """

    __slots__ = ("_buf",)

    def __init__(self, material: BytesLike):
        if len(material) != KEY_LENGTH:
            raise ValueError(f"Master key must be {KEY_LENGTH} bytes")
        self._buf = bytearray(material)

    @property
    def material(self) -> bytearray:
        """The live key buffer (not a copy). Raises once zeroized."""
        if self.is_zeroized():
            raise ValueError("Master key has been zeroized")
        return self._buf

    def zeroize(self) -> None:
        """Overwrite the key bytes with zeros."""
        self._buf[:] = bytes(len(self._buf))

    def is_zeroized(self) -> bool:
        """Zero-check hook: True once every key byte has been overwritten."""
        return not any(self._buf)

    def __enter__(self) -> "MasterKey":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.zeroize()

    def __repr__(self) -> str:
        state = "zeroized" if self.is_zeroized() else "live"
        return f"<MasterKey {state}>"


KeyLike = Union[MasterKey, BytesLike]


def _key_bytes(key: KeyLike) -> BytesLike:
    if isinstance(key, MasterKey):
        return key.material
    return key


class EncryptionService:
    """
    Handles key derivation and encryption for vault records.

    Flow:
    1. User enters master password
    2. PBKDF2 derives 256-bit key from password + stored salt + stored iterations
    3. AES-256-GCM seals/opens each field and blob
    4. Every seal call gets a fresh random nonce from the caller
    """

    @staticmethod
    def derive_key(
        master_password: Union[str, bytes],
        salt: bytes,
        iterations: int = DEFAULT_ITERATIONS,
    ) -> bytes:
        """
        Derive encryption key from master password using PBKDF2.

        Deterministic: the same password, salt and iteration count always
        give the same key. Cost grows linearly with ``iterations``.

        Args:
            master_password: User's master password
            salt: Random salt (stored in the vault header)
            iterations: PBKDF2 iteration count (stored in the vault header)

        Returns:
            256-bit encryption key
        """
        if isinstance(master_password, str):
            master_password = master_password.encode('utf-8')

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )

        return kdf.derive(master_password)

    @staticmethod
    def generate_salt() -> bytes:
        """Generate cryptographically random salt."""
        return os.urandom(SALT_LENGTH)

    @staticmethod
    def generate_nonce() -> bytes:
        """Generate a fresh random 96-bit nonce for one seal call."""
        return os.urandom(NONCE_LENGTH)

    @staticmethod
    def seal(
        key: KeyLike,
        nonce: bytes,
        plaintext: bytes,
        associated_data: Optional[bytes] = None,
    ) -> bytes:
        """
        Encrypt plaintext using AES-256-GCM.

        Args:
            key: 256-bit key (MasterKey or raw bytes)
            nonce: 12-byte nonce, freshly generated for this call
            plaintext: Data to encrypt
            associated_data: Authenticated but unencrypted context

        Returns:
            ciphertext with the 16-byte tag appended
        """
        if len(nonce) != NONCE_LENGTH:
            raise ValueError(f"Nonce must be {NONCE_LENGTH} bytes")
        return AESGCM(_key_bytes(key)).encrypt(nonce, plaintext, associated_data)

    @staticmethod
    def open_sealed(
        key: KeyLike,
        nonce: bytes,
        ciphertext: bytes,
        associated_data: Optional[bytes] = None,
    ) -> bytes:
        """
        Decrypt ciphertext using AES-256-GCM.

        Fails closed: a wrong key, corrupted data, truncated input or bad
        nonce length all raise the same AuthenticationFailure, never a
        partial plaintext.

        Raises:
            AuthenticationFailure: If authentication fails
        """
        if len(nonce) != NONCE_LENGTH or len(ciphertext) < TAG_LENGTH:
            raise AuthenticationFailure()
        try:
            return AESGCM(_key_bytes(key)).decrypt(nonce, ciphertext, associated_data)
        except InvalidTag:
            raise AuthenticationFailure() from None

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        """
        Encode binary data for database storage (base64).

        Binary columns are kept as TEXT so the database stays inspectable.
        """
        return base64.b64encode(data).decode('utf-8')

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        """Decode base64-encoded data from database."""
        return base64.b64decode(data.encode('utf-8'), validate=True)
