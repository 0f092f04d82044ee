"""
Vault Exception Classes

Every error carries the CLI exit code for its kind so scripts can branch on
wrong password vs. missing record vs. I/O failure. Messages name the
operation and record id, never plaintext or key material.
"""

from typing import Optional


class VaultError(Exception):
    """Base exception for vault operations"""

    exit_code = 1

    def __init__(
        self,
        message: str,
        *,
        record_id: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.record_id = record_id
        self.operation = operation

    @property
    def kind(self) -> str:
        return type(self).__name__

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.record_id:
            context.append(f"record={self.record_id}")
        if context:
            return f"{self.kind}: {message} ({', '.join(context)})"
        return f"{self.kind}: {message}"


class AuthenticationFailure(VaultError):
    """Raised when a password is wrong or the verifier/ciphertext was tampered with"""

    exit_code = 10

    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(message, **kwargs)


class VaultLocked(VaultError):
    """Raised when a record operation is attempted outside an unlocked session"""

    exit_code = 11

    def __init__(self, message: str = "Vault is locked. Unlock vault first.", **kwargs):
        super().__init__(message, **kwargs)


class VaultBusy(VaultError):
    """Raised when another session already holds the vault lock"""
    exit_code = 12


class RecordNotFound(VaultError):
    """Raised when a credential or file record does not exist"""
    exit_code = 20


class DuplicateName(VaultError):
    """Raised when a credential name is already taken"""
    exit_code = 21


class InvalidInput(VaultError):
    """Raised when a name, password or setting fails validation"""
    exit_code = 22


class DecryptionFailed(VaultError):
    """Raised when stored record data fails authentication after unlock"""
    exit_code = 30


class DriftDetected(VaultError):
    """Raised when the metadata store and the blob store disagree"""
    exit_code = 31


class StorageIO(VaultError):
    """Raised when the disk or database fails underneath an operation"""
    exit_code = 40


class EditorFailed(VaultError):
    """Raised when the editor exits non-zero or cannot be launched"""
    exit_code = 41


class VaultAlreadyExists(VaultError):
    """Raised when creating a vault where one already exists"""
    exit_code = 42


class VaultNotInitialized(VaultError):
    """Raised when no vault exists at the target location"""
    exit_code = 43
