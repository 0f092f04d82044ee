# Vault Module - Encrypted credential and file storage
# AES-256-GCM record encryption, PBKDF2 master key, SQLite metadata + blob directory

from .encryption import (
    DEFAULT_ITERATIONS,
    MIN_ITERATIONS,
    NONCE_LENGTH,
    TAG_LENGTH,
    EncryptionService,
    MasterKey,
)
from .exceptions import (
    AuthenticationFailure,
    DecryptionFailed,
    DriftDetected,
    DuplicateName,
    EditorFailed,
    InvalidInput,
    RecordNotFound,
    StorageIO,
    VaultAlreadyExists,
    VaultBusy,
    VaultError,
    VaultLocked,
    VaultNotInitialized,
)
from .editor import BaseEditor, ExternalEditor
from .models import Credential, CredentialSummary, FileSummary, VaultListing
from .sync import DriftReport, RepairResult, SyncReconciler, require_clean
from .vault_manager import VaultManager

__all__ = [
    "DEFAULT_ITERATIONS",
    "MIN_ITERATIONS",
    "NONCE_LENGTH",
    "TAG_LENGTH",
    "EncryptionService",
    "MasterKey",
    "VaultManager",
    "Credential",
    "CredentialSummary",
    "FileSummary",
    "VaultListing",
    "BaseEditor",
    "ExternalEditor",
    "DriftReport",
    "RepairResult",
    "SyncReconciler",
    "require_clean",
    "VaultError",
    "AuthenticationFailure",
    "VaultLocked",
    "VaultBusy",
    "RecordNotFound",
    "DuplicateName",
    "InvalidInput",
    "DecryptionFailed",
    "DriftDetected",
    "StorageIO",
    "EditorFailed",
    "VaultAlreadyExists",
    "VaultNotInitialized",
]
