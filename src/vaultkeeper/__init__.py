# vaultkeeper - Main Package
#
# Single-user encrypted vault for credentials and files.
# One master password unlocks envelope-encrypted records kept in SQLite,
# with file payloads stored as id-named encrypted blobs on disk.

__version__ = "0.4.0"
__author__ = "vaultkeeper contributors"
__description__ = "Encrypted storage for passwords & files"

from .core import (
    EventSeverity,
    EventType,
    get_audit_logger,
)
from .vault import VaultManager

__all__ = [
    "__version__",
    "VaultManager",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
]
