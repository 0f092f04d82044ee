# Core Module - Shared Utilities
#
# Core module provides functionality shared across vaultkeeper modules:
# - Audit logging
# - Configuration
# - SQLite connection handling

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    set_audit_logger,
)
from .config import (
    VaultSettings,
    load_settings,
)

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "set_audit_logger",
    # Configuration
    "VaultSettings",
    "load_settings",
]
