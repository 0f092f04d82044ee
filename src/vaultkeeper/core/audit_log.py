# Core - Audit Logging
#
# Append-only audit log for every vault access and state change.
# Events are written as structured JSON lines (structlog) to a daily file
# under the configured log directory.
#
# Never pass plaintext, passwords, keys or nonces into an event: only ids,
# record names and counts.

import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of vault events that can be logged."""

    # Vault lifecycle
    VAULT_CREATED = "vault.created"
    VAULT_UNLOCKED = "vault.unlocked"
    VAULT_LOCKED = "vault.locked"
    VAULT_UNLOCK_FAILED = "vault.unlock.failed"
    VAULT_BUSY = "vault.busy"
    VAULT_DESTROYED = "vault.destroyed"
    VAULT_ERROR = "vault.error"

    # Credentials
    CREDENTIAL_ADDED = "vault.credential.added"
    CREDENTIAL_ACCESSED = "vault.credential.accessed"
    CREDENTIAL_UPDATED = "vault.credential.updated"
    CREDENTIAL_DELETED = "vault.credential.deleted"

    # Files
    FILE_ADDED = "vault.file.added"
    FILE_ACCESSED = "vault.file.accessed"
    FILE_EXPORTED = "vault.file.exported"
    FILE_EDITED = "vault.file.edited"
    FILE_DELETED = "vault.file.deleted"

    # Reconciliation
    SYNC_CHECKED = "vault.sync.checked"
    SYNC_REPAIRED = "vault.sync.repaired"


class EventSeverity(str, Enum):
    """
    Severity levels for vault events.

    - INFO: normal activity
    - INVESTIGATE: something unusual worth a look (stale lock, drift)
    - ALERT: a security-relevant failure (wrong password, tampering)
    - CRITICAL: the vault could not complete an operation
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for vault events.

    Features:
    - Structured JSON logging (structlog)
    - Automatic timestamp and event ID
    - OS user / host context on every event
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self.log_file = self._setup_file_handler()
        self.logger = structlog.get_logger("vaultkeeper.audit")

    def _setup_file_handler(self) -> Path:
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))

        audit_logger = logging.getLogger("vaultkeeper.audit")
        for handler in list(audit_logger.handlers):
            audit_logger.removeHandler(handler)
            handler.close()
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False
        return log_file

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Log a vault event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details (ids and counts only)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "user_context": self._get_default_user_context(),
        }

        self.logger.info("vault_event", **event_data)

        return event_id

    def close(self) -> None:
        """Detach and close the file handler."""
        audit_logger = logging.getLogger("vaultkeeper.audit")
        for handler in list(audit_logger.handlers):
            audit_logger.removeHandler(handler)
            handler.close()

    def _get_default_user_context(self) -> Dict[str, Any]:
        """Get default user context (OS user, hostname, platform)."""
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(instance: Optional[AuditLogger]) -> None:
    """Replace the global audit logger (CLI startup, tests)."""
    global _audit_logger
    if _audit_logger is not None and _audit_logger is not instance:
        _audit_logger.close()
    _audit_logger = instance
