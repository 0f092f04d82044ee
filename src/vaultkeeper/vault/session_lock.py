# Vault - Session Lock
#
# Exclusive advisory lock held from unlock() to lock().
#
# The payload {pid, token, acquired_at} is written to a private temp file
# first, then hard-linked to <vault_dir>/.lock; the link fails if the lock
# exists, so a lock file is never visible without its owner. A lock whose
# pid is no longer running is stale and gets reclaimed. A live pid,
# including our own process when another SessionLock instance holds it,
# means the vault is busy. A lock with no readable owner is only reclaimed
# once it is older than STALE_GRACE_SECONDS.

import json
import logging
import os
import secrets
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import psutil

from .exceptions import StorageIO, VaultBusy

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"
STALE_GRACE_SECONDS = 30


class SessionLock:
    """One holder per vault directory at a time."""

    def __init__(self, vault_dir: Path):
        self.path = Path(vault_dir) / LOCK_FILENAME
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        """Take the lock or raise VaultBusy."""
        if self.held:
            return
        token = secrets.token_hex(16)
        payload = json.dumps({
            "pid": os.getpid(),
            "token": token,
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }).encode("utf-8")

        staging = self.path.with_name(f"{LOCK_FILENAME}.{token}")
        try:
            fd = os.open(staging, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            try:
                os.write(fd, payload)
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as exc:
            staging.unlink(missing_ok=True)
            raise StorageIO(f"Cannot create lock file: {exc}", operation="unlock") from exc

        try:
            for _ in range(2):
                try:
                    os.link(staging, self.path)
                except FileExistsError:
                    if self._reclaim_if_stale():
                        continue
                    raise VaultBusy(
                        "Vault is already unlocked by another session", operation="unlock"
                    )
                except OSError as exc:
                    raise StorageIO(f"Cannot create lock file: {exc}", operation="unlock") from exc
                self._token = token
                return
            raise VaultBusy("Vault lock is contended", operation="unlock")
        finally:
            staging.unlink(missing_ok=True)

    def release(self) -> None:
        """Remove the lock file if we still own it."""
        if not self.held:
            return
        try:
            owner = self._read_owner()
            if owner and owner.get("token") == self._token:
                self.path.unlink(missing_ok=True)
            else:
                logger.warning("Vault lock at %s was taken over; leaving it", self.path)
        except OSError as exc:
            logger.warning("Failed to remove vault lock %s: %s", self.path, exc)
        finally:
            self._token = None

    def _read_owner(self) -> Optional[dict]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def _age(self) -> Optional[float]:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _reclaim_if_stale(self) -> bool:
        """Delete a lock left behind by a dead process. True if reclaimed."""
        owner = self._read_owner()
        if owner is None:
            # Vanished between our link() and read: retry.
            return True
        pid = owner.get("pid")
        if isinstance(pid, int):
            if psutil.pid_exists(pid):
                return False
        else:
            age = self._age()
            if age is None:
                return True
            if age < STALE_GRACE_SECONDS:
                logger.warning("Vault lock %s has no readable owner yet; treating as busy", self.path)
                return False
        logger.warning("Reclaiming stale vault lock %s (pid=%s)", self.path, pid)
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            return False
        return True

    def __enter__(self) -> "SessionLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
