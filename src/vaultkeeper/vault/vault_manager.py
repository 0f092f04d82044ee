# Vault - Vault Manager
#
# One VaultManager per vault directory and per process session.
# Owns the live MasterKey between unlock() and lock(), plus the session lock.
#
# Credentials: username/password/notes are sealed separately
#   (AES-256-GCM, fresh nonce, AAD "<id>:<field>") in the metadata store.
# Files: content is sealed once (AAD "<id>:content") into the blob store;
#   the row keeps name, original filename, nonce and plaintext size.
#
# Multi-step writes order their steps so a crash leaves at worst an
# orphan blob or a stale temp file, never a row whose blob disagrees.

import atexit
import functools
import logging
import os
import shutil
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from ..core import EventSeverity, EventType, get_audit_logger
from ..core.config import default_data_dir, default_editor_command
from .blob_store import BLOB_DIRNAME, BlobStore
from .editor import BaseEditor, ExternalEditor, edit_bytes
from .encryption import TAG_LENGTH, EncryptionService, MasterKey
from .exceptions import (
    AuthenticationFailure,
    DecryptionFailed,
    DriftDetected,
    DuplicateName,
    InvalidInput,
    RecordNotFound,
    StorageIO,
    VaultAlreadyExists,
    VaultBusy,
    VaultError,
    VaultLocked,
)
from .header import VaultHeader, header_exists, header_path
from .metadata_store import (
    DB_FILENAME,
    CredentialRow,
    FileRow,
    MetadataStore,
    Sealed,
)
from .models import Credential, CredentialSummary, FileSummary, VaultListing
from .rwlock import ReadWriteLock
from .session_lock import SessionLock
from .sync import DriftReport, RepairResult, SyncReconciler
from .validation import validate_master_password, validate_name

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Failed unlocks allowed before backoff starts; then 1, 2, 4, 8, 16 seconds.
FREE_UNLOCK_ATTEMPTS = 2
MAX_BACKOFF_SECONDS = 16


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _session(write: bool) -> Callable[[F], F]:
    """Run a method inside an unlocked session.

    Readers share the session, writers are exclusive. A StorageIO or an
    unexpected error locks the vault before it propagates; domain errors
    (not found, duplicate, decryption, editor) leave the session open.
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: "VaultManager", *args, **kwargs):
            guard = self._rw.write() if write else self._rw.read()
            with guard:
                if self._key is None:
                    raise VaultLocked(operation=func.__name__)
                try:
                    return func(self, *args, **kwargs)
                except StorageIO as exc:
                    self._abort_session(func.__name__, exc)
                    raise
                except VaultError:
                    raise
                except Exception as exc:
                    self._abort_session(func.__name__, exc)
                    raise
        return wrapper  # type: ignore[return-value]
    return decorator


class VaultManager:
    """
    Encrypted vault of credentials and files.

    Lifecycle: create() once, then unlock() / operations / lock().
    Every record operation raises VaultLocked outside an unlocked session.

    Security:
    - The master password is never stored; only salt, iterations and an
      encrypted verifier (vault.json)
    - The master key is zeroized on lock(), on storage errors, at
      interpreter exit and when leaving a ``with`` block
    - One session per vault directory (lock file); a second unlock fails
      with VaultBusy
    - Audit log entries carry ids and names, never secrets
    """

    def __init__(
        self,
        vault_dir: Optional[Union[str, Path]] = None,
        editor: Optional[BaseEditor] = None,
    ):
        """
        Args:
            vault_dir: Vault directory (default: platform data directory)
            editor: Editor for edit_file()/edit_credential_notes()
                    (default: the user's $EDITOR at call time)
        """
        self.vault_dir = Path(vault_dir) if vault_dir is not None else default_data_dir()
        self.editor = editor

        self.metadata = MetadataStore(self.vault_dir / DB_FILENAME)
        self.blobs = BlobStore(self.vault_dir / BLOB_DIRNAME)
        self._session_lock = SessionLock(self.vault_dir)
        self._rw = ReadWriteLock()
        self._key: Optional[MasterKey] = None

        # Rate limiting for unlock attempts (monotonic clock)
        self.failed_attempts = 0
        self.lockout_until: Optional[float] = None

    @property
    def logger(self):
        return get_audit_logger()

    @property
    def is_unlocked(self) -> bool:
        return self._key is not None

    @property
    def exists(self) -> bool:
        return header_exists(self.vault_dir)

    # ── Lifecycle ───────────────────────────────────────────────────

    def create(self, master_password: str, iterations: Optional[int] = None) -> None:
        """
        Create a new, empty vault. Does not unlock it.

        The header is written last: a directory without vault.json is not
        a vault, so an interrupted create can be retried.

        Raises:
            VaultAlreadyExists: vault.json is already present
            InvalidInput: weak master password or too few KDF iterations
        """
        if self.exists:
            raise VaultAlreadyExists(
                f"Vault already exists at {self.vault_dir}", operation="create"
            )
        validate_master_password(master_password)
        header = VaultHeader.create(master_password, iterations)

        try:
            self.vault_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.vault_dir, 0o700)
        except OSError as exc:
            raise StorageIO(f"Cannot create vault directory: {exc}", operation="create") from exc

        self.blobs.initialize()
        store = MetadataStore(self.metadata.db_path)
        try:
            store.open()
            store.initialize()
        finally:
            store.close()
        header.save(self.vault_dir)

        self.logger.log_event(
            event_type=EventType.VAULT_CREATED,
            severity=EventSeverity.INFO,
            message="Vault created",
            details={"vault_dir": str(self.vault_dir), "iterations": header.iterations},
        )

    def unlock(self, master_password: str) -> None:
        """
        Verify the master password and start a session.

        Security: after FREE_UNLOCK_ATTEMPTS failures, further attempts are
        refused (without deriving a key) for 1, 2, 4, 8, then 16 seconds.

        Raises:
            AuthenticationFailure: wrong password, corrupt header, or an
                attempt inside the backoff window
            VaultBusy: another session holds the vault
            VaultNotInitialized: no vault at vault_dir
        """
        with self._rw.write():
            if self._key is not None:
                raise VaultBusy("This session has already unlocked the vault", operation="unlock")

            if self.lockout_until is not None and time.monotonic() < self.lockout_until:
                remaining = max(1, int(self.lockout_until - time.monotonic() + 0.999))
                self.logger.log_event(
                    event_type=EventType.VAULT_UNLOCK_FAILED,
                    severity=EventSeverity.ALERT,
                    message=f"Unlock attempt during lockout period ({remaining}s remaining)",
                )
                raise AuthenticationFailure(
                    f"Too many failed attempts. Please wait {remaining} seconds.",
                    operation="unlock",
                )

            header = VaultHeader.load(self.vault_dir)

            try:
                self._session_lock.acquire()
            except VaultBusy:
                self.logger.log_event(
                    event_type=EventType.VAULT_BUSY,
                    severity=EventSeverity.INVESTIGATE,
                    message="Unlock refused: vault is held by another session",
                )
                raise

            try:
                try:
                    key = header.unlock(master_password)
                except AuthenticationFailure:
                    self._register_failed_unlock()
                    raise
                self.metadata.open()
                self.metadata.initialize()
                if not self.blobs.root.is_dir():
                    self.blobs.initialize()
            except BaseException:
                self.metadata.close()
                self._session_lock.release()
                raise

            self._key = key
            self.failed_attempts = 0
            self.lockout_until = None
            atexit.register(self.lock)

        self.logger.log_event(
            event_type=EventType.VAULT_UNLOCKED,
            severity=EventSeverity.INFO,
            message="Vault unlocked",
        )

    def _register_failed_unlock(self) -> None:
        self.failed_attempts += 1
        over = self.failed_attempts - FREE_UNLOCK_ATTEMPTS
        delay = min(2 ** (over - 1), MAX_BACKOFF_SECONDS) if over > 0 else 0
        self.lockout_until = time.monotonic() + delay if delay else None

        self.logger.log_event(
            event_type=EventType.VAULT_UNLOCK_FAILED,
            severity=EventSeverity.ALERT,
            message=f"Vault unlock failed (attempt {self.failed_attempts}, {delay}s lockout)",
        )

    def lock(self) -> None:
        """End the session: zeroize the key, close the store, drop the lock. Idempotent."""
        with self._rw.write():
            self._end_session()

    def _end_session(self) -> bool:
        """Tear down the session without taking the rw lock. True if one was open."""
        key, self._key = self._key, None
        if key is None:
            return False
        try:
            key.zeroize()
            self.metadata.close()
        finally:
            self._session_lock.release()
            atexit.unregister(self.lock)
        self.logger.log_event(
            event_type=EventType.VAULT_LOCKED,
            severity=EventSeverity.INFO,
            message="Vault locked",
        )
        return True

    def _abort_session(self, operation: str, exc: BaseException) -> None:
        logger.error("Vault operation %s failed, locking: %s", operation, exc)
        self.logger.log_event(
            event_type=EventType.VAULT_ERROR,
            severity=EventSeverity.CRITICAL,
            message=f"{operation} failed; vault locked",
            details={"operation": operation, "error": type(exc).__name__},
        )
        self._end_session()

    def __enter__(self) -> "VaultManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.lock()

    @_session(write=False)
    def status(self) -> Dict[str, Any]:
        """Record counts and paths for the open vault."""
        counts = self.metadata.counts()
        header = VaultHeader.load(self.vault_dir)
        return {
            "vault_dir": str(self.vault_dir),
            "unlocked": True,
            "credentials": counts["credentials"],
            "files": counts["files"],
            "kdf_iterations": header.iterations,
            "created_at": header.created_at,
        }

    @_session(write=True)
    def destroy(self, confirm: bool = False) -> None:
        """
        Permanently delete the vault: header, database, blobs and lock.

        The audit log directory is left in place.

        Raises:
            InvalidInput: ``confirm`` is not True
        """
        if not confirm:
            raise InvalidInput("Destroying a vault requires confirm=True", operation="destroy")

        self.metadata.close()
        try:
            header_path(self.vault_dir).unlink(missing_ok=True)
            for suffix in ("", "-wal", "-shm", "-journal"):
                Path(f"{self.metadata.db_path}{suffix}").unlink(missing_ok=True)
            shutil.rmtree(self.blobs.root, ignore_errors=True)
        except OSError as exc:
            raise StorageIO(f"Failed to remove vault files: {exc}", operation="destroy") from exc

        self.logger.log_event(
            event_type=EventType.VAULT_DESTROYED,
            severity=EventSeverity.ALERT,
            message="Vault destroyed",
            details={"vault_dir": str(self.vault_dir)},
        )
        self._end_session()
        try:
            self.vault_dir.rmdir()
        except OSError:
            # Not empty (audit logs, user files): leave the directory.
            pass

    # ── Helpers ─────────────────────────────────────────────────────

    def _new_id(self) -> str:
        """Random record id, unique across credentials, files and blobs."""
        while True:
            record_id = uuid.uuid4().hex
            if not self.metadata.id_exists(record_id) and not self.blobs.exists(record_id):
                return record_id

    def _seal(self, record_id: str, field: str, plaintext: bytes) -> Sealed:
        nonce = EncryptionService.generate_nonce()
        aad = f"{record_id}:{field}".encode("utf-8")
        return EncryptionService.seal(self._key, nonce, plaintext, aad), nonce

    def _open(self, record_id: str, field: str, sealed: Sealed) -> bytes:
        ciphertext, nonce = sealed
        aad = f"{record_id}:{field}".encode("utf-8")
        try:
            return EncryptionService.open_sealed(self._key, nonce, ciphertext, aad)
        except AuthenticationFailure:
            raise DecryptionFailed(
                f"Stored {field} failed authentication",
                record_id=record_id, operation="decrypt",
            ) from None

    def _seal_text(self, record_id: str, field: str, value: Optional[str]) -> Optional[Sealed]:
        # Empty values are stored as NULL
        if not value:
            return None
        return self._seal(record_id, field, value.encode("utf-8"))

    def _open_text(self, row: CredentialRow, field: str) -> Optional[str]:
        sealed = row.sealed(field)
        if sealed is None:
            return None
        try:
            return self._open(row.id, field, sealed).decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailed(
                f"Stored {field} is not valid UTF-8", record_id=row.id, operation="decrypt"
            ) from None

    def _resolve_credential(self, ref: str, operation: str) -> CredentialRow:
        row = self.metadata.get_credential(ref) or self.metadata.get_credential_by_name(ref)
        if row is None:
            raise RecordNotFound(f"No credential {ref!r}", operation=operation)
        return row

    def _resolve_file(self, ref: str, operation: str) -> FileRow:
        row = self.metadata.get_file(ref)
        if row is not None:
            return row
        matches = self.metadata.find_files_by_name(ref)
        if not matches:
            raise RecordNotFound(f"No file {ref!r}", operation=operation)
        if len(matches) > 1:
            raise InvalidInput(
                f"{len(matches)} files are named {ref!r}; use the record id",
                operation=operation,
            )
        return matches[0]

    # ── Credentials ─────────────────────────────────────────────────

    @_session(write=True)
    def add_credential(
        self,
        name: str,
        username: str = "",
        password: str = "",
        notes: Optional[str] = None,
    ) -> str:
        """
        Store a new credential.

        Returns:
            The new record id

        Raises:
            DuplicateName: a credential with this name exists
            InvalidInput: the name is empty, too long or has forbidden characters
        """
        name = validate_name(name)
        if self.metadata.credential_name_exists(name):
            raise DuplicateName(
                f"A credential named {name!r} already exists", operation="add_credential"
            )

        record_id = self._new_id()
        now = _now()
        self.metadata.insert_credential(CredentialRow(
            id=record_id,
            name=name,
            username=self._seal_text(record_id, "username", username),
            password=self._seal_text(record_id, "password", password),
            notes=self._seal_text(record_id, "notes", notes),
            created_at=now,
            modified_at=now,
        ))

        self.logger.log_event(
            event_type=EventType.CREDENTIAL_ADDED,
            severity=EventSeverity.INFO,
            message=f"Credential added: {name}",
            details={"record_id": record_id},
        )
        return record_id

    @_session(write=False)
    def read_credential(self, ref: str) -> Credential:
        """
        Decrypt a credential by id or name.

        Raises:
            RecordNotFound: no credential matches
            DecryptionFailed: a stored field fails authentication
        """
        row = self._resolve_credential(ref, "read_credential")
        credential = Credential(
            id=row.id,
            name=row.name,
            username=self._open_text(row, "username") or "",
            password=self._open_text(row, "password") or "",
            notes=self._open_text(row, "notes"),
            created_at=row.created_at,
            modified_at=row.modified_at,
        )
        self.logger.log_event(
            event_type=EventType.CREDENTIAL_ACCESSED,
            severity=EventSeverity.INFO,
            message=f"Credential accessed: {row.name}",
            details={"record_id": row.id},
        )
        return credential

    @_session(write=True)
    def update_credential(
        self,
        ref: str,
        *,
        name: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> str:
        """
        Change any subset of a credential's fields. Changed fields get a
        fresh nonce; ``None`` leaves a field as it is, ``""`` clears it.

        Returns:
            The record id
        """
        row = self._resolve_credential(ref, "update_credential")
        updates = {"username": username, "password": password, "notes": notes}
        if name is None and all(value is None for value in updates.values()):
            raise InvalidInput("Nothing to update", record_id=row.id, operation="update_credential")

        if name is not None:
            name = validate_name(name)
            if self.metadata.credential_name_exists(name, exclude_id=row.id):
                raise DuplicateName(
                    f"A credential named {name!r} already exists",
                    record_id=row.id, operation="update_credential",
                )

        fields = {
            field: self._seal_text(row.id, field, value)
            for field, value in updates.items()
            if value is not None
        }
        if not self.metadata.update_credential(row.id, _now(), name=name, fields=fields):
            raise RecordNotFound(f"No credential {ref!r}", operation="update_credential")

        self.logger.log_event(
            event_type=EventType.CREDENTIAL_UPDATED,
            severity=EventSeverity.INFO,
            message=f"Credential updated: {name or row.name}",
            details={"record_id": row.id, "fields": sorted(fields) + (["name"] if name else [])},
        )
        return row.id

    @_session(write=True)
    def delete_credential(self, ref: str) -> bool:
        """Delete a credential by id or name. Deleting a missing one is a no-op."""
        row = self.metadata.get_credential(ref) or self.metadata.get_credential_by_name(ref)
        if row is None:
            return False
        removed = self.metadata.delete_credential(row.id)
        if removed:
            self.logger.log_event(
                event_type=EventType.CREDENTIAL_DELETED,
                severity=EventSeverity.INFO,
                message=f"Credential deleted: {row.name}",
                details={"record_id": row.id},
            )
        return removed

    @_session(write=True)
    def edit_credential_notes(self, ref: str, editor: Optional[BaseEditor] = None) -> bool:
        """
        Open a credential's notes in an editor and save them back.

        Returns:
            True if the notes changed
        """
        row = self._resolve_credential(ref, "edit_notes")
        current = self._open_text(row, "notes") or ""
        edited = edit_bytes(
            self._editor(editor), current.encode("utf-8"), f"{row.id}-notes.txt"
        )
        try:
            text = edited.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidInput(
                "Edited notes are not valid UTF-8", record_id=row.id, operation="edit_notes"
            ) from None
        if text == current:
            return False

        self.metadata.update_credential(
            row.id, _now(), fields={"notes": self._seal_text(row.id, "notes", text)}
        )
        self.logger.log_event(
            event_type=EventType.CREDENTIAL_UPDATED,
            severity=EventSeverity.INFO,
            message=f"Credential notes edited: {row.name}",
            details={"record_id": row.id, "fields": ["notes"]},
        )
        return True

    # ── Files ───────────────────────────────────────────────────────

    @_session(write=True)
    def add_file(self, name: str, original_filename: str, content: bytes) -> str:
        """
        Encrypt ``content`` into a new blob and record it.

        Order: blob temp file, fsync, rename, then the row. A failure
        before the row lands leaves no record; an Exception removes the
        blob again, a hard interrupt may leave it as an orphan for the
        sync reconciler.

        Returns:
            The new record id
        """
        name = validate_name(name)
        original_filename = validate_name(Path(original_filename).name, field="original filename")

        record_id = self._new_id()
        ciphertext, nonce = self._seal(record_id, "content", bytes(content))
        self.blobs.write(record_id, ciphertext)

        now = _now()
        try:
            self.metadata.insert_file(FileRow(
                id=record_id,
                name=name,
                original_filename=original_filename,
                content_nonce=nonce,
                size=len(content),
                created_at=now,
                modified_at=now,
            ))
        except Exception:
            self.blobs.delete(record_id)
            raise

        self.logger.log_event(
            event_type=EventType.FILE_ADDED,
            severity=EventSeverity.INFO,
            message=f"File added: {name}",
            details={"record_id": record_id, "size": len(content)},
        )
        return record_id

    def add_file_from_path(self, source: Union[str, Path], name: Optional[str] = None) -> str:
        """Read a file from disk and add it (name defaults to the file name)."""
        source = Path(source)
        try:
            content = source.read_bytes()
        except FileNotFoundError:
            raise InvalidInput(f"No such file: {source}", operation="add_file") from None
        except IsADirectoryError:
            raise InvalidInput(f"Not a file: {source}", operation="add_file") from None
        except OSError as exc:
            raise InvalidInput(f"Cannot read {source}: {exc}", operation="add_file") from exc
        return self.add_file(name or source.name, source.name, content)

    def _read_file_row(self, row: FileRow) -> bytes:
        try:
            blob = self.blobs.read(row.id)
        except FileNotFoundError:
            raise DriftDetected(
                "File record has no blob; run sync-check",
                record_id=row.id, operation="read_file",
            ) from None
        if len(blob) != row.size + TAG_LENGTH:
            raise DecryptionFailed(
                f"Blob is {len(blob)} bytes, record expects {row.size + TAG_LENGTH}",
                record_id=row.id, operation="read_file",
            )
        plaintext = self._open(row.id, "content", (blob, row.content_nonce))
        if len(plaintext) != row.size:
            raise DecryptionFailed(
                "Decrypted size does not match the record", record_id=row.id, operation="read_file"
            )
        return plaintext

    @_session(write=False)
    def read_file(self, ref: str) -> bytes:
        """
        Decrypt a file by id or (unique) name.

        Raises:
            RecordNotFound: no file matches
            DriftDetected: the record's blob is missing
            DecryptionFailed: blob size or authentication check failed
        """
        row = self._resolve_file(ref, "read_file")
        content = self._read_file_row(row)
        self.logger.log_event(
            event_type=EventType.FILE_ACCESSED,
            severity=EventSeverity.INFO,
            message=f"File accessed: {row.name}",
            details={"record_id": row.id},
        )
        return content

    @_session(write=False)
    def get_file_info(self, ref: str) -> FileSummary:
        row = self._resolve_file(ref, "read_file")
        return FileSummary(
            id=row.id,
            name=row.name,
            original_filename=row.original_filename,
            size=row.size,
            created_at=row.created_at,
            modified_at=row.modified_at,
        )

    @_session(write=False)
    def export_file(
        self, ref: str, output_path: Union[str, Path], overwrite: bool = False
    ) -> Path:
        """Decrypt a file to ``output_path`` (created with mode 0600)."""
        row = self._resolve_file(ref, "export_file")
        content = self._read_file_row(row)

        output_path = Path(output_path)
        if output_path.is_dir():
            output_path = output_path / row.original_filename
        flags = os.O_WRONLY | os.O_CREAT | (os.O_TRUNC if overwrite else os.O_EXCL)
        try:
            fd = os.open(output_path, flags, 0o600)
        except FileExistsError:
            raise InvalidInput(
                f"{output_path} already exists", record_id=row.id, operation="export_file"
            ) from None
        except OSError as exc:
            raise StorageIO(
                f"Cannot write {output_path}: {exc}", record_id=row.id, operation="export_file"
            ) from exc
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
        except BaseException as exc:
            # No partial plaintext left behind
            output_path.unlink(missing_ok=True)
            if isinstance(exc, OSError):
                raise StorageIO(
                    f"Failed to write {output_path}: {exc}",
                    record_id=row.id, operation="export_file",
                ) from exc
            raise

        self.logger.log_event(
            event_type=EventType.FILE_EXPORTED,
            severity=EventSeverity.INVESTIGATE,
            message=f"File exported: {row.name}",
            details={"record_id": row.id, "path": str(output_path)},
        )
        return output_path

    @_session(write=True)
    def delete_file(self, ref: str) -> bool:
        """
        Delete a file: row first, then blob. A missing record is a no-op.

        A crash between the two steps leaves an orphan blob, never a
        dangling row.
        """
        row = self.metadata.get_file(ref)
        if row is None:
            matches = self.metadata.find_files_by_name(ref)
            if len(matches) > 1:
                raise InvalidInput(
                    f"{len(matches)} files are named {ref!r}; use the record id",
                    operation="delete_file",
                )
            row = matches[0] if matches else None
        if row is None:
            return False

        removed = self.metadata.delete_file(row.id)
        self.blobs.delete(row.id)
        if removed:
            self.logger.log_event(
                event_type=EventType.FILE_DELETED,
                severity=EventSeverity.INFO,
                message=f"File deleted: {row.name}",
                details={"record_id": row.id},
            )
        return removed

    def _editor(self, editor: Optional[BaseEditor]) -> BaseEditor:
        return editor or self.editor or ExternalEditor(default_editor_command())

    @_session(write=True)
    def edit_file(self, ref: str, editor: Optional[BaseEditor] = None) -> bool:
        """
        Decrypt a file into a private temp workspace, open the editor and
        re-encrypt the result under a fresh nonce.

        The plaintext workspace is shredded on every exit path. If the
        editor fails, the stored file is untouched.

        Returns:
            True if the content changed
        """
        row = self._resolve_file(ref, "edit_file")
        original = self._read_file_row(row)
        edited = edit_bytes(self._editor(editor), original, row.original_filename)
        if edited == original:
            return False

        self._rewrite_file(row, edited)
        self.logger.log_event(
            event_type=EventType.FILE_EDITED,
            severity=EventSeverity.INFO,
            message=f"File edited: {row.name}",
            details={"record_id": row.id, "size": len(edited)},
        )
        return True

    def _rewrite_file(self, row: FileRow, content: bytes) -> None:
        """Replace a file's content.

        Order: sealed temp blob, then the row update, then the rename. If
        the rename fails the row is put back, so row and blob always agree
        once this returns or raises. A crash between the row update and the
        rename leaves the only matching ciphertext in the temp file; sync
        reports it as a pending commit and repair rolls it forward.
        """
        ciphertext, nonce = self._seal(row.id, "content", content)
        tmp_path = self.blobs.write_temp(row.id, ciphertext)
        try:
            self.metadata.update_file_content(row.id, nonce, len(content), _now())
        except BaseException:
            self.blobs.discard_temp(tmp_path)
            raise
        try:
            self.blobs.commit_temp(tmp_path, row.id)
        except BaseException:
            self.blobs.discard_temp(tmp_path)
            self.metadata.update_file_content(
                row.id, row.content_nonce, row.size, row.modified_at
            )
            raise

    # ── Listing and reconciliation ──────────────────────────────────

    @_session(write=False)
    def list_records(self) -> VaultListing:
        """Names and metadata of every record; nothing is decrypted."""
        return VaultListing(
            credentials=[
                CredentialSummary(
                    id=row.id,
                    name=row.name,
                    created_at=row.created_at,
                    modified_at=row.modified_at,
                )
                for row in self.metadata.list_credentials()
            ],
            files=[
                FileSummary(
                    id=row.id,
                    name=row.name,
                    original_filename=row.original_filename,
                    size=row.size,
                    created_at=row.created_at,
                    modified_at=row.modified_at,
                )
                for row in self.metadata.list_files()
            ],
        )

    def _reconciler(self) -> SyncReconciler:
        return SyncReconciler(self.metadata, self.blobs, verify=self._content_matches)

    def _content_matches(self, record_id: str, sealed: bytes) -> bool:
        """True if ``sealed`` is the content the file row currently describes."""
        row = self.metadata.get_file(record_id)
        if row is None or len(sealed) != row.size + TAG_LENGTH:
            return False
        try:
            self._open(record_id, "content", (sealed, row.content_nonce))
        except DecryptionFailed:
            return False
        return True

    @_session(write=False)
    def sync_check(self) -> DriftReport:
        """Compare file records with blobs. Read-only."""
        return self._reconciler().check()

    @_session(write=True)
    def sync_repair(self, report: Optional[DriftReport] = None, confirm: bool = False) -> RepairResult:
        """
        Apply the destructive repairs for a drift report (a fresh check if
        none is given). Requires ``confirm=True``.
        """
        if not confirm:
            raise InvalidInput("Sync repair requires confirm=True", operation="sync_repair")
        reconciler = self._reconciler()
        if report is None:
            report = reconciler.check()
        return reconciler.repair(report, confirm=True)
