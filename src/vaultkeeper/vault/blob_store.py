"""Blob store: encrypted file payloads on disk, one file per record.

Layout: ``<vault_dir>/blobs/<id>`` with no extension, so no original
filename leaks into the path. Writes go to a ``.tmp-<id>-<token>`` file in
the same directory, are flushed and fsynced, then renamed over the final
path; a reader never sees a half-written blob.

Source of truth for payload bytes. Knows nothing about keys or rows.
"""

import logging
import os
import secrets
from pathlib import Path
from typing import List, Optional, Set

from .exceptions import StorageIO

logger = logging.getLogger(__name__)

BLOB_DIRNAME = "blobs"
TEMP_PREFIX = ".tmp-"


class BlobStore:
    """Directory of id-named ciphertext files.

    Args:
        root: The blob directory (normally ``<vault_dir>/blobs``).
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def initialize(self) -> None:
        """Create the blob directory (owner-only)."""
        try:
            self.root.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageIO(f"Cannot create blob directory: {exc}", operation="create") from exc

    def path_for(self, blob_id: str) -> Path:
        if not blob_id or blob_id.startswith(".") or "/" in blob_id or "\\" in blob_id \
                or blob_id != os.path.basename(blob_id):
            raise ValueError(f"Invalid blob id: {blob_id!r}")
        return self.root / blob_id

    # ── Writing ─────────────────────────────────────────────────────

    def write_temp(self, blob_id: str, data: bytes) -> Path:
        """Write data to a fresh temp file next to the final path and fsync it."""
        self.path_for(blob_id)
        tmp_path = self.root / f"{TEMP_PREFIX}{blob_id}-{secrets.token_hex(4)}"
        try:
            fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            try:
                view = memoryview(data)
                while view:
                    written = os.write(fd, view)
                    view = view[written:]
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError as exc:
            self.discard_temp(tmp_path)
            raise StorageIO(
                f"Failed to write blob: {exc}", record_id=blob_id, operation="write_blob"
            ) from exc
        return tmp_path

    def commit_temp(self, tmp_path: Path, blob_id: str) -> Path:
        """Atomically rename a fully written temp file to the blob's final path."""
        final_path = self.path_for(blob_id)
        try:
            os.replace(tmp_path, final_path)
            self._fsync_dir()
        except OSError as exc:
            raise StorageIO(
                f"Failed to commit blob: {exc}", record_id=blob_id, operation="write_blob"
            ) from exc
        return final_path

    def write(self, blob_id: str, data: bytes) -> Path:
        """Write a blob atomically (temp file, fsync, rename)."""
        tmp_path = self.write_temp(blob_id, data)
        try:
            return self.commit_temp(tmp_path, blob_id)
        except BaseException:
            self.discard_temp(tmp_path)
            raise

    def discard_temp(self, tmp_path: Path) -> None:
        """Remove a temp file if it is still there."""
        try:
            Path(tmp_path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove temp blob %s: %s", Path(tmp_path).name, exc)

    # ── Reading ─────────────────────────────────────────────────────

    def read(self, blob_id: str) -> bytes:
        """Return the blob's bytes.

        Raises:
            FileNotFoundError: No blob with this id.
            StorageIO: Any other read failure.
        """
        path = self.path_for(blob_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise StorageIO(
                f"Failed to read blob: {exc}", record_id=blob_id, operation="read_blob"
            ) from exc

    def exists(self, blob_id: str) -> bool:
        return self.path_for(blob_id).is_file()

    def size(self, blob_id: str) -> Optional[int]:
        """Byte length of a blob, or None if it does not exist."""
        try:
            return self.path_for(blob_id).stat().st_size
        except FileNotFoundError:
            return None

    def list_ids(self) -> Set[str]:
        """Names of all committed blobs (temp files excluded)."""
        if not self.root.is_dir():
            return set()
        return {
            entry.name
            for entry in self.root.iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        }

    def list_temp(self) -> List[Path]:
        """Leftover temp files from interrupted writes."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry for entry in self.root.iterdir()
            if entry.is_file() and entry.name.startswith(TEMP_PREFIX)
        )

    @staticmethod
    def temp_owner(tmp_path: Path) -> Optional[str]:
        """Blob id a temp file was written for, or None if the name is foreign."""
        name = Path(tmp_path).name
        if not name.startswith(TEMP_PREFIX):
            return None
        blob_id, sep, _token = name[len(TEMP_PREFIX):].rpartition("-")
        return blob_id if sep and blob_id else None

    # ── Deleting ────────────────────────────────────────────────────

    def delete(self, blob_id: str) -> bool:
        """Delete a blob. Returns True if a file was removed."""
        path = self.path_for(blob_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageIO(
                f"Failed to delete blob: {exc}", record_id=blob_id, operation="delete_blob"
            ) from exc
        return True

    def _fsync_dir(self) -> None:
        # Directory fsync makes the rename durable; not supported on Windows.
        if os.name != "posix":
            return
        fd = os.open(self.root, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
