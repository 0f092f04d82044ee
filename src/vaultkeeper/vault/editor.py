"""
Editor capability and private plaintext workspace.

``BaseEditor.launch(path) -> exit status`` is the only thing the vault needs
from an editor. ``ExternalEditor`` runs the user's editor as a subprocess;
tests plug in their own subclass.

``secure_workspace()`` holds decrypted content in a 0700 temp directory and
shreds it (random overwrite, fsync, unlink) on every exit path, including
editor failure and KeyboardInterrupt.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .exceptions import EditorFailed

logger = logging.getLogger(__name__)

# Number of random overwrites before a plaintext temp file is unlinked
SHRED_PASSES = 3
_SHRED_CHUNK = 64 * 1024


class BaseEditor(ABC):
    """Capability interface: edit a file in place, report the exit status."""

    @abstractmethod
    def launch(self, path: Path) -> int:
        """Open ``path`` for editing and block until the editor exits."""


class ExternalEditor(BaseEditor):
    """Runs an external editor command, e.g. ``["vim"]`` or ``["code", "--wait"]``."""

    def __init__(self, command: Sequence[str]):
        if not command:
            raise ValueError("Editor command must not be empty")
        self.command: List[str] = list(command)

    def launch(self, path: Path) -> int:
        argv = self.command + [str(path)]
        logger.debug("Launching editor %s", self.command[0])
        try:
            result = subprocess.run(argv, check=False)
        except OSError as exc:
            raise EditorFailed(
                f"Could not launch editor {self.command[0]!r}: {exc}", operation="edit"
            ) from exc
        return result.returncode


def shred_file(path: Path, passes: int = SHRED_PASSES) -> None:
    """Overwrite a file with random bytes ``passes`` times, then delete it."""
    path = Path(path)
    try:
        length = path.stat().st_size
    except FileNotFoundError:
        return
    try:
        with open(path, "r+b", buffering=0) as fh:
            for _ in range(passes):
                fh.seek(0)
                remaining = length
                while remaining > 0:
                    chunk = min(remaining, _SHRED_CHUNK)
                    fh.write(os.urandom(chunk))
                    remaining -= chunk
                os.fsync(fh.fileno())
    finally:
        path.unlink(missing_ok=True)


@contextmanager
def secure_workspace(
    content: bytes,
    filename: str = "buffer",
    base_dir: Optional[Path] = None,
) -> Iterator[Path]:
    """Write plaintext to a private temp file; shred it when the block exits.

    Args:
        content: Decrypted bytes to expose to the editor.
        filename: Name for the temp file (extension helps editors pick a mode).
        base_dir: Parent for the private directory (default: system temp dir).

    Yields:
        Path to the plaintext file.
    """
    safe_name = Path(filename).name or "buffer"
    workdir = Path(tempfile.mkdtemp(prefix="vaultkeeper-", dir=base_dir))
    path = workdir / safe_name
    try:
        os.chmod(workdir, 0o700)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        yield path
    finally:
        # Editors may leave swap/backup files beside the buffer; shred them too.
        for entry in list(workdir.iterdir()) if workdir.exists() else []:
            try:
                if entry.is_file():
                    shred_file(entry)
            except OSError as exc:
                logger.warning("Failed to shred temp file %s: %s", entry.name, exc)
        shutil.rmtree(workdir, ignore_errors=True)


def edit_bytes(
    editor: BaseEditor,
    content: bytes,
    filename: str = "buffer",
    base_dir: Optional[Path] = None,
) -> bytes:
    """Round-trip bytes through an editor and return the edited content.

    Raises:
        EditorFailed: The editor exited non-zero or could not be launched.
    """
    with secure_workspace(content, filename, base_dir) as path:
        status = editor.launch(path)
        if status != 0:
            raise EditorFailed(f"Editor exited with status {status}", operation="edit")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise EditorFailed(f"Edited file could not be read back: {exc}", operation="edit") from exc
