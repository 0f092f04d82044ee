# Vault - Metadata Store
#
# SQLite persistence for credential and file records.
#
# Design:
#   - One long-lived connection per unlocked session, owned by VaultManager
#   - WAL mode + busy_timeout via core.db.connect()
#   - Ciphertexts and nonces stored as base64 TEXT, one nonce per field
#   - File payloads are NOT stored here; only their nonce and size
#
# Source of truth for existence and naming of records.

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from ..core.db import connect as db_connect
from ..core.db import transaction
from .encryption import EncryptionService
from .exceptions import DecryptionFailed, DuplicateName, StorageIO

logger = logging.getLogger(__name__)

DB_FILENAME = "vault.db"

# Encrypted credential fields; each has <field>_ct and <field>_nonce columns
CREDENTIAL_FIELDS = ("username", "password", "notes")

Sealed = Tuple[bytes, bytes]  # (ciphertext_with_tag, nonce)


@dataclass
class CredentialRow:
    """Encrypted credential as stored. Missing fields are None."""
    id: str
    name: str
    username: Optional[Sealed]
    password: Optional[Sealed]
    notes: Optional[Sealed]
    created_at: str
    modified_at: str

    def sealed(self, field: str) -> Optional[Sealed]:
        return getattr(self, field)

    def nonce(self, field: str) -> Optional[bytes]:
        value = self.sealed(field)
        return value[1] if value else None


@dataclass
class FileRow:
    """File record metadata. The ciphertext lives in the blob store."""
    id: str
    name: str
    original_filename: str
    content_nonce: bytes
    size: int
    created_at: str
    modified_at: str


class MetadataStore:
    """SQLite store for the ``credentials`` and ``files`` tables.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None

    # ── Connection lifecycle ─────────────────────────────────────────

    def open(self) -> "MetadataStore":
        if self.conn is None:
            try:
                self.conn = db_connect(
                    self.db_path, row_factory=True, check_same_thread=False
                )
            except sqlite3.Error as exc:
                raise StorageIO(f"Cannot open metadata store: {exc}", operation="open") from exc
        return self

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            finally:
                self.conn = None

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    def initialize(self) -> None:
        """Create the schema (idempotent)."""
        with self._guard("initialize"), transaction(self._conn()) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credentials (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    username_ct TEXT,
                    username_nonce TEXT,
                    password_ct TEXT,
                    password_nonce TEXT,
                    notes_ct TEXT,
                    notes_nonce TEXT,
                    created_at TEXT NOT NULL,
                    modified_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS files (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    original_filename TEXT NOT NULL,
                    content_nonce TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    modified_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_files_name ON files(name)
            """)
        logger.debug("Metadata schema ready at %s", self.db_path)

    def _conn(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageIO("Metadata store is not open")
        return self.conn

    @contextmanager
    def _guard(self, operation: str, record_id: Optional[str] = None) -> Iterator[None]:
        """Translate sqlite3 errors into the vault error taxonomy."""
        try:
            yield
        except sqlite3.IntegrityError as exc:
            if "credentials.name" in str(exc):
                raise DuplicateName(
                    "A credential with this name already exists",
                    record_id=record_id, operation=operation,
                ) from exc
            raise StorageIO(str(exc), record_id=record_id, operation=operation) from exc
        except sqlite3.Error as exc:
            raise StorageIO(str(exc), record_id=record_id, operation=operation) from exc

    # ── Credentials ─────────────────────────────────────────────────

    def insert_credential(self, row: CredentialRow) -> None:
        values = [row.id, row.name]
        for field in CREDENTIAL_FIELDS:
            values.extend(self._encode_sealed(row.sealed(field)))
        values.extend([row.created_at, row.modified_at])
        with self._guard("add_credential", row.id), transaction(self._conn()) as conn:
            conn.execute("""
                INSERT INTO credentials
                (id, name, username_ct, username_nonce, password_ct, password_nonce,
                 notes_ct, notes_nonce, created_at, modified_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, values)

    def get_credential(self, record_id: str) -> Optional[CredentialRow]:
        with self._guard("read_credential", record_id):
            row = self._conn().execute(
                "SELECT * FROM credentials WHERE id = ?", (record_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def get_credential_by_name(self, name: str) -> Optional[CredentialRow]:
        with self._guard("read_credential"):
            row = self._conn().execute(
                "SELECT * FROM credentials WHERE name = ?", (name,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def credential_name_exists(self, name: str, exclude_id: Optional[str] = None) -> bool:
        with self._guard("check_name"):
            row = self._conn().execute(
                "SELECT id FROM credentials WHERE name = ? AND id != ?",
                (name, exclude_id or ""),
            ).fetchone()
        return row is not None

    def update_credential(
        self,
        record_id: str,
        modified_at: str,
        name: Optional[str] = None,
        fields: Optional[Dict[str, Optional[Sealed]]] = None,
    ) -> bool:
        """Update the name and/or re-encrypted fields. Returns False if absent.

        ``fields`` maps a field name to its new (ciphertext, nonce), or None
        to clear it.
        """
        assignments = ["modified_at = ?"]
        params: List[object] = [modified_at]
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        for field, sealed in (fields or {}).items():
            if field not in CREDENTIAL_FIELDS:
                raise ValueError(f"Unknown credential field: {field}")
            assignments.append(f"{field}_ct = ?")
            assignments.append(f"{field}_nonce = ?")
            params.extend(self._encode_sealed(sealed))
        params.append(record_id)

        with self._guard("update_credential", record_id), transaction(self._conn()) as conn:
            cursor = conn.execute(
                f"UPDATE credentials SET {', '.join(assignments)} WHERE id = ?",
                params,
            )
        return cursor.rowcount > 0

    def delete_credential(self, record_id: str) -> bool:
        """Delete a credential row. Returns True if a row was removed."""
        with self._guard("delete_credential", record_id), transaction(self._conn()) as conn:
            cursor = conn.execute("DELETE FROM credentials WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def list_credentials(self) -> List[CredentialRow]:
        """All credentials in insertion order."""
        with self._guard("list"):
            rows = self._conn().execute(
                "SELECT * FROM credentials ORDER BY rowid"
            ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    # ── Files ───────────────────────────────────────────────────────

    def insert_file(self, row: FileRow) -> None:
        with self._guard("add_file", row.id), transaction(self._conn()) as conn:
            conn.execute("""
                INSERT INTO files
                (id, name, original_filename, content_nonce, size, created_at, modified_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                row.id,
                row.name,
                row.original_filename,
                EncryptionService.encode_for_storage(row.content_nonce),
                row.size,
                row.created_at,
                row.modified_at,
            ))

    def get_file(self, record_id: str) -> Optional[FileRow]:
        with self._guard("read_file", record_id):
            row = self._conn().execute(
                "SELECT * FROM files WHERE id = ?", (record_id,)
            ).fetchone()
        return self._row_to_file(row) if row else None

    def find_files_by_name(self, name: str) -> List[FileRow]:
        with self._guard("read_file"):
            rows = self._conn().execute(
                "SELECT * FROM files WHERE name = ? ORDER BY rowid", (name,)
            ).fetchall()
        return [self._row_to_file(r) for r in rows]

    def update_file_content(
        self, record_id: str, content_nonce: bytes, size: int, modified_at: str
    ) -> bool:
        with self._guard("edit_file", record_id), transaction(self._conn()) as conn:
            cursor = conn.execute(
                "UPDATE files SET content_nonce = ?, size = ?, modified_at = ? WHERE id = ?",
                (
                    EncryptionService.encode_for_storage(content_nonce),
                    size,
                    modified_at,
                    record_id,
                ),
            )
        return cursor.rowcount > 0

    def delete_file(self, record_id: str) -> bool:
        """Delete a file row. Returns True if a row was removed."""
        with self._guard("delete_file", record_id), transaction(self._conn()) as conn:
            cursor = conn.execute("DELETE FROM files WHERE id = ?", (record_id,))
        return cursor.rowcount > 0

    def list_files(self) -> List[FileRow]:
        """All file records in insertion order."""
        with self._guard("list"):
            rows = self._conn().execute("SELECT * FROM files ORDER BY rowid").fetchall()
        return [self._row_to_file(r) for r in rows]

    def file_sizes(self) -> Dict[str, int]:
        """Map of file id -> recorded plaintext size, without decoding nonces."""
        with self._guard("sync_check"):
            rows = self._conn().execute("SELECT id, size FROM files").fetchall()
        return {r["id"]: r["size"] for r in rows}

    # ── Shared ──────────────────────────────────────────────────────

    def id_exists(self, record_id: str) -> bool:
        """True if the id is taken by a credential or a file (one id space)."""
        with self._guard("check_id", record_id):
            row = self._conn().execute(
                "SELECT 1 FROM credentials WHERE id = ? "
                "UNION ALL SELECT 1 FROM files WHERE id = ? LIMIT 1",
                (record_id, record_id),
            ).fetchone()
        return row is not None

    def counts(self) -> Dict[str, int]:
        with self._guard("status"):
            credentials = self._conn().execute("SELECT COUNT(*) FROM credentials").fetchone()[0]
            files = self._conn().execute("SELECT COUNT(*) FROM files").fetchone()[0]
        return {"credentials": credentials, "files": files}

    # ── Row helpers ─────────────────────────────────────────────────

    @staticmethod
    def _encode_sealed(sealed: Optional[Sealed]) -> Tuple[Optional[str], Optional[str]]:
        if sealed is None:
            return None, None
        ciphertext, nonce = sealed
        return (
            EncryptionService.encode_for_storage(ciphertext),
            EncryptionService.encode_for_storage(nonce),
        )

    @staticmethod
    def _decode_sealed(row: sqlite3.Row, field: str) -> Optional[Sealed]:
        ciphertext, nonce = row[f"{field}_ct"], row[f"{field}_nonce"]
        if ciphertext is None and nonce is None:
            return None
        if ciphertext is None or nonce is None:
            raise DecryptionFailed(
                f"Stored {field} is incomplete", record_id=row["id"], operation="read_credential"
            )
        try:
            return (
                EncryptionService.decode_from_storage(ciphertext),
                EncryptionService.decode_from_storage(nonce),
            )
        except ValueError:
            raise DecryptionFailed(
                f"Stored {field} is not valid base64",
                record_id=row["id"], operation="read_credential",
            ) from None

    def _row_to_credential(self, row: sqlite3.Row) -> CredentialRow:
        return CredentialRow(
            id=row["id"],
            name=row["name"],
            username=self._decode_sealed(row, "username"),
            password=self._decode_sealed(row, "password"),
            notes=self._decode_sealed(row, "notes"),
            created_at=row["created_at"],
            modified_at=row["modified_at"],
        )

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> FileRow:
        try:
            nonce = EncryptionService.decode_from_storage(row["content_nonce"])
        except ValueError:
            raise DecryptionFailed(
                "Stored content nonce is not valid base64",
                record_id=row["id"], operation="read_file",
            ) from None
        return FileRow(
            id=row["id"],
            name=row["name"],
            original_filename=row["original_filename"],
            content_nonce=nonce,
            size=row["size"],
            created_at=row["created_at"],
            modified_at=row["modified_at"],
        )
