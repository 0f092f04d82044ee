"""Plaintext views handed back to callers by VaultManager."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Credential:
    """A decrypted credential. The password is kept out of repr()."""
    id: str
    name: str
    username: str
    password: str = field(repr=False)
    notes: Optional[str] = field(default=None, repr=False)
    created_at: str = ""
    modified_at: str = ""

    def to_dict(self, reveal: bool = False) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "password": self.password if reveal else "********",
            "notes": self.notes,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }


@dataclass
class CredentialSummary:
    """Listing entry: no secret fields are decrypted."""
    id: str
    name: str
    created_at: str
    modified_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "credential",
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }


@dataclass
class FileSummary:
    id: str
    name: str
    original_filename: str
    size: int
    created_at: str
    modified_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": "file",
            "id": self.id,
            "name": self.name,
            "original_filename": self.original_filename,
            "size": self.size,
            "created_at": self.created_at,
            "modified_at": self.modified_at,
        }


@dataclass
class VaultListing:
    """Credentials then files, each in insertion order."""
    credentials: List[CredentialSummary] = field(default_factory=list)
    files: List[FileSummary] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.credentials) + len(self.files)

    def entries(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.credentials] + [f.to_dict() for f in self.files]
