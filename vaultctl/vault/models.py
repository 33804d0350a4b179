"""
Record Model
============

The plaintext vault: an ordered collection of credential entries.

A Vault exists decrypted only inside an unlocked VaultContext and is
never persisted in plaintext; it is serialized to JSON and encrypted
under the vault key by the envelope layer.
"""

from __future__ import annotations

import base64
import binascii
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Final, List, Mapping, Optional

from vaultctl.core.errors import EntryNotFound, ParseFailure, ValidationError

SCHEMA_VERSION: Final[int] = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PasswordEncoding(Enum):
    """How an entry's secret value is written in the serialized model."""
    BASE64 = "base64"
    TEXT = "text"


def decode_password(value: Any, encoding: Optional[str]) -> bytes:
    """
    Normalize a serialized secret value to bytes.

    Tagged values decode exactly as tagged. Untagged values come from
    older vaults that wrote either base64 or the raw text: strict base64
    wins when it parses, otherwise the value is the UTF-8 text itself.
    """
    if value is None:
        return b""
    if not isinstance(value, str):
        raise ParseFailure("Entry password must be a string")

    if encoding is not None:
        try:
            tag = PasswordEncoding(encoding)
        except ValueError as e:
            raise ParseFailure(f"Unknown password encoding: {encoding}") from e

        if tag is PasswordEncoding.TEXT:
            return value.encode("utf-8")
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ParseFailure("Entry password is not valid base64") from e

    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error:
        return value.encode("utf-8")


@dataclass
class Entry:
    """
    A single credential entry.

    The id is assigned once at creation and never changes; the name is
    an alternate lookup key.
    """
    id: str
    name: str
    username: str = ""
    password: bytes = b""
    url: str = ""
    notes: str = ""
    backup_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def __repr__(self) -> str:
        """Safe representation without the secret value."""
        return f"Entry(id={self.id!r}, name={self.name!r}, username={self.username!r})"

    def matches(self, identifier: str) -> bool:
        return self.id == identifier or self.name == identifier

    def summary(self) -> "EntrySummary":
        return EntrySummary(
            id=self.id,
            name=self.name,
            username=self.username,
            url=self.url,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "password": base64.b64encode(self.password).decode("ascii"),
            "password_encoding": PasswordEncoding.BASE64.value,
            "url": self.url,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.backup_codes:
            data["backup_codes"] = list(self.backup_codes)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Entry":
        try:
            return cls(
                id=str(data["id"]),
                name=str(data["name"]),
                username=data.get("username") or "",
                password=decode_password(data.get("password"), data.get("password_encoding")),
                url=data.get("url") or "",
                notes=data.get("notes") or "",
                backup_codes=list(data.get("backup_codes") or []),
                created_at=_parse_timestamp(data["created_at"]),
                updated_at=_parse_timestamp(data["updated_at"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseFailure(f"Malformed entry: {e}") from e


@dataclass(frozen=True, slots=True)
class EntrySummary:
    """Listing projection of an entry; carries no secret material."""
    id: str
    name: str
    username: str
    url: str
    created_at: datetime
    updated_at: datetime


@dataclass
class Vault:
    """
    Plaintext record model.

    Usage:
        vault = Vault.new()
        vault.add_entry("github", username="me", password=b"s3cret")
        payload = vault.to_json()
    """
    vault_id: str
    schema_version: int = SCHEMA_VERSION
    entries: List[Entry] = field(default_factory=list)

    @classmethod
    def new(cls) -> "Vault":
        return cls(vault_id=str(uuid.uuid4()))

    def __repr__(self) -> str:
        return f"Vault(vault_id={self.vault_id!r}, entries={len(self.entries)})"

    def find(self, identifier: str) -> Optional[Entry]:
        for entry in self.entries:
            if entry.matches(identifier):
                return entry
        return None

    def get_entry(self, identifier: str) -> Entry:
        entry = self.find(identifier)
        if entry is None:
            raise EntryNotFound(identifier)
        return entry

    def add_entry(
        self,
        name: str,
        username: str = "",
        password: bytes | bytearray = b"",
        url: str = "",
        notes: str = "",
        backup_codes: Optional[List[str]] = None,
    ) -> Entry:
        """
        Append a new entry.

        Raises:
            ValidationError: If the name is empty or already taken
        """
        if not name:
            raise ValidationError("Entry name cannot be empty")
        if any(entry.name == name for entry in self.entries):
            raise ValidationError(f"An entry named {name!r} already exists")

        now = _utcnow()
        entry = Entry(
            id=str(uuid.uuid4()),
            name=name,
            username=username,
            password=bytes(password),
            url=url,
            notes=notes,
            backup_codes=list(backup_codes or []),
            created_at=now,
            updated_at=now,
        )
        self.entries.append(entry)
        return entry

    def update_entry(
        self,
        identifier: str,
        name: str = "",
        username: str = "",
        password: Optional[bytes | bytearray] = None,
        url: str = "",
        notes: str = "",
        backup_codes: Optional[List[str]] = None,
    ) -> Entry:
        """
        Replace the non-empty fields of an existing entry.

        Raises:
            EntryNotFound: If no entry matches
            ValidationError: If renaming onto another entry's name
        """
        entry = self.get_entry(identifier)

        if name and name != entry.name:
            if any(other.name == name for other in self.entries if other is not entry):
                raise ValidationError(f"An entry named {name!r} already exists")
            entry.name = name
        if username:
            entry.username = username
        if password:
            entry.password = bytes(password)
        if url:
            entry.url = url
        if notes:
            entry.notes = notes
        if backup_codes is not None:
            entry.backup_codes = list(backup_codes)

        entry.updated_at = _utcnow()
        return entry

    def remove_entry(self, identifier: str) -> Entry:
        entry = self.get_entry(identifier)
        self.entries.remove(entry)
        return entry

    def list_entries(self) -> List[EntrySummary]:
        return [entry.summary() for entry in self.entries]

    def to_json(self) -> bytes:
        return json.dumps({
            "schema_version": self.schema_version,
            "vault_id": self.vault_id,
            "entries": [entry.to_dict() for entry in self.entries],
        }).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> "Vault":
        """
        Deserialize a decrypted record model.

        Raises:
            ParseFailure: If the payload is not a valid record model
        """
        try:
            raw = json.loads(data)
            entries = [Entry.from_dict(item) for item in raw.get("entries") or []]
            return cls(
                vault_id=str(raw["vault_id"]),
                schema_version=int(raw.get("schema_version", SCHEMA_VERSION)),
                entries=entries,
            )
        except (json.JSONDecodeError, UnicodeDecodeError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise ParseFailure(f"Malformed vault payload: {e}") from e
