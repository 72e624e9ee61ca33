"""Identity index: normalized email -> Cognito username, persisted as CSV text.

File format::

    username,email
    0f4c...,alice@example.com
    7a1e...,bob@example.com

Fields are separated by a single comma with no quoting, so emails holding a
comma or a line break are refused on write rather than corrupting a row.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, TextIO

from batch_cognito.errors import PersistError
from batch_cognito.models import IdentityRecord
from batch_cognito.normalize import normalize_email

logger = logging.getLogger("batch_cognito.index")

HEADER = "username,email"
DELIMITER = ","
_FORBIDDEN = (DELIMITER, "\n", "\r")


class EntryState(str, Enum):
    PRESENT = "present"
    AMBIGUOUS = "ambiguous"
    ABSENT = "absent"


@dataclass(frozen=True)
class IndexEntry:
    state: EntryState
    opaque_id: Optional[str] = None


class IdentityIndex:
    """Read-only lookup built once from a full snapshot of records.

    Two records with different usernames that normalize to the same email
    leave a tombstone for that key instead of either username.
    """

    def __init__(self, mapping: dict[str, str], ambiguous: frozenset[str]) -> None:
        self._mapping = dict(mapping)
        self._ambiguous = ambiguous

    @classmethod
    def from_records(cls, records: Iterable[IdentityRecord]) -> "IdentityIndex":
        mapping: dict[str, str] = {}
        ambiguous: set[str] = set()
        for record in records:
            key = normalize_email(record.email)
            if not key:
                continue
            if key in ambiguous:
                continue
            existing = mapping.get(key)
            if existing is None:
                mapping[key] = record.opaque_id
            elif existing != record.opaque_id:
                logger.warning(
                    "Email %s maps to more than one user; marking ambiguous", key,
                    extra={"email": key},
                )
                del mapping[key]
                ambiguous.add(key)
        return cls(mapping, frozenset(ambiguous))

    def lookup(self, email: str) -> IndexEntry:
        key = normalize_email(email)
        if key in self._ambiguous:
            return IndexEntry(EntryState.AMBIGUOUS)
        opaque_id = self._mapping.get(key)
        if opaque_id is None:
            return IndexEntry(EntryState.ABSENT)
        return IndexEntry(EntryState.PRESENT, opaque_id)

    @property
    def ambiguous_keys(self) -> frozenset[str]:
        return self._ambiguous

    def __len__(self) -> int:
        return len(self._mapping)

    def __contains__(self, email: object) -> bool:
        return isinstance(email, str) and normalize_email(email) in self._mapping


def is_storable(record: IdentityRecord) -> bool:
    """True if the record round-trips through the delimited format."""
    return not any(ch in value for value in (record.opaque_id, record.email) for ch in _FORBIDDEN)


def write_index(records: Iterable[IdentityRecord], stream: TextIO) -> int:
    """Write the header and one line per record. Returns the record count."""
    stream.write(HEADER + "\n")
    count = 0
    for record in records:
        if not is_storable(record):
            raise PersistError(
                f"record for user {record.opaque_id!r} contains a delimiter or line break"
            )
        stream.write(f"{record.opaque_id}{DELIMITER}{record.email}\n")
        count += 1
    return count


def persist_index(records: Iterable[IdentityRecord], path: str) -> int:
    """Atomically replace ``path`` with a snapshot of ``records``.

    The snapshot is written to a temporary file in the same directory and
    renamed over the destination, so readers see either the old or the new
    file and never a partial one.
    """
    records = list(records)
    for record in records:
        if not is_storable(record):
            raise PersistError(
                f"record for user {record.opaque_id!r} contains a delimiter or line break"
            )

    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory
        )
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            count = write_index(records, handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as exc:
        raise PersistError(f"failed to write index to {path}: {exc}") from exc
    finally:
        if tmp_path is not None and os.path.exists(tmp_path):
            os.unlink(tmp_path)

    logger.info("Wrote %d users to %s", count, path, extra={"records": count})
    return count


def read_records(path: str) -> list[IdentityRecord]:
    """Parse a persisted index file into records, in file order."""
    try:
        with open(path, encoding="utf-8", newline="") as handle:
            text = handle.read()
    except OSError as exc:
        raise PersistError(f"failed to read index from {path}: {exc}") from exc

    # Rows end in "\n" (or "\r\n"); other Unicode line breaks are data.
    lines = [line[:-1] if line.endswith("\r") else line for line in text.split("\n")]

    if not lines or lines[0].strip() != HEADER:
        raise PersistError(f"{path}: expected header {HEADER!r}")

    records: list[IdentityRecord] = []
    for lineno, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        fields = line.split(DELIMITER)
        if len(fields) != 2 or not fields[0]:
            raise PersistError(f"{path}:{lineno}: expected 'username,email', got {line!r}")
        records.append(IdentityRecord(opaque_id=fields[0], email=fields[1]))
    return records


def load_index(path: str) -> IdentityIndex:
    records = read_records(path)
    index = IdentityIndex.from_records(records)
    logger.info(
        "Loaded index from %s: %d resolvable emails, %d ambiguous",
        path, len(index), len(index.ambiguous_keys),
        extra={"records": len(records)},
    )
    return index
