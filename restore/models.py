"""
Data models for ReStore state.

FileMetadata and BackupRecord are the two records owned by SystemState;
both serialize to plain dicts for the persistent state document.
"""

from collections.abc import MutableMapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple


MIN_TIMESTAMP = datetime.min.replace(tzinfo=timezone.utc)


class BackupType(Enum):
    """How a backup run selects files."""
    FULL = 'Full'
    INCREMENTAL = 'Incremental'
    DIFFERENTIAL = 'Differential'

    @classmethod
    def parse(cls, value: str) -> 'BackupType':
        """Parse a backup type name case-insensitively."""
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(
            f"Invalid backup type: {value}. "
            f"Valid options: {[m.value for m in cls]}"
        )


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as ISO 8601 in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Optional[str]) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC."""
    if not value:
        return MIN_TIMESTAMP
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class FileMetadata:
    """Size, modification time and content hash of a backed-up file."""
    file_path: str
    size: int
    last_modified: datetime
    hash: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'filePath': self.file_path,
            'size': self.size,
            'lastModified': format_timestamp(self.last_modified),
            'hash': self.hash,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileMetadata':
        return cls(
            file_path=data.get('filePath', ''),
            size=int(data.get('size', 0)),
            last_modified=parse_timestamp(data.get('lastModified')),
            hash=data.get('hash') or '',
        )


@dataclass(frozen=True)
class BackupRecord:
    """One uploaded backup artifact. Immutable once created."""
    path: str
    timestamp: datetime
    is_diff: bool = False
    storage_type: Optional[str] = None
    size_bytes: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'timestamp': format_timestamp(self.timestamp),
            'isDiff': self.is_diff,
            'storageType': self.storage_type,
            'sizeBytes': self.size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupRecord':
        return cls(
            path=data.get('path', ''),
            timestamp=parse_timestamp(data.get('timestamp')),
            is_diff=bool(data.get('isDiff', False)),
            storage_type=data.get('storageType'),
            size_bytes=int(data.get('sizeBytes') or 0),
        )


class CaseInsensitiveDict(MutableMapping):
    """
    Mapping with case-insensitive string keys.

    The original spelling of the most recently set key is preserved and
    returned on iteration.
    """

    def __init__(self, data=None, **kwargs):
        self._store: Dict[str, Tuple[str, Any]] = {}
        self.update(data or {}, **kwargs)

    def __setitem__(self, key: str, value: Any):
        self._store[key.casefold()] = (key, value)

    def __getitem__(self, key: str) -> Any:
        return self._store[key.casefold()][1]

    def __delitem__(self, key: str):
        del self._store[key.casefold()]

    def __iter__(self) -> Iterator[str]:
        return (original for original, _ in self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def copy(self) -> 'CaseInsensitiveDict':
        return CaseInsensitiveDict(self._store.values())

    def __eq__(self, other) -> bool:
        if not isinstance(other, MutableMapping):
            return NotImplemented
        other = CaseInsensitiveDict(other)
        return {k: v for k, (_, v) in self._store.items()} == \
            {k: v for k, (_, v) in other._store.items()}

    def __repr__(self) -> str:
        return f'{type(self).__name__}({dict(self.items())!r})'
