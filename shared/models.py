"""Shared data models for the offline record sync engine."""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _encode_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _decode_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _encode_bytes(value: Optional[bytes]) -> Optional[str]:
    if value is None:
        return None
    return base64.b64encode(value).decode('ascii')


def _decode_bytes(value: Optional[str]) -> Optional[bytes]:
    if value is None:
        return None
    return base64.b64decode(value)


class SyncStatus(str, Enum):
    """User-facing save status."""
    IDLE = "idle"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


@dataclass
class RecordSnapshot:
    """Serialized patient record handed over by the form layer."""
    record_id: str
    json_content: str
    binary_content: Optional[bytes] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "record_id": self.record_id,
            "json_content": self.json_content,
            "binary_content": _encode_bytes(self.binary_content),
            "created_at": _encode_datetime(self.created_at),
            "updated_at": _encode_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RecordSnapshot":
        return cls(
            record_id=data["record_id"],
            json_content=data["json_content"],
            binary_content=_decode_bytes(data.get("binary_content")),
            created_at=_decode_datetime(data.get("created_at")),
            updated_at=_decode_datetime(data.get("updated_at")),
        )


@dataclass
class QueueItem:
    """A durable, retryable unit of pending upload work."""
    id: str
    record_id: str
    json_content: str
    binary_content: Optional[bytes]
    enqueued_at: datetime
    attempts: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "json_content": self.json_content,
            "binary_content": _encode_bytes(self.binary_content),
            "enqueued_at": _encode_datetime(self.enqueued_at),
            "attempts": self.attempts,
            "created_at": _encode_datetime(self.created_at),
            "updated_at": _encode_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueueItem":
        """
        Rebuild a persisted item.

        Raises:
            KeyError, TypeError, ValueError: If the entry is malformed
        """
        enqueued_at = _decode_datetime(data["enqueued_at"])
        if enqueued_at is None:
            raise ValueError(f"Queue item {data.get('id')} has no enqueued_at")

        return cls(
            id=data["id"],
            record_id=data["record_id"],
            json_content=data["json_content"],
            binary_content=_decode_bytes(data.get("binary_content")),
            enqueued_at=enqueued_at,
            attempts=int(data.get("attempts", 0)),
            created_at=_decode_datetime(data.get("created_at")),
            updated_at=_decode_datetime(data.get("updated_at")),
        )


@dataclass
class QueueStatus:
    """Length of the sync queue and age of its oldest item."""
    queue_length: int
    oldest_timestamp: Optional[datetime] = None


@dataclass
class UpsertResult:
    """Remote file ids written for one record."""
    json_file_id: str
    binary_file_id: Optional[str] = None


@dataclass
class DrainResult:
    """Outcome of one pass over the sync queue."""
    succeeded: int = 0
    failed: int = 0
    total: int = 0
    pending: int = 0
    auth_error: bool = False
    skipped: bool = False


@dataclass
class SaveResult:
    """Outcome of a save request."""
    record_id: str
    uploaded: bool
    queue_item_id: Optional[str] = None
    auth_error: bool = False
    durable: bool = True
    files: Optional[UpsertResult] = None


@dataclass
class ConnectivityState:
    """Whether uploads are currently possible."""
    is_online: bool
    is_authenticated: bool


@dataclass
class StatusEvent:
    """Status signal emitted after each save or drain cycle."""
    status: SyncStatus
    message: str = ""
    queue_length: int = 0
    timestamp: datetime = field(default_factory=utc_now)
