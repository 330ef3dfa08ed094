"""Chunk records and timestamp helpers."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

TIMESTAMP_RESOLUTION = timedelta(microseconds=1)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a datetime in the storage and wire format."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed width: lexical order of the stored text equals chronological
    # order, and there is no "+" to be mangled in query strings.
    naive = value.astimezone(timezone.utc).replace(tzinfo=None)
    return naive.isoformat(timespec="microseconds") + "Z"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp into an aware UTC datetime.

    Accepts a trailing ``Z``, explicit offsets and date-only values.
    Naive values are taken to be UTC.

    Raises:
        ValueError: If the value is not a recognizable timestamp.
    """
    text = value.strip()
    if not text:
        raise ValueError("empty timestamp")
    if text[-1] in ("Z", "z"):
        text = text[:-1] + "+00:00"

    parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Chunk:
    """A stored chunk: opaque encrypted payload plus versioning data."""

    user_id: str
    collection: str
    chunk_id: str
    encrypted_data: bytes
    iv: bytes
    metadata: str | None
    version: int
    updated_at: datetime

    def to_dict(self, include_collection: bool = False) -> dict[str, Any]:
        """Convert to the wire representation used by get and sync."""
        data: dict[str, Any] = {}
        if include_collection:
            data["collection"] = self.collection
        data.update(
            {
                "chunk_id": self.chunk_id,
                "encrypted": list(self.encrypted_data),
                "iv": list(self.iv),
                "metadata": self.metadata or None,
                "version": self.version,
                "updated_at": format_timestamp(self.updated_at),
            }
        )
        return data


@dataclass
class ChunkSummary:
    """Listing row for a chunk, without the payload bytes."""

    chunk_id: str
    metadata: str | None
    version: int
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "metadata": self.metadata,
            "version": self.version,
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass
class CollectionRow:
    """Minimal row used to derive the collection index."""

    collection: str
    updated_at: datetime
