"""Chunk storage for chunkvault.

Provides durable keyed storage for client-encrypted chunks with
per-chunk versioning and server-assigned update timestamps.
"""

from .chunk_store import UNSET, ChunkStore
from .models import (
    Chunk,
    ChunkSummary,
    CollectionRow,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

__all__ = [
    "UNSET",
    "ChunkStore",
    "Chunk",
    "ChunkSummary",
    "CollectionRow",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
