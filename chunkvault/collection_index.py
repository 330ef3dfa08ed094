"""Collection index derived from chunk rows.

A collection is not stored anywhere: it exists while at least one chunk
carries its name. The index is aggregated at query time from the
collection name and update time of each of the user's chunks.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .store import ChunkStore, format_timestamp


@dataclass
class CollectionStats:
    """Aggregate view of one collection."""

    name: str
    chunk_count: int
    latest_updated: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "chunk_count": self.chunk_count,
            "latest_updated": format_timestamp(self.latest_updated),
        }


def list_collections(store: ChunkStore, user_id: str) -> list[CollectionStats]:
    """List every collection that currently holds chunks for a user.

    The order of the result is not part of the contract.
    """
    latest: dict[str, datetime] = {}
    counts: dict[str, int] = {}

    for row in store.scan_collection_rows(user_id):
        seen = latest.get(row.collection)
        if seen is None or row.updated_at > seen:
            latest[row.collection] = row.updated_at
        counts[row.collection] = counts.get(row.collection, 0) + 1

    return [
        CollectionStats(name=name, chunk_count=counts[name], latest_updated=updated)
        for name, updated in latest.items()
    ]
