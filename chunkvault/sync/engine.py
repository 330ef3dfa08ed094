"""Incremental sync: changes since a watermark.

A watermark is the ``updated_at`` of the newest chunk a client has seen.
The server does not persist it; every response carries the next
watermark for the client to send back on its following call.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..store import Chunk, ChunkStore, format_timestamp

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Chunks changed since a watermark plus the next watermark."""

    latest_sync: datetime
    chunks: list[Chunk] = field(default_factory=list)
    include_collection: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire representation of a sync response."""
        return {
            "chunks": [
                c.to_dict(include_collection=self.include_collection)
                for c in self.chunks
            ],
            "latest_sync": format_timestamp(self.latest_sync),
        }


class SyncEngine:
    """Computes "changes since" for one collection or all of a user's."""

    def __init__(self, store: ChunkStore):
        self.store = store

    def changes_since(
        self,
        user_id: str,
        collection: str | None = None,
        since: datetime | None = None,
    ) -> SyncResult:
        """Return chunks updated strictly after ``since``, oldest first.

        The next watermark is the newest ``updated_at`` among the returned
        chunks. With nothing to return it echoes ``since``, or falls back
        to the current time when the client had no watermark yet.

        Args:
            user_id: Owner of the chunks.
            collection: Restrict to one collection; None spans all.
            since: Previous watermark, exclusive. None means full history.
        """
        # Issued by the store before querying: any write the query misses
        # is stamped strictly after it.
        queried_at = self.store.watermark_now()
        chunks = self.store.range_since(user_id, collection=collection, since=since)

        if chunks:
            latest_sync = max(c.updated_at for c in chunks)
        elif since is not None:
            latest_sync = since
        else:
            latest_sync = queried_at

        logger.debug(
            f"Sync {user_id}/{collection or '*'} since={since}: "
            f"{len(chunks)} chunks, latest_sync={latest_sync}"
        )

        return SyncResult(
            latest_sync=latest_sync,
            chunks=chunks,
            include_collection=collection is None,
        )
