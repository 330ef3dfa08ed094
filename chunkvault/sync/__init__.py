"""Incremental sync for chunkvault.

Computes "changes since a watermark" on the server side and provides a
pull client that keeps the watermark between calls.
"""

from .client import ChunkSyncClient, PullResult, SyncStatus
from .engine import SyncEngine, SyncResult

__all__ = ["ChunkSyncClient", "PullResult", "SyncStatus", "SyncEngine", "SyncResult"]
