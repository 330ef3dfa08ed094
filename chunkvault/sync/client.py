"""Pull-sync client for a chunkvault server.

Tracks the sync watermark between calls and retries transient failures
with exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/data"

OFFLINE_ERRORS = ("Connection failed", "Request timeout")


class SyncStatus(Enum):
    """Status of a client call."""

    SUCCESS = "success"
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class PullResult:
    """Result of a pull."""

    status: SyncStatus
    chunks: list[dict[str, Any]] = field(default_factory=list)
    latest_sync: str | None = None
    error: str | None = None
    timestamp: datetime | None = None


class ChunkSyncClient:
    """Client that pulls chunk changes for one user.

    Supports:
    - Pull: fetch chunks changed since the stored watermark
    - Push: create or replace a chunk
    - Delete: remove a chunk

    With ``collection`` set, pulls are scoped to that collection;
    otherwise they span all of the user's collections.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        user_id: str,
        collection: str | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the sync client.

        Args:
            base_url: Server root URL (e.g., "http://vault:3000").
            api_key: Shared bearer token.
            user_id: User whose chunks are synced.
            collection: Optional collection to scope pulls to.
            max_retries: Maximum attempts per request.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used to call an app in-process).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.user_id = user_id
        self.collection = collection
        self.max_retries = max_retries
        self.timeout = timeout
        self._transport = transport
        self.watermark: str | None = None
        self._last_pull: datetime | None = None
        self._consecutive_failures = 0

    def _collection_path(self, collection: str | None = None) -> str:
        name = collection or self.collection
        if not name:
            raise ValueError("A collection is required for this call")
        return f"{API_PREFIX}/{quote(self.user_id, safe='')}/{quote(name, safe='')}"

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        json_data: Any = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method.
            path: URL path to append to base_url.
            params: Optional query parameters.
            json_data: Optional JSON body.

        Returns:
            Tuple of (response_data, error_message).
        """
        headers = {"Authorization": f"Bearer {self.api_key}"}
        backoff = 1.0
        failure = "Request failed"

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            for attempt in range(self.max_retries):
                try:
                    response = await client.request(
                        method, path, params=params, json=json_data, headers=headers
                    )

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        # Server error, retry
                        failure = f"Server error {response.status_code}"
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    failure = "Connection failed"
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    failure = "Request timeout"
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )

                # Exponential backoff
                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"{failure}: max retries ({self.max_retries}) exceeded"

    async def pull(self) -> PullResult:
        """Fetch chunks changed since the stored watermark.

        On success the watermark advances to the server's ``latest_sync``.

        Returns:
            PullResult with the changed chunks.
        """
        if self.collection:
            path = f"{self._collection_path()}/chunks/since"
        else:
            path = f"{API_PREFIX}/{quote(self.user_id, safe='')}/chunks/all"

        params = {"since": self.watermark} if self.watermark else None
        data, error = await self._request_with_retry("GET", path, params=params)

        if error:
            return PullResult(
                status=(
                    SyncStatus.OFFLINE
                    if error.startswith(OFFLINE_ERRORS)
                    else SyncStatus.FAILED
                ),
                error=error,
            )

        self.watermark = data.get("latest_sync") or self.watermark
        self._last_pull = datetime.now()

        chunks = data.get("chunks", [])
        logger.info(f"Pulled {len(chunks)} chunks, watermark={self.watermark}")

        return PullResult(
            status=SyncStatus.SUCCESS,
            chunks=chunks,
            latest_sync=self.watermark,
            timestamp=self._last_pull,
        )

    async def push_chunk(
        self,
        chunk_id: str,
        encrypted: bytes,
        iv: bytes,
        metadata: str | None = None,
        collection: str | None = None,
    ) -> tuple[dict[str, Any] | None, str | None]:
        """Create or replace a chunk.

        Returns:
            Tuple of (response_data, error_message).
        """
        payload = {
            "chunk_id": chunk_id,
            "encrypted": list(encrypted),
            "iv": list(iv),
            "metadata": metadata,
        }
        return await self._request_with_retry(
            "POST", f"{self._collection_path(collection)}/chunks", json_data=payload
        )

    async def delete_chunk(
        self, chunk_id: str, collection: str | None = None
    ) -> tuple[dict[str, Any] | None, str | None]:
        """Delete a chunk. Deleting a missing chunk succeeds.

        Returns:
            Tuple of (response_data, error_message).
        """
        return await self._request_with_retry(
            "DELETE",
            f"{self._collection_path(collection)}/chunks/{quote(chunk_id, safe='')}",
        )

    def reset(self) -> None:
        """Forget the watermark so the next pull fetches full history."""
        self.watermark = None

    @property
    def last_pull(self) -> datetime | None:
        """Get timestamp of last successful pull."""
        return self._last_pull

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with sync statistics.
        """
        return {
            "base_url": self.base_url,
            "user_id": self.user_id,
            "collection": self.collection,
            "watermark": self.watermark,
            "last_pull": self._last_pull.isoformat() if self._last_pull else None,
            "consecutive_failures": self._consecutive_failures,
        }
