"""SQLite-backed storage for encrypted chunks."""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from ..errors import StorageError
from .models import (
    TIMESTAMP_RESOLUTION,
    Chunk,
    ChunkSummary,
    CollectionRow,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
-- One row per live chunk; deleting a chunk removes its row
CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    collection_name TEXT NOT NULL,
    chunk_id TEXT NOT NULL,
    encrypted_data BLOB NOT NULL,
    iv BLOB NOT NULL,
    metadata TEXT,
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (user_id, collection_name, chunk_id)
);

CREATE INDEX IF NOT EXISTS idx_chunks_collection_updated
    ON chunks(user_id, collection_name, updated_at);
CREATE INDEX IF NOT EXISTS idx_chunks_user_updated ON chunks(user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_chunks_updated ON chunks(updated_at);
"""

CHUNK_COLUMNS = (
    "user_id, collection_name, chunk_id, encrypted_data, iv, metadata, version, updated_at"
)


class _Unset:
    """Marker for a patch field that was not supplied."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class ChunkStore:
    """Durable keyed storage for chunk records.

    Writes are single SQL statements (native upsert, conditional update)
    run inside ``BEGIN IMMEDIATE`` transactions on one writer connection
    guarded by a lock, so a version increment is never lost to a
    concurrent writer. File databases run in WAL mode and every thread
    reads on its own connection, so reads never queue behind other reads
    or behind a write. An in-memory database only exists on a single
    connection, so there reads share the writer lock.
    """

    def __init__(
        self,
        db_path: str | Path,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the chunk store.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            busy_timeout_ms: How long to wait on a locked database file.
            clock: Source of the current UTC time.
        """
        self.db_path = Path(db_path).expanduser()
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._last_issued: datetime | None = None
        self._local = threading.local()
        self._readers_lock = threading.Lock()
        self._readers: list[sqlite3.Connection] = []
        self._generation = 0

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            isolation_level=None,  # Manual transaction control
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def connect(self) -> None:
        """Open the writer connection and create the schema."""
        with self._lock:
            if self._conn is not None:
                return

            if not self.in_memory:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            try:
                conn = self._open_connection()
                if not self.in_memory:
                    conn.execute("PRAGMA journal_mode = WAL")
                    conn.execute("PRAGMA synchronous = NORMAL")
                conn.executescript(SCHEMA)
            except sqlite3.Error as e:
                raise StorageError(
                    f"Failed to open database: {e}", operation="connect"
                ) from e

            self._conn = conn

        logger.info(f"ChunkStore connected to {self.db_path}")

    def close(self) -> None:
        """Close the writer and every reader connection."""
        with self._lock:
            with self._readers_lock:
                readers, self._readers = self._readers, []
                self._generation += 1
            for reader in readers:
                reader.close()
            if self._conn:
                self._conn.close()
                self._conn = None
                logger.info("ChunkStore connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure we have a database connection."""
        if self._conn is None:
            self.connect()
        return self._conn

    def _reader(self) -> sqlite3.Connection:
        """This thread's read connection, opened on first use."""
        local = self._local
        if getattr(local, "generation", None) != self._generation:
            self._ensure_connected()
            try:
                conn = self._open_connection()
                conn.execute("PRAGMA query_only = ON")
            except sqlite3.Error as e:
                raise StorageError(
                    f"Failed to open read connection: {e}", operation="connect"
                ) from e
            # Not the writer lock: opening must not wait on an open write
            with self._readers_lock:
                self._readers.append(conn)
                local.conn = conn
                local.generation = self._generation
            logger.debug(f"Opened read connection for thread {threading.get_ident()}")
        return local.conn

    @contextmanager
    def _read(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a read, wrapping engine errors."""
        if self.in_memory:
            with self._lock:
                conn = self._ensure_connected()
                try:
                    yield conn
                except sqlite3.Error as e:
                    raise StorageError(
                        f"{operation} failed: {e}", operation=operation
                    ) from e
            return

        conn = self._reader()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"{operation} failed: {e}", operation=operation) from e

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Run a write inside an immediate transaction.

        All changes commit or all roll back.
        """
        with self._lock:
            conn = self._ensure_connected()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise StorageError(f"{operation} failed: {e}", operation=operation) from e

    def _next_timestamp(self, conn: sqlite3.Connection) -> datetime:
        """Issue a write timestamp later than every timestamp already stored
        or handed out as a watermark.

        Must be called inside the write transaction so issue order matches
        commit order.
        """
        floor = self._last_issued
        row = conn.execute("SELECT MAX(updated_at) FROM chunks").fetchone()
        if row[0] is not None:
            stored = parse_timestamp(row[0])
            if floor is None or stored > floor:
                floor = stored

        now = self._clock()
        if floor is not None and now <= floor:
            now = floor + TIMESTAMP_RESOLUTION

        self._last_issued = now
        return now

    def watermark_now(self) -> datetime:
        """Current time as a sync watermark.

        Every write issued after this call gets a strictly later
        ``updated_at``, so nothing written afterwards can sort at or
        below the returned value.
        """
        with self._lock:
            now = self._clock()
            if self._last_issued is not None and now < self._last_issued:
                now = self._last_issued
            self._last_issued = now
        return now

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        return Chunk(
            user_id=row["user_id"],
            collection=row["collection_name"],
            chunk_id=row["chunk_id"],
            encrypted_data=bytes(row["encrypted_data"]),
            iv=bytes(row["iv"]),
            metadata=row["metadata"],
            version=row["version"],
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # ==================== Chunk Operations ====================

    def get(self, user_id: str, collection: str, chunk_id: str) -> Chunk | None:
        """Fetch one chunk.

        Returns:
            The chunk, or None if it does not exist.
        """
        with self._read("get") as conn:
            row = conn.execute(
                f"""
                SELECT {CHUNK_COLUMNS} FROM chunks
                WHERE user_id = ? AND collection_name = ? AND chunk_id = ?
                """,
                (user_id, collection, chunk_id),
            ).fetchone()

        return self._row_to_chunk(row) if row else None

    def upsert(
        self,
        user_id: str,
        collection: str,
        chunk_id: str,
        encrypted_data: bytes,
        iv: bytes,
        metadata: str | None = None,
    ) -> Chunk:
        """Create a chunk, or replace its payload and metadata.

        A new chunk starts at version 1; each replacement increments the
        version by one. Metadata is always overwritten, so omitting it
        clears any previous value.

        Returns:
            The chunk as stored.
        """
        with self._transaction("upsert") as conn:
            stamp = format_timestamp(self._next_timestamp(conn))
            rows = conn.execute(
                f"""
                INSERT INTO chunks (
                    user_id, collection_name, chunk_id, encrypted_data, iv,
                    metadata, version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT (user_id, collection_name, chunk_id) DO UPDATE SET
                    encrypted_data = excluded.encrypted_data,
                    iv = excluded.iv,
                    metadata = excluded.metadata,
                    version = chunks.version + 1,
                    updated_at = excluded.updated_at
                RETURNING {CHUNK_COLUMNS}
                """,
                (
                    user_id,
                    collection,
                    chunk_id,
                    bytes(encrypted_data),
                    bytes(iv),
                    metadata or None,
                    stamp,
                    stamp,
                ),
            ).fetchall()

        chunk = self._row_to_chunk(rows[0])
        logger.debug(
            f"Upserted {user_id}/{collection}/{chunk_id} -> version {chunk.version}"
        )
        return chunk

    def patch(
        self,
        user_id: str,
        collection: str,
        chunk_id: str,
        encrypted_data: bytes | None = None,
        iv: bytes | None = None,
        metadata: Any = UNSET,
    ) -> Chunk | None:
        """Update only the supplied fields of an existing chunk.

        The version is incremented and the timestamp refreshed even when
        no field is supplied. An empty or None metadata clears it; leaving
        metadata as UNSET keeps the stored value.

        Returns:
            The updated chunk, or None if it does not exist.
        """
        assignments = ["version = version + 1", "updated_at = ?"]
        values: list[Any] = []

        if encrypted_data is not None:
            assignments.append("encrypted_data = ?")
            values.append(bytes(encrypted_data))
        if iv is not None:
            assignments.append("iv = ?")
            values.append(bytes(iv))
        if metadata is not UNSET:
            assignments.append("metadata = ?")
            values.append(metadata or None)

        with self._transaction("patch") as conn:
            stamp = format_timestamp(self._next_timestamp(conn))
            rows = conn.execute(
                f"""
                UPDATE chunks SET {", ".join(assignments)}
                WHERE user_id = ? AND collection_name = ? AND chunk_id = ?
                RETURNING {CHUNK_COLUMNS}
                """,
                (stamp, *values, user_id, collection, chunk_id),
            ).fetchall()

        if not rows:
            return None

        chunk = self._row_to_chunk(rows[0])
        logger.debug(
            f"Patched {user_id}/{collection}/{chunk_id} -> version {chunk.version}"
        )
        return chunk

    def delete(self, user_id: str, collection: str, chunk_id: str) -> bool:
        """Remove a chunk. Deleting a missing chunk is a no-op.

        Returns:
            True if a row was removed.
        """
        with self._transaction("delete") as conn:
            cursor = conn.execute(
                """
                DELETE FROM chunks
                WHERE user_id = ? AND collection_name = ? AND chunk_id = ?
                """,
                (user_id, collection, chunk_id),
            )
            removed = cursor.rowcount > 0

        if removed:
            logger.debug(f"Deleted {user_id}/{collection}/{chunk_id}")
        return removed

    def list_chunks(self, user_id: str, collection: str) -> list[ChunkSummary]:
        """List a collection's chunks without payloads, newest first."""
        with self._read("list_chunks") as conn:
            rows = conn.execute(
                """
                SELECT chunk_id, metadata, version, updated_at FROM chunks
                WHERE user_id = ? AND collection_name = ?
                ORDER BY updated_at DESC, id DESC
                """,
                (user_id, collection),
            ).fetchall()

        return [
            ChunkSummary(
                chunk_id=row["chunk_id"],
                metadata=row["metadata"],
                version=row["version"],
                updated_at=parse_timestamp(row["updated_at"]),
            )
            for row in rows
        ]

    def range_since(
        self,
        user_id: str,
        collection: str | None = None,
        since: datetime | None = None,
    ) -> list[Chunk]:
        """Full chunk records updated strictly after ``since``, oldest first.

        Args:
            user_id: Owner of the chunks.
            collection: Restrict to one collection; None spans all of them.
            since: Exclusive lower bound; None returns the full history.
        """
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]

        if collection is not None:
            clauses.append("collection_name = ?")
            params.append(collection)
        if since is not None:
            clauses.append("updated_at > ?")
            params.append(format_timestamp(since))

        with self._read("range_since") as conn:
            rows = conn.execute(
                f"""
                SELECT {CHUNK_COLUMNS} FROM chunks
                WHERE {" AND ".join(clauses)}
                ORDER BY updated_at ASC, id ASC
                """,
                params,
            ).fetchall()

        return [self._row_to_chunk(row) for row in rows]

    def scan_collection_rows(self, user_id: str) -> list[CollectionRow]:
        """Collection name and update time of every chunk a user owns."""
        with self._read("scan_collection_rows") as conn:
            rows = conn.execute(
                """
                SELECT collection_name, updated_at FROM chunks
                WHERE user_id = ?
                ORDER BY updated_at DESC
                """,
                (user_id,),
            ).fetchall()

        return [
            CollectionRow(
                collection=row["collection_name"],
                updated_at=parse_timestamp(row["updated_at"]),
            )
            for row in rows
        ]

    # ==================== Maintenance ====================

    def ping(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            with self._read("ping") as conn:
                conn.execute("SELECT 1").fetchone()
        except StorageError as e:
            logger.warning(f"Database ping failed: {e}")
            return False
        return True

    def get_stats(self) -> dict[str, Any]:
        """Get storage statistics.

        Returns:
            Dictionary with chunk, user and collection counts.
        """
        with self._read("get_stats") as conn:
            stats: dict[str, Any] = {
                "db_path": str(self.db_path),
                "chunk_count": conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0],
                "user_count": conn.execute(
                    "SELECT COUNT(DISTINCT user_id) FROM chunks"
                ).fetchone()[0],
                "collection_count": conn.execute(
                    """
                    SELECT COUNT(*) FROM (
                        SELECT DISTINCT user_id, collection_name FROM chunks
                    )
                    """
                ).fetchone()[0],
            }
            latest = conn.execute("SELECT MAX(updated_at) FROM chunks").fetchone()[0]

        stats["latest_updated"] = latest

        if not self.in_memory and self.db_path.exists():
            stats["db_size_mb"] = round(self.db_path.stat().st_size / (1024 * 1024), 2)

        return stats
