"""Exceptions raised by the chunk store, sync engine and request boundary.

All exceptions inherit from ChunkVaultError so the HTTP layer can map
them to a stable response shape in one place.
"""

from typing import Any


class ChunkVaultError(Exception):
    """Base exception for all chunkvault errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class ValidationError(ChunkVaultError):
    """Raised when a request field is missing, malformed or out of range."""

    def __init__(
        self, message: str, field: str | None = None, value: Any = None
    ) -> None:
        context = {}
        if field is not None:
            context["field"] = field
        if value is not None:
            context["value"] = repr(value)[:100]
        super().__init__(message, context=context)
        self.field = field
        self.value = value


class ChunkNotFoundError(ChunkVaultError):
    """Raised when a get or patch targets a chunk that does not exist."""

    def __init__(self, user_id: str, collection: str, chunk_id: str) -> None:
        super().__init__(
            "Chunk not found",
            context={
                "user_id": user_id,
                "collection": collection,
                "chunk_id": chunk_id,
            },
        )
        self.user_id = user_id
        self.collection = collection
        self.chunk_id = chunk_id


class AuthenticationError(ChunkVaultError):
    """Raised when the bearer token is missing or does not match."""

    def __init__(self, reason: str = "Unauthorized") -> None:
        super().__init__("Unauthorized", context={"reason": reason})
        self.reason = reason


class StorageError(ChunkVaultError):
    """
    Raised when the storage engine fails.

    Wraps sqlite3 errors with the operation that was being attempted.
    The surrounding transaction has always been rolled back when this
    is raised.
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        context = {}
        if operation is not None:
            context["operation"] = operation
        super().__init__(message, context=context)
        self.operation = operation
