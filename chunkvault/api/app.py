"""FastAPI application exposing the chunk store and sync engine."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..collection_index import list_collections
from ..config import Config
from ..errors import (
    AuthenticationError,
    ChunkNotFoundError,
    ChunkVaultError,
    StorageError,
    ValidationError,
)
from ..store import UNSET, ChunkStore, format_timestamp, parse_timestamp, utcnow
from ..sync import SyncEngine
from .auth import require_api_key
from .schemas import FIELD_ERRORS, ChunkPatchRequest, ChunkUpsertRequest, json_body

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/data"

INTERNAL_ERROR = {"error": "Internal server error"}


def _parse_since(since: str | None) -> datetime | None:
    """Parse the optional ``since`` query parameter.

    An absent or empty value means "no watermark".
    """
    if not since:
        return None
    try:
        return parse_timestamp(since)
    except (ValueError, OverflowError) as e:
        raise ValidationError("Invalid `since` timestamp", field="since", value=since) from e


def _validation_message(exc: RequestValidationError) -> str:
    """Pick a stable client message for the first pydantic error."""
    for error in exc.errors():
        loc = error.get("loc", ())
        if len(loc) >= 2 and loc[0] == "body" and loc[1] in FIELD_ERRORS:
            return FIELD_ERRORS[loc[1]]
    return "Invalid request body"


def _write_response(chunk) -> dict[str, Any]:
    return {
        "success": True,
        "chunk_id": chunk.chunk_id,
        "version": chunk.version,
        "updated_at": format_timestamp(chunk.updated_at),
    }


def create_app(config: Config, store: ChunkStore | None = None) -> FastAPI:
    """Create the chunkvault API application.

    Args:
        config: Application configuration.
        store: Optional pre-built ChunkStore. When omitted one is created
            from ``config.storage`` and closed on shutdown.

    Returns:
        Configured FastAPI application.

    Raises:
        ValueError: If no API key is configured.
    """
    if not config.auth.api_key:
        raise ValueError(
            "No API key configured; set auth.api_key or CHUNKVAULT_API_KEY"
        )

    owns_store = store is None
    if store is None:
        store = ChunkStore(
            config.storage.db_path,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )

    engine = SyncEngine(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.connect()
        logger.info(
            f"chunkvault {__version__} ready "
            f"(environment: {config.server.environment})"
        )
        try:
            yield
        finally:
            if owns_store:
                store.close()
            logger.info("chunkvault shut down")

    app = FastAPI(
        title="chunkvault",
        description="Storage and incremental sync for client-encrypted chunks",
        version=__version__,
        lifespan=lifespan,
    )

    # Store references for route handlers
    app.state.config = config
    app.state.store = store
    app.state.engine = engine
    app.state.api_key = config.auth.api_key

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== Error Mapping ====================

    @app.exception_handler(ChunkVaultError)
    async def chunkvault_error_handler(request: Request, exc: ChunkVaultError):
        if isinstance(exc, ValidationError):
            return JSONResponse(status_code=400, content={"error": exc.message})
        if isinstance(exc, ChunkNotFoundError):
            return JSONResponse(status_code=404, content={"error": exc.message})
        if isinstance(exc, AuthenticationError):
            return JSONResponse(status_code=401, content={"error": "Unauthorized"})
        if isinstance(exc, StorageError):
            logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
        else:
            logger.error(f"Unhandled chunkvault error: {exc}")
        return JSONResponse(status_code=500, content=INTERNAL_ERROR)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _validation_message(exc)})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unexpected error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content=INTERNAL_ERROR)

    # ==================== Health ====================

    @app.get("/health")
    def health() -> JSONResponse:
        """Health check for monitoring and load balancers."""
        healthy = store.ping()
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "unhealthy",
                "database": "connected" if healthy else "disconnected",
                "timestamp": format_timestamp(utcnow()),
            },
        )

    # ==================== Data Routes ====================

    router = APIRouter(prefix=API_PREFIX, dependencies=[Depends(require_api_key)])

    @router.get("/{user_id}")
    def get_collections(user_id: str) -> dict[str, Any]:
        """List the user's collections with chunk counts."""
        collections = list_collections(store, user_id)
        return {"collections": [c.to_dict() for c in collections]}

    @router.get("/{user_id}/chunks/all")
    def sync_all(user_id: str, since: str | None = None) -> dict[str, Any]:
        """Chunks changed since a watermark across all collections."""
        result = engine.changes_since(user_id, since=_parse_since(since))
        return result.to_dict()

    @router.post("/{user_id}/{collection}/chunks")
    def save_chunk(
        user_id: str,
        collection: str,
        body: ChunkUpsertRequest = Depends(json_body(ChunkUpsertRequest)),
    ) -> dict[str, Any]:
        """Create or replace a chunk."""
        chunk = store.upsert(
            user_id,
            collection,
            body.chunk_id,
            bytes(body.encrypted),
            bytes(body.iv),
            body.metadata or None,
        )
        return _write_response(chunk)

    @router.get("/{user_id}/{collection}/chunks")
    def get_chunk_list(user_id: str, collection: str) -> dict[str, Any]:
        """List chunk metadata without payloads, newest first."""
        summaries = store.list_chunks(user_id, collection)
        return {"chunks": [s.to_dict() for s in summaries]}

    # Registered before the chunk-id route so "since" is not taken as an id
    @router.get("/{user_id}/{collection}/chunks/since")
    def sync_collection(
        user_id: str, collection: str, since: str | None = None
    ) -> dict[str, Any]:
        """Chunks changed since a watermark in one collection."""
        result = engine.changes_since(
            user_id, collection=collection, since=_parse_since(since)
        )
        return result.to_dict()

    @router.get("/{user_id}/{collection}/chunks/{chunk_id}")
    def get_chunk(user_id: str, collection: str, chunk_id: str) -> dict[str, Any]:
        """Fetch one chunk with its payload."""
        chunk = store.get(user_id, collection, chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(user_id, collection, chunk_id)
        return chunk.to_dict()

    @router.patch("/{user_id}/{collection}/chunks/{chunk_id}")
    def patch_chunk(
        user_id: str,
        collection: str,
        chunk_id: str,
        body: ChunkPatchRequest = Depends(json_body(ChunkPatchRequest)),
    ) -> dict[str, Any]:
        """Update only the supplied fields of a chunk."""
        body.check_fields()

        chunk = store.patch(
            user_id,
            collection,
            chunk_id,
            encrypted_data=body.supplied_bytes("encrypted"),
            iv=body.supplied_bytes("iv"),
            metadata=body.metadata if "metadata" in body.model_fields_set else UNSET,
        )
        if chunk is None:
            raise ChunkNotFoundError(user_id, collection, chunk_id)
        return _write_response(chunk)

    @router.delete("/{user_id}/{collection}/chunks/{chunk_id}")
    def delete_chunk(user_id: str, collection: str, chunk_id: str) -> dict[str, Any]:
        """Delete a chunk; deleting a missing chunk also succeeds."""
        store.delete(user_id, collection, chunk_id)
        return {"success": True}

    app.include_router(router)

    return app
