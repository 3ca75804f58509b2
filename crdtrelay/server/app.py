"""FastAPI application exposing the sync endpoint."""

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .. import __version__
from ..config import Config
from ..exceptions import (
    CRDTRelayError,
    FormatError,
    IndexShapeError,
    SerializationError,
    StorageError,
)
from ..sync import MessageLog, SyncCoordinator, SyncRequest

logger = logging.getLogger(__name__)


class MessageBody(BaseModel):
    """One message as sent by a replica."""

    timestamp: str
    dataset: str
    row: str
    column: str
    value: Any


class SyncRequestBody(BaseModel):
    """Request model for /sync."""

    group_id: str
    client_id: str
    messages: list[MessageBody] = []
    merkle: dict[str, Any] | None = None


def _error_response(exc: CRDTRelayError, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"status": "error", "reason": exc.code, "detail": str(exc)},
    )


def create_app(config: Config, log: MessageLog | None = None) -> FastAPI:
    """Create the relay application.

    Args:
        config: Application configuration.
        log: Optional MessageLog to serve. If omitted, one is opened from
            the storage config and closed on shutdown.

    Returns:
        Configured FastAPI application.
    """
    owns_log = log is None
    if log is None:
        log = MessageLog(
            config.storage.db_path,
            busy_timeout=config.storage.busy_timeout_seconds,
        )
    coordinator = SyncCoordinator(log)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_log:
            log.close()

    app = FastAPI(
        title="crdtrelay",
        description="Sync relay for replicated append-only message logs",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.log = log
    app.state.coordinator = coordinator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if length and length.isdigit() and int(length) > config.server.max_body_bytes:
            logger.warning(f"Rejected {length} byte request to {request.url.path}")
            return JSONResponse(
                status_code=413,
                content={"status": "error", "reason": "PAYLOAD_TOO_LARGE"},
            )
        return await call_next(request)

    # ==================== Error handlers ====================

    @app.exception_handler(FormatError)
    @app.exception_handler(SerializationError)
    @app.exception_handler(IndexShapeError)
    async def bad_request_handler(request: Request, exc: CRDTRelayError):
        logger.warning(f"Rejected sync: {exc} path={request.url.path}")
        return _error_response(exc, status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error(f"Storage failure: {exc} path={request.url.path}")
        return _error_response(exc, status.HTTP_500_INTERNAL_SERVER_ERROR)

    # ==================== Routes ====================

    @app.post("/sync")
    def sync(body: SyncRequestBody) -> dict[str, Any]:
        """Apply a replica's messages and return what it is missing."""
        request = SyncRequest(
            group_id=body.group_id,
            replica_id=body.client_id,
            messages=[m.model_dump() for m in body.messages],
            client_index=body.merkle,
        )
        return coordinator.sync(request).to_dict()

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping() -> str:
        """Liveness check."""
        return "ok"

    return app
