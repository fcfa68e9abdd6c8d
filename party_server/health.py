from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Optional, Sequence

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .connections import ConnectionHub
from .coordinator import SessionCoordinator

logger = logging.getLogger(__name__)


LOG_BUFFER_LIMIT = 200


class RecentLogBuffer(logging.Handler):
    """Keeps the last few server log lines so ``/api/stats`` can show them."""

    def __init__(self, limit: int = LOG_BUFFER_LIMIT, level: int = logging.INFO) -> None:
        super().__init__(level=level)
        self._records: deque[dict[str, object]] = deque(maxlen=limit)

    def emit(self, record: logging.LogRecord) -> None:
        self._records.append(
            {
                "timestamp": record.created,
                "level": record.levelname.lower(),
                "logger": record.name,
                "message": record.getMessage(),
            }
        )

    def tail(self, limit: int) -> list[dict[str, object]]:
        if limit <= 0:
            return []
        return list(self._records)[-limit:]


def create_app(
    coordinator: SessionCoordinator,
    hub: ConnectionHub,
    *,
    allowed_origins: Sequence[str] = (),
    log_buffer: Optional[RecentLogBuffer] = None,
) -> FastAPI:
    """Build the HTTP app serving the liveness probe and room statistics."""

    app = FastAPI(title="watch-party sync server")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(allowed_origins) or ["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    @app.get("/api/stats")
    async def stats(
        events: int = Query(default=50, ge=0, le=300),
        logs: int = Query(default=40, ge=0, le=LOG_BUFFER_LIMIT),
    ) -> dict:
        snapshot = coordinator.snapshot()
        return {
            "status": "ok",
            "timestamp": time.time(),
            "room_count": snapshot["room_count"],
            "participant_count": snapshot["participant_count"],
            "connection_count": len(hub),
            "rooms": snapshot["rooms"],
            "connections": hub.snapshot(),
            "events": coordinator.recent_events(events),
            "logs": log_buffer.tail(logs) if log_buffer is not None else [],
        }

    return app


class HealthServer:
    """Background task helper for running the health app under uvicorn."""

    def __init__(self, app: FastAPI, *, host: str, port: int) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._server: Optional[object] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def app(self) -> FastAPI:
        return self._app

    async def start(self) -> None:
        import uvicorn

        if self._server is not None:
            return
        config = uvicorn.Config(self._app, host=self._host, port=self._port, log_level="info")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        logger.info("Health endpoint available at http://%s:%s/health", self._host, self._port)

    async def stop(self) -> None:
        if self._server is None:
            return
        assert self._task is not None
        self._server.should_exit = True  # type: ignore[attr-defined]
        await self._task
        self._server = None
        self._task = None
