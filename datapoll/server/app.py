"""FastAPI application exposing the poll service."""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import Config
from ..errors import CacheCapacityError, CacheCorruptedError, LockTimeoutError
from ..sync import PollService, RecordChange

logger = logging.getLogger(__name__)


class RecordChangeIn(BaseModel):
    """One written record reported by a session."""

    model: str
    id: str | int
    record: Any = None
    delete: bool = Field(default=False, alias="del")

    def to_change(self) -> RecordChange:
        return RecordChange(
            model=self.model, id=str(self.id), record=self.record, delete=self.delete
        )


class RecordChangesIn(BaseModel):
    records: list[RecordChangeIn]


def create_app(config: Config, service: PollService | None = None) -> FastAPI:
    """Create the data poll API application.

    Args:
        config: Application configuration.
        service: PollService to expose; built from config if omitted.

    Returns:
        Configured FastAPI application.
    """
    if service is None:
        service = PollService.from_config(config)

    app = FastAPI(
        title="datapoll",
        description="Incremental change polling for browser sessions",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.service = service

    # ==================== Error mapping ====================

    @app.exception_handler(LockTimeoutError)
    async def lock_timeout_handler(request: Request, exc: LockTimeoutError):
        logger.error(f"{request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"error": str(exc)})

    @app.exception_handler(CacheCorruptedError)
    async def corrupted_handler(request: Request, exc: CacheCorruptedError):
        logger.error(f"{request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(CacheCapacityError)
    async def capacity_handler(request: Request, exc: CacheCapacityError):
        logger.error(f"{request.url.path}: {exc}")
        return JSONResponse(status_code=507, content={"error": str(exc)})

    # ==================== Session routes ====================
    # Blocking handlers are plain functions so they run in the worker pool.

    @app.get("/api/sessions/{session}/poll")
    def poll(session: str) -> dict[str, Any]:
        """Short poll: should the session reload?"""
        return {"changed": service.poll(session)}

    @app.get("/api/sessions/{session}/long-poll")
    def long_poll(session: str) -> dict[str, Any]:
        """Long poll: wait for changes, or ask a stale session to reload."""
        logger.info(f"{session}-session long polling start")

        if service.is_stale(session):
            service.mark_synced(session)
            logger.info(f"{session}-session long polling all data refresh")
            return {"incrementals": None, "refresh": True}

        incrementals = service.long_poll(session)
        if incrementals:
            logger.info(f"{session}-session long polling ({len(incrementals)}) updates found")
        else:
            logger.info(f"{session}-session long polling empty")

        return {
            "incrementals": [u.to_dict() for u in incrementals],
            "refresh": False,
        }

    @app.post("/api/sessions/{session}/cancel-poll")
    def cancel_poll(session: str) -> dict[str, Any]:
        """Cancel the session's in-flight long poll."""
        logger.info(f"{session}-session long polling session cancel")
        service.cancel(session)
        return {"success": True}

    @app.post("/api/sessions/{session}/synced")
    def synced(session: str) -> dict[str, Any]:
        """Record that the session loaded all data."""
        service.mark_synced(session)
        return {"success": True}

    @app.post("/api/sessions/{session}/changes")
    def record_changes(session: str, body: RecordChangesIn) -> dict[str, Any]:
        """Record writes made by the session."""
        changes = [r.to_change() for r in body.records]
        service.record_changes(session, changes)
        logger.info(f"{session}-session server poll cached ({len(changes)}) updates")
        return {"success": True, "recorded": len(changes)}

    # ==================== Diagnostics ====================

    @app.get("/api/inspect")
    def inspect_cache() -> dict[str, Any]:
        """Current reassembled change cache."""
        return service.inspect()

    @app.delete("/api/cache")
    def clear_cache() -> dict[str, Any]:
        """Drop all recorded changes."""
        service.clear()
        return {"success": True}

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "environment": config.server.environment}

    return app
