"""FastAPI server for hook ingestion and focus requests."""

import asyncio
import logging
import time
from typing import Optional

from fastapi import Body, FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .environment import FocusTarget
from .engine import StatusEngine, pick_waiting
from .protocol import EventDecodeError

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, config: Optional[dict] = None):
        super().__init__(app)
        self.config = config or {}

        server_config = self.config.get("server", {})
        self.slow_threshold = server_config.get("slow_request_threshold_seconds", 1.0)
        self.timing_threshold = server_config.get("request_timing_threshold_seconds", 0.1)

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.info(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class FocusRequest(BaseModel):
    """Select a session by list index, id, or first waiting."""
    index: Optional[int] = None
    id: Optional[str] = None
    waiting: bool = False


class FocusResponse(BaseModel):
    """Outcome of a focus request."""
    id: str
    project: str
    outcome: str
    detail: Optional[str] = None
    description: str
    acknowledged: bool


class IngestResponse(BaseModel):
    """Result of ingesting one event."""
    status: str
    id: Optional[str] = None
    session_status: Optional[str] = None
    removed: bool = False


def create_app(
    engine: Optional[StatusEngine] = None,
    autofocus=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        engine: StatusEngine instance
        autofocus: Optional AutofocusController
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="CC Status",
        description="Track coding-agent CLI sessions and focus the window hosting them",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.add_middleware(RequestTimingMiddleware, config=config)

    app.state.engine = engine
    app.state.autofocus = autofocus

    def require_engine() -> StatusEngine:
        if not app.state.engine:
            raise HTTPException(status_code=503, detail="Status engine not configured")
        return app.state.engine

    async def notify_store_changes(engine: StatusEngine) -> None:
        running, waiting = await asyncio.to_thread(engine.store_transitions)
        if app.state.autofocus:
            app.state.autofocus.apply_transitions(running, waiting)

    async def ingest(payload: dict) -> IngestResponse:
        engine = require_engine()
        try:
            session = await asyncio.to_thread(engine.ingest, payload)
        except EventDecodeError as e:
            logger.warning(f"Dropped malformed event: {e}")
            raise HTTPException(status_code=400, detail=str(e))
        await notify_store_changes(engine)
        if session is None:
            return IngestResponse(status="ok", removed=True)
        return IngestResponse(status="ok", id=session.key, session_status=session.status.value)

    async def focus_target(engine: StatusEngine, target: FocusTarget) -> FocusResponse:
        result = await asyncio.to_thread(engine.focus, target)
        return FocusResponse(
            id=target.key,
            project=target.display_name,
            outcome=result.outcome.value,
            detail=result.detail,
            description=result.describe(),
            acknowledged=result.acted_upon,
        )

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "ccstatus"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/sessions")
    async def list_sessions(offset: int = 0, limit: Optional[int] = None, with_tmux: bool = False):
        """Active sessions in display order, Codex sessions last."""
        engine = require_engine()
        return await asyncio.to_thread(engine.list_payload, offset, limit, with_tmux)

    @app.post("/hooks/claude", response_model=IngestResponse)
    async def claude_hook(payload: dict = Body(...)):
        """Legacy hook payload, as forwarded by `ccstatus hook`."""
        logger.debug(f"Hook received: {payload.get('hook_event_name', 'unknown')}")
        return await ingest(payload)

    @app.post("/events", response_model=IngestResponse)
    async def ccsb_event(payload: dict = Body(...)):
        """Structured ccsb.v1 event (legacy hook payloads are accepted too)."""
        logger.debug(f"Event received: {payload.get('event', payload.get('hook_event_name', 'unknown'))}")
        return await ingest(payload)

    @app.post("/hooks/codex")
    async def codex_hook(payload: dict = Body(...)):
        """Codex `notify` callback."""
        engine = require_engine()
        try:
            state = await asyncio.to_thread(engine.handle_codex_notify, payload)
        except EventDecodeError as e:
            logger.warning(f"Dropped malformed Codex event: {e}")
            raise HTTPException(status_code=400, detail=str(e))
        if state is None:
            return {"status": "ignored"}

        if app.state.autofocus:
            session = await asyncio.to_thread(engine.codex_session_for_cwd, payload["cwd"])
            if session:
                app.state.autofocus.handle_waiting([session])
        return {
            "status": "ok",
            "session_status": state.status.value,
            "waiting_reason": state.waiting_reason.value if state.waiting_reason else None,
        }

    @app.post("/focus", response_model=FocusResponse)
    async def focus(request: FocusRequest):
        """Focus by list index, id, or the first waiting session (red first)."""
        engine = require_engine()
        selectors = [request.index is not None, request.id is not None, request.waiting]
        if sum(selectors) != 1:
            raise HTTPException(status_code=400, detail="Specify exactly one of index, id, waiting")

        targets = await asyncio.to_thread(engine.list_targets)
        if not targets:
            raise HTTPException(status_code=404, detail="No active sessions")

        if request.waiting:
            target = pick_waiting(targets)
            if target is None:
                raise HTTPException(status_code=404, detail="No waiting sessions")
        elif request.index is not None:
            if not 0 <= request.index < len(targets):
                raise HTTPException(
                    status_code=404,
                    detail=f"Index {request.index} out of range (0-{len(targets) - 1})",
                )
            target = targets[request.index]
        else:
            target = next((t for t in targets if t.key == request.id), None)
            if target is None:
                raise HTTPException(status_code=404, detail=f"Session not found: {request.id}")

        return await focus_target(engine, target)

    @app.post("/sessions/{key:path}/focus", response_model=FocusResponse)
    async def focus_session(key: str):
        engine = require_engine()
        target = await asyncio.to_thread(engine.find, key)
        if target is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {key}")
        return await focus_target(engine, target)

    @app.post("/sessions/{key:path}/acknowledge")
    async def acknowledge_session(key: str):
        """Mark a waiting session as seen."""
        engine = require_engine()
        target = await asyncio.to_thread(engine.find, key)
        if target is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {key}")
        changed = await asyncio.to_thread(engine.acknowledge, key)
        return {"id": key, "acknowledged": True, "changed": changed}

    return app
