import asyncio
import logging
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from livecode.agent.model import ModelStream, create_model_stream
from livecode.agent.session import SessionOrchestrator
from livecode.config import ALLOWED_MODELS, Settings, load_settings
from livecode.sandbox.vercel_sandbox import VercelSandbox
from livecode.sse import SSE_HEADERS, emit_event, session_event_sse, sse_format


logger = logging.getLogger("livecode.api.sessions")


router = APIRouter(prefix="/api/sessions", tags=["sessions"])

SLEEP_INTERVAL_SECONDS = 0.05

SandboxFactory = Callable[[Settings], Awaitable[Any]]
ModelStreamFactory = Callable[[Settings, str | None], ModelStream]


class CreateSessionRequest(BaseModel):
    model: str | None = None


class TurnRequest(BaseModel):
    """A user message for the session's model."""

    content: str
    images: list[str] = Field(default_factory=list)


class PreviewEventRequest(BaseModel):
    """A message relayed from the preview frame.

    ``data`` is the raw postMessage payload; ``message``/``location`` carry a
    window error caught by the host page itself.
    """

    data: Any = None
    message: str | None = None
    location: str | None = None


@dataclass
class SessionRecord:
    session_id: str
    orchestrator: SessionOrchestrator
    sandbox: Any
    created_at: float = field(default_factory=time.time)
    tasks: set[asyncio.Task] = field(default_factory=set)


_sessions: dict[str, SessionRecord] = {}


def make_session_id() -> str:
    return f"session_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


async def create_vercel_sandbox(settings: Settings) -> VercelSandbox:
    return await VercelSandbox.create(
        runtime=settings.sandbox_runtime,
        ports=settings.sandbox_ports,
        timeout_ms=settings.sandbox_timeout_ms,
    )


def get_settings() -> Settings:
    return load_settings()


def get_sandbox_factory() -> SandboxFactory:
    return create_vercel_sandbox


def get_model_stream_factory() -> ModelStreamFactory:
    return create_model_stream


def get_session(session_id: str) -> SessionRecord:
    record = _sessions.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return record


def _preview_url(sandbox: Any, settings: Settings) -> str | None:
    resolve = getattr(sandbox, "preview_url", None)
    if resolve is None or not settings.sandbox_ports:
        return None
    return resolve(settings.sandbox_ports[0])


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("session task crashed: %s", exc, exc_info=exc)


def _track(record: SessionRecord, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
    task = asyncio.create_task(coro)
    record.tasks.add(task)
    task.add_done_callback(record.tasks.discard)
    task.add_done_callback(_log_task_failure)
    return task


@router.post("")
async def create_session(
    request: CreateSessionRequest,
    settings: Settings = Depends(get_settings),
    sandbox_factory: SandboxFactory = Depends(get_sandbox_factory),
    model_stream_factory: ModelStreamFactory = Depends(get_model_stream_factory),
) -> dict[str, Any]:
    """Create a sandbox-backed session.

    Clients then connect to SSE at GET /api/sessions/{session_id}/events and
    post turns to /api/sessions/{session_id}/turns.
    """
    if request.model and request.model not in ALLOWED_MODELS:
        raise HTTPException(status_code=400, detail=f"Model not allowed: {request.model}")

    session_id = make_session_id()
    sandbox = await sandbox_factory(settings)
    try:
        await sandbox.mkdir(settings.project_dir, recursive=True)
        model_stream = model_stream_factory(settings, request.model)
    except Exception:
        logger.exception("create_session[%s] setup failed", session_id)
        stop = getattr(sandbox, "stop", None)
        if stop is not None:
            await stop()
        raise

    orchestrator = SessionOrchestrator(sandbox, model_stream, settings, session_id=session_id)
    record = SessionRecord(session_id=session_id, orchestrator=orchestrator, sandbox=sandbox)
    _sessions[session_id] = record
    if settings.bootstrap_project:
        # Scaffold, install and start the dev server without holding the response
        _track(record, orchestrator.initialize())
    logger.info("create_session[%s] model=%s", session_id, request.model or settings.model)
    return {
        "session_id": session_id,
        "sandbox_id": getattr(sandbox, "sandbox_id", None),
        "preview_url": _preview_url(sandbox, settings),
    }


@router.get("/{session_id}/events")
async def session_events(
    session_id: str, request: Request, cursor: int = 0, follow: bool = True
):
    """Stream the session's events from ``cursor`` onwards.

    With ``follow=false`` the stream ends once the backlog has been sent.
    """
    record = get_session(session_id)
    orchestrator = record.orchestrator

    async def event_generator() -> AsyncGenerator[str, None]:
        position = max(cursor, 0)
        try:
            while True:
                events, end = orchestrator.events_since(position)
                first = end - len(events)
                for offset, event in enumerate(events):
                    yield session_event_sse(session_id, event, cursor=first + offset + 1)
                position = end
                if not follow or session_id not in _sessions:
                    break
                if await request.is_disconnected():
                    break
                await asyncio.sleep(SLEEP_INTERVAL_SECONDS)
        except Exception as e:
            logger.error("session_events[%s] error: %s", session_id, str(e))
            yield sse_format(emit_event(session_id, "stream_failed", error=str(e)))

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)


@router.post("/{session_id}/turns")
async def start_turn(session_id: str, request: TurnRequest) -> dict[str, Any]:
    record = get_session(session_id)
    if not request.content.strip():
        return {"ok": False, "error": "empty message"}

    _track(record, record.orchestrator.send_message(request.content, request.images))
    logger.info("start_turn[%s] content_len=%d images=%d", session_id, len(request.content), len(request.images))
    return {"ok": True, "accepted": True}


@router.delete("/{session_id}/turns/current")
async def cancel_turn(session_id: str) -> dict[str, Any]:
    record = get_session(session_id)
    return {"ok": True, "cancelled": record.orchestrator.cancel()}


@router.post("/{session_id}/preview-events")
async def preview_event(session_id: str, request: PreviewEventRequest) -> dict[str, Any]:
    record = get_session(session_id)
    feedback = record.orchestrator.feedback
    if request.message:
        feedback.on_runtime_error(request.message, request.location)
    if request.data is not None:
        feedback.on_preview_message(request.data)
    return {"ok": True}


@router.get("/{session_id}/messages")
async def list_messages(session_id: str) -> dict[str, Any]:
    record = get_session(session_id)
    orchestrator = record.orchestrator
    return {
        "messages": [m.model_dump() for m in orchestrator.messages],
        "current_code": orchestrator.current_code,
        "busy": orchestrator.busy,
    }


@router.post("/{session_id}/clear")
async def clear_session(session_id: str) -> dict[str, Any]:
    record = get_session(session_id)
    record.orchestrator.clear()
    return {"ok": True}


@router.delete("/{session_id}")
async def delete_session(session_id: str) -> dict[str, Any]:
    record = _sessions.pop(session_id, None)
    if record is None:
        return {"ok": False, "error": "unknown session"}

    for task in list(record.tasks):
        task.cancel()
    await record.orchestrator.aclose()
    try:
        stop = getattr(record.sandbox, "stop", None)
        if stop is not None:
            await stop()
    except Exception as e:
        # The sandbox may already be stopped or gone
        logger.warning("delete_session[%s] stop failed: %s", session_id, e)
        return {"ok": False, "error": str(e)}
    return {"ok": True, "stopped": True}
