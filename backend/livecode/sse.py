import json
import time
from typing import Any

from livecode.types import SessionEvent


SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_format(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def emit_event(
    session_id: str, event_type: str, data: Any = None, error: Any = None
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "session_id": session_id,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
        "data": data,
        "error": error,
    }


def session_event_sse(session_id: str, event: SessionEvent, cursor: int | None = None) -> str:
    payload = emit_event(session_id, event.event_type, data=event.data, error=event.error)
    if cursor is not None:
        # Reconnect with ?cursor=<this value> to resume after this event
        payload["cursor"] = cursor
    return sse_format(payload)
