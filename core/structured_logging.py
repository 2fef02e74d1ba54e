"""Shared structured JSON logging helpers."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any

_PRINT_LOCK = threading.Lock()


def emit_json_event(
    event_type: str,
    *,
    run_id: str | None,
    level: str = "info",
    **payload: Any,
) -> str:
    """Emit one JSON event line to stdout and return the rendered line."""
    event: dict[str, Any] = {
        "event_type": event_type,
        "level": level,
        "timestamp": datetime.now(UTC).isoformat(),
        "run_id": run_id,
    }
    event.update(payload)
    line = json.dumps(event, ensure_ascii=True, sort_keys=True, default=str)
    # Worker threads share stdout; keep lines whole.
    with _PRINT_LOCK:
        print(line)
    return line


def emit_error_event(
    event_type: str,
    exc: BaseException,
    *,
    run_id: str | None,
    level: str = "error",
    **payload: Any,
) -> str:
    """Emit an event describing `exc` as `error_type` and `error` fields."""
    return emit_json_event(
        event_type,
        run_id=run_id,
        level=level,
        error_type=type(exc).__name__,
        error=str(exc),
        **payload,
    )
