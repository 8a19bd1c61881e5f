"""Structured event log for sandbox lifecycle and workflow runs.

Every call to log_event() produces one flat record:

    {"ts", "component", "event", "level", "message", **context, **fields}

Context (normally task_id and sandbox_id) is carried in a ContextVar, so
concurrent workflow runs on one event loop tag their records independently.
Records at or above TASKBOX_LOG_LEVEL are handed to the installed callback
and appended to TASKBOX_LOG_PATH as JSON lines. Secret-looking fields are
masked and the message is scrubbed before a record leaves this module.
"""

from __future__ import annotations

import contextlib
import json
import os
import threading
from collections.abc import Callable, Iterator, Mapping
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal, TypeAlias

from taskbox.utils.helpers import redact_secrets, redact_sensitive_info

LogRecord: TypeAlias = dict[str, object]
LogCallback: TypeAlias = Callable[[LogRecord], object]
LogLevel: TypeAlias = Literal["debug", "info", "warning", "error"]

LEVEL_ORDER: dict[str, int] = {"debug": 10, "info": 20, "warning": 30, "error": 40}
DEFAULT_COMPONENT = "taskbox"

_CONTEXT: ContextVar[LogRecord | None] = ContextVar("taskbox_log_context", default=None)
_CALLBACK: ContextVar[LogCallback | None] = ContextVar("taskbox_log_callback", default=None)
_SINK_LOCK = threading.Lock()


# --- Context ---


def merge_fields(base: Mapping[str, object] | None, fields: Mapping[str, object]) -> LogRecord:
    """Copy of base with fields applied; a None value removes the key."""
    merged = dict(base or {})
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def bind_log_context(**fields: object) -> Token[LogRecord | None]:
    return _CONTEXT.set(merge_fields(_CONTEXT.get(), fields))


def reset_log_context(token: Token[LogRecord | None]) -> None:
    _CONTEXT.reset(token)


def update_log_context(**fields: object) -> None:
    """Change the current context in place (no token to reset)."""
    _ = _CONTEXT.set(merge_fields(_CONTEXT.get(), fields))


def get_log_context() -> LogRecord:
    return dict(_CONTEXT.get() or {})


@contextlib.contextmanager
def log_context(**fields: object) -> Iterator[None]:
    token = bind_log_context(**fields)
    try:
        yield
    finally:
        reset_log_context(token)


def set_log_callback(callback: LogCallback | None) -> Token[LogCallback | None]:
    return _CALLBACK.set(callback)


def reset_log_callback(token: Token[LogCallback | None]) -> None:
    _CALLBACK.reset(token)


# --- Sinks ---


def level_threshold() -> int:
    name = (os.environ.get("TASKBOX_LOG_LEVEL") or "info").strip().lower()
    return LEVEL_ORDER.get(name, LEVEL_ORDER["info"])


def append_jsonl(record: LogRecord) -> None:
    path = (os.environ.get("TASKBOX_LOG_PATH") or "").strip()
    if not path:
        return
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False, default=str)
    with _SINK_LOCK, target.open("a", encoding="utf-8") as handle:
        _ = handle.write(line + "\n")


def deliver(record: LogRecord) -> None:
    callback = _CALLBACK.get()
    if callback is not None:
        with contextlib.suppress(Exception):
            _ = callback(record)
    append_jsonl(record)


# --- Events ---


def log_event(
    *,
    component: str | None = None,
    event: str = "log",
    message: str = "",
    level: LogLevel = "info",
    **fields: object,
) -> LogRecord:
    """Build, scrub and deliver one record; returns it even when filtered."""
    record: LogRecord = {
        "ts": datetime.now(UTC).isoformat(),
        "component": (component or "").strip() or DEFAULT_COMPONENT,
        "event": event,
        "level": level,
        "message": redact_sensitive_info(message),
    }
    record.update(get_log_context())
    record.update(merge_fields(None, redact_secrets(fields)))

    if LEVEL_ORDER.get(level, LEVEL_ORDER["info"]) >= level_threshold():
        deliver(record)
    return record
