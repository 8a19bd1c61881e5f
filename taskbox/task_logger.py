"""Task logger: where the creation workflow reports what it is doing.

The workflow only needs info(), error() and command(). Implementations may
persist messages anywhere; failures inside them never abort provisioning
(the workflow guards every call).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from taskbox.logging import log_event
from taskbox.utils.helpers import redact_sensitive_info, tprint


@runtime_checkable
class TaskLogger(Protocol):
    async def info(self, message: str) -> None: ...

    async def error(self, message: str) -> None: ...

    async def command(self, command_text: str) -> None: ...


class EventTaskLogger:
    """TaskLogger that emits structured log events and, optionally, prints."""

    def __init__(self, task_id: str, *, echo: bool = False) -> None:
        self.task_id = task_id
        self.echo = echo
        self.messages: list[tuple[str, str]] = []

    def _emit(self, kind: str, text: str, level: str) -> None:
        safe = redact_sensitive_info(text)
        self.messages.append((kind, safe))
        log_event(
            component="task",
            event=f"task.{kind}",
            level=level,
            message=safe,
            task_id=self.task_id,
        )
        if self.echo:
            prefix = "$ " if kind == "command" else ""
            tprint(f"[{self.task_id}] {prefix}{safe}")

    async def info(self, message: str) -> None:
        self._emit("info", message, "info")

    async def error(self, message: str) -> None:
        self._emit("error", message, "error")

    async def command(self, command_text: str) -> None:
        self._emit("command", command_text, "info")


async def log_quietly(logger: TaskLogger | None, kind: str, text: str) -> None:
    """Call logger.<kind>(text); a failing logger is recorded, never raised."""
    if logger is None:
        return
    try:
        await getattr(logger, kind)(text)
    except Exception as error:
        log_event(
            component="task",
            event="task_logger.failed",
            level="warning",
            message=str(error),
            kind=kind,
        )
