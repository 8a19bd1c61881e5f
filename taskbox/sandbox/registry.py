"""Task id -> live sandbox handle.

The registry is an ordinary object holding a dict; its lifetime is the
lifetime of whoever created it (normally the whole process). It is separate
from DockerRuntime.instances, which is keyed by sandbox id.
"""

from __future__ import annotations

import dataclasses
from typing import Protocol

from taskbox.logging import log_event
from taskbox.sandbox.base import Sandbox, SandboxError, SandboxNotFoundError


class SandboxLookup(Protocol):
    async def get(self, sandbox_id: str) -> Sandbox: ...


@dataclasses.dataclass(slots=True)
class RegistryEntry:
    sandbox: Sandbox
    keep_alive: bool = False


class SandboxRegistry:
    """Process-wide map of task ids to sandbox handles. One handle per task."""

    def __init__(self, runtime: SandboxLookup | None = None) -> None:
        self.runtime = runtime
        self._entries: dict[str, RegistryEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._entries

    def register(self, task_id: str, sandbox: Sandbox, keep_alive: bool = False) -> None:
        self._entries[task_id] = RegistryEntry(sandbox=sandbox, keep_alive=keep_alive)
        log_event(
            component="registry",
            event="sandbox.registered",
            task_id=task_id,
            sandbox_id=sandbox.sandbox_id,
            keep_alive=keep_alive,
        )

    def get(self, task_id: str) -> Sandbox | None:
        entry = self._entries.get(task_id)
        return entry.sandbox if entry is not None else None

    def is_keep_alive(self, task_id: str) -> bool:
        entry = self._entries.get(task_id)
        return entry.keep_alive if entry is not None else False

    async def get_or_reconnect(self, task_id: str, sandbox_id: str) -> Sandbox | None:
        """Registered handle for the task, or one rebuilt from the runtime.

        Returns None when the runtime no longer has the container.
        """
        existing = self.get(task_id)
        if existing is not None:
            return existing
        if self.runtime is None:
            return None
        try:
            sandbox = await self.runtime.get(sandbox_id)
        except SandboxNotFoundError:
            log_event(
                component="registry",
                event="sandbox.not_found",
                level="warning",
                task_id=task_id,
                sandbox_id=sandbox_id,
            )
            return None
        self.register(task_id, sandbox)
        return sandbox

    def unregister(self, task_id: str) -> Sandbox | None:
        entry = self._entries.pop(task_id, None)
        return entry.sandbox if entry is not None else None

    async def end_session(self, task_id: str) -> bool:
        """Finish the task's session; stops the sandbox unless keep-alive.

        Returns True when a sandbox was stopped.
        """
        entry = self._entries.pop(task_id, None)
        if entry is None:
            return False
        if entry.keep_alive:
            log_event(
                component="registry",
                event="sandbox.kept_alive",
                message="Sandbox left running for inspection",
                task_id=task_id,
                sandbox_id=entry.sandbox.sandbox_id,
            )
            return False
        await entry.sandbox.stop()
        return True

    async def stop_all(self) -> None:
        """Stop every registered sandbox, keep-alive included."""
        for task_id in list(self._entries):
            entry = self._entries.pop(task_id)
            try:
                await entry.sandbox.stop()
            except SandboxError as error:
                log_event(
                    component="registry",
                    event="sandbox.stop_failed",
                    level="error",
                    message=str(error),
                    task_id=task_id,
                )
