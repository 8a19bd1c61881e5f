"""Sandbox Protocol: the interface every sandbox handle must implement.

A sandbox is an isolated container dedicated to one task. The creation
workflow uses run_command() to execute processes inside it, domain() to
find the dev server, and stop() to tear it down. The Docker implementation
lives in sandbox/docker/.

Also defines CommandRequest, CommandResult, SandboxConfig, the versioned
label schema stored on the container, and the sandbox error types.
"""

from __future__ import annotations

import base64
import binascii
import dataclasses
import json
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Protocol, TypeAlias, runtime_checkable

from pydantic import AliasChoices, BaseModel, Field, ValidationError

from taskbox.config import DEFAULT_PORTS

LABEL_SCHEMA_VERSION = 1

OutputSink: TypeAlias = Callable[[str], Awaitable[None] | None]


# --- Errors ---


class SandboxError(RuntimeError):
    """Base class for sandbox lifecycle failures."""


class SandboxNotInitializedError(SandboxError):
    def __init__(self, sandbox_id: str) -> None:
        super().__init__(f"Sandbox not initialized: {sandbox_id}")
        self.sandbox_id = sandbox_id


class SandboxNotFoundError(SandboxError):
    def __init__(self, sandbox_id: str) -> None:
        super().__init__(f"Sandbox not found: {sandbox_id}")
        self.sandbox_id = sandbox_id


class SandboxCreationError(SandboxError):
    """Image build, volume or container start failed."""


class SandboxTimeoutError(SandboxCreationError, TimeoutError):
    """A container runtime call exceeded its time budget."""


class DetachedCommandError(SandboxError):
    """A detached command failed inside its grace window."""

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


# --- Commands ---


@dataclasses.dataclass(slots=True)
class CommandRequest:
    """One process to execute inside a sandbox."""

    cmd: str
    args: list[str] = dataclasses.field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = dataclasses.field(default_factory=dict)
    detached: bool = False
    sudo: bool = False
    stdout: OutputSink | None = None
    stderr: OutputSink | None = None


@dataclasses.dataclass(frozen=True, slots=True)
class CommandResult:
    """Result of running a command inside a sandbox.

    Output is captured once while the process runs; stdout() and stderr()
    return the same cached text on every call.
    """

    exit_code: int
    captured_stdout: str = ""
    captured_stderr: str = ""
    duration_ms: int = 0
    detached: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def stdout(self) -> str:
        return self.captured_stdout

    def stderr(self) -> str:
        return self.captured_stderr

    def unpack(self) -> tuple[int, str, str]:
        """Return (exit_code, stdout, stderr) for destructuring."""
        return self.exit_code, self.captured_stdout, self.captured_stderr


# --- Configuration ---


class SandboxStatus(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"


class SandboxSource(BaseModel):
    """Repository cloned into the project directory at creation time."""

    url: str
    depth: int = 1
    revision: str | None = None


class SandboxConfig(BaseModel):
    """Everything the runtime needs to start one sandbox container."""

    timeout_ms: int | None = None
    ports: list[int] = Field(default_factory=lambda: list(DEFAULT_PORTS))
    vcpus: int | None = None
    runtime: str = "node22"
    source: SandboxSource | None = None
    task_id: str | None = None


class SandboxLabelConfig(BaseModel):
    """Configuration snapshot attached to the container as a label.

    Lets a new process rebuild a handle from `docker inspect` alone. The
    unversioned camelCase shape written by older releases still decodes.
    """

    schema_version: int = LABEL_SCHEMA_VERSION
    ports: list[int] = Field(default_factory=lambda: list(DEFAULT_PORTS))
    workspace_volume: str = Field(
        validation_alias=AliasChoices("workspace_volume", "workspaceVolume"),
    )
    cache_volume: str = Field(
        validation_alias=AliasChoices("cache_volume", "cacheVolume"),
    )

    @classmethod
    def defaults_for(cls, sandbox_id: str) -> SandboxLabelConfig:
        return cls(
            ports=list(DEFAULT_PORTS),
            workspace_volume=f"{sandbox_id}-workspace",
            cache_volume=f"{sandbox_id}-cache",
        )

    def encode(self) -> str:
        payload = self.model_dump_json()
        return base64.b64encode(payload.encode("utf-8")).decode("ascii")

    @classmethod
    def decode(cls, encoded: str | None, *, sandbox_id: str) -> SandboxLabelConfig:
        """Decode a label value, falling back to name-derived defaults."""
        if not encoded:
            return cls.defaults_for(sandbox_id)
        try:
            raw = base64.b64decode(encoded.encode("ascii"), validate=True)
            parsed = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError):
            return cls.defaults_for(sandbox_id)
        if not isinstance(parsed, dict):
            return cls.defaults_for(sandbox_id)
        parsed.setdefault("schema_version", 0)
        try:
            config = cls.model_validate(parsed)
        except ValidationError:
            return cls.defaults_for(sandbox_id)
        if not config.ports:
            config.ports = list(DEFAULT_PORTS)
        return config


# --- Protocol ---


@runtime_checkable
class Sandbox(Protocol):
    """Abstraction over one live sandbox environment."""

    @property
    def name(self) -> str:
        """Provider name, e.g. 'docker'."""
        ...

    @property
    def sandbox_id(self) -> str:
        """Opaque id, stable for the task's lifetime."""
        ...

    @property
    def status(self) -> SandboxStatus:
        """Cached coarse status; the runtime is the source of truth."""
        ...

    async def run_command(
        self,
        command: CommandRequest | str,
        args: list[str] | None = None,
    ) -> CommandResult:
        """Execute a process inside the sandbox."""
        ...

    async def stop(self) -> None:
        """Remove the container and its volumes. Idempotent."""
        ...

    def domain(self, port: int | None = None) -> str:
        """Base URL where the given port is reachable."""
        ...
