"""Sandbox abstraction layer.

Provides the Sandbox protocol, the command request/result types, the
Docker backend and the per-task SandboxRegistry.
"""

from taskbox.sandbox.base import (
    CommandRequest,
    CommandResult,
    Sandbox,
    SandboxConfig,
    SandboxError,
    SandboxNotFoundError,
    SandboxSource,
    SandboxStatus,
)
from taskbox.sandbox.docker import DockerRuntime, DockerSandbox
from taskbox.sandbox.registry import SandboxRegistry

__all__ = [
    "CommandRequest",
    "CommandResult",
    "DockerRuntime",
    "DockerSandbox",
    "Sandbox",
    "SandboxConfig",
    "SandboxError",
    "SandboxNotFoundError",
    "SandboxRegistry",
    "SandboxSource",
    "SandboxStatus",
]
