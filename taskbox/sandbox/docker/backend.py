"""Docker sandbox backend -- one container plus two volumes per task.

DockerRuntime talks to the docker CLI: it builds the base image on first
use (one shared build per runtime), creates volumes and containers, and
rebuilds handles for containers it finds through `docker inspect`. Each
container carries a base64 JSON label describing its ports and volumes, so
a fresh process can reconnect without any other state.

DockerSandbox is the handle for one container. Commands run through the
runtime's ProcessRunner (`docker exec`); stop() removes the container and
both volumes and is safe to call repeatedly.
"""

from __future__ import annotations

import asyncio
import json
import secrets
import tempfile
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeAlias

from taskbox.config import (
    DOCKER_BINARY,
    DOCKER_TIMEOUT_SECONDS,
    IMAGE_BUILD_TIMEOUT_SECONDS,
    OLLAMA_HOST,
    PUBLIC_HOST,
    SANDBOX_IMAGE,
)
from taskbox.logging import log_event
from taskbox.sandbox.base import (
    DEFAULT_PORTS,
    CommandRequest,
    CommandResult,
    SandboxConfig,
    SandboxCreationError,
    SandboxLabelConfig,
    SandboxNotFoundError,
    SandboxNotInitializedError,
    SandboxStatus,
    SandboxTimeoutError,
)
from taskbox.sandbox.process import ProcessRunner, quote_arg, run_process
from taskbox.utils.helpers import redact_sensitive_info, tprint

IDENT_LABEL = "taskbox"
CONFIG_LABEL = "taskbox.config"
WORKSPACE_MOUNT = "/workspace"
CACHE_MOUNT = "/workspace/.cache"
CLONE_DIR = "/workspace/project"

SANDBOX_DOCKERFILE = """\
FROM node:22-slim

RUN apt-get update && apt-get install -y \\
    git \\
    python3 \\
    python3-pip \\
    curl \\
    unzip \\
    ca-certificates \\
    && rm -rf /var/lib/apt/lists/*

RUN pip3 install --no-cache-dir requests --break-system-packages

WORKDIR /workspace

ENV SHELL=/bin/bash

CMD ["/bin/bash"]
"""

DockerExecutor: TypeAlias = Callable[[list[str], float | None], Awaitable[CommandResult]]


def new_sandbox_id() -> str:
    return f"sandbox-{secrets.token_hex(8)}"


def status_from_inspect(inspect: dict[str, Any]) -> SandboxStatus:
    state = inspect.get("State") or {}
    if state.get("Running") is True or state.get("Status") == "running":
        return SandboxStatus.RUNNING
    return SandboxStatus.STOPPED


class DockerSandbox:
    """Sandbox implementation backed by one docker container."""

    def __init__(
        self,
        runtime: DockerRuntime,
        sandbox_id: str,
        *,
        label: SandboxLabelConfig,
        container_id: str | None = None,
        status: SandboxStatus = SandboxStatus.RUNNING,
    ) -> None:
        self._runtime = runtime
        self._sandbox_id = sandbox_id
        self._status = status
        self.container_id = container_id
        self.ports: list[int] = list(label.ports) or list(DEFAULT_PORTS)
        self.workspace_volume = label.workspace_volume
        self.cache_volume = label.cache_volume
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._timeout_task: asyncio.Task[None] | None = None

    @property
    def name(self) -> str:
        return "docker"

    @property
    def sandbox_id(self) -> str:
        return self._sandbox_id

    @property
    def status(self) -> SandboxStatus:
        return self._status

    def label_config(self) -> SandboxLabelConfig:
        return SandboxLabelConfig(
            ports=list(self.ports),
            workspace_volume=self.workspace_volume,
            cache_volume=self.cache_volume,
        )

    def arm_timeout(self, timeout_ms: int | None) -> None:
        """Stop the sandbox timeout_ms after now, regardless of activity."""
        if not timeout_ms or timeout_ms <= 0:
            return
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(
            timeout_ms / 1000, self._on_timeout
        )

    def _on_timeout(self) -> None:
        self._timeout_handle = None
        log_event(
            component="sandbox",
            event="sandbox.timeout",
            message="Sandbox timeout reached, stopping",
            sandbox_id=self._sandbox_id,
        )
        self._timeout_task = asyncio.ensure_future(self.stop())

    async def run_command(
        self,
        command: CommandRequest | str,
        args: list[str] | None = None,
    ) -> CommandResult:
        """Execute a process inside the container.

        Accepts either a full CommandRequest or a command name plus its
        argument list. Raises SandboxNotInitializedError before create().
        """
        if not self.container_id:
            raise SandboxNotInitializedError(self._sandbox_id)
        if isinstance(command, str):
            request = CommandRequest(cmd=command, args=list(args or []))
        else:
            request = command
        return await self._runtime.runner.run(self._sandbox_id, request)

    async def stop(self) -> None:
        self._status = SandboxStatus.STOPPED
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

        await self._runtime.runner.terminate_detached(self._sandbox_id)

        if self.container_id:
            result = await self._runtime.docker_quiet("rm", "-f", self._sandbox_id)
            if not result.success:
                log_event(
                    component="sandbox",
                    event="container.remove_failed",
                    level="warning",
                    message=result.stderr().strip(),
                    sandbox_id=self._sandbox_id,
                )
            else:
                self.container_id = None

        for volume in (self.workspace_volume, self.cache_volume):
            result = await self._runtime.docker_quiet("volume", "rm", "-f", volume)
            if not result.success:
                log_event(
                    component="sandbox",
                    event="volume.remove_failed",
                    level="warning",
                    message=result.stderr().strip(),
                    sandbox_id=self._sandbox_id,
                    volume=volume,
                )

        self._runtime.forget(self)

    def domain(self, port: int | None = None) -> str:
        target = port or (self.ports[0] if self.ports else None) or 3000
        return f"http://{PUBLIC_HOST}:{target}"


class DockerRuntime:
    """Creates, tracks and reconnects docker sandboxes.

    `instances` maps sandbox id to the live handle for this process. It is
    a plain dict owned by the runtime; create one runtime per process and
    pass it to whatever needs sandboxes.
    """

    def __init__(
        self,
        *,
        docker_binary: str = DOCKER_BINARY,
        image: str = SANDBOX_IMAGE,
        executor: DockerExecutor | None = None,
        runner: ProcessRunner | None = None,
        command_timeout: float = DOCKER_TIMEOUT_SECONDS,
    ) -> None:
        self.docker_binary = docker_binary
        self.image = image
        self.command_timeout = command_timeout
        self.runner = runner or ProcessRunner(docker_binary)
        self.instances: dict[str, DockerSandbox] = {}
        self._executor = executor or self._subprocess_executor
        self._image_ready = False
        self._image_build: asyncio.Future[None] | None = None
        self._reconnecting: dict[str, asyncio.Future[DockerSandbox]] = {}

    async def _subprocess_executor(
        self, args: list[str], timeout: float | None
    ) -> CommandResult:
        return await run_process([self.docker_binary, *args], timeout=timeout)

    # ------------------------------------------------------------------
    # docker CLI
    # ------------------------------------------------------------------

    async def docker(self, *args: str, timeout: float | None = None) -> CommandResult:
        """Run one docker CLI command on the host.

        Raises SandboxTimeoutError when the command exceeds its budget.
        """
        budget = timeout if timeout is not None else self.command_timeout
        try:
            return await self._executor(list(args), budget)
        except TimeoutError as error:
            raise SandboxTimeoutError(
                f"docker {args[0] if args else ''} timed out after {budget:g}s"
            ) from error

    async def docker_quiet(self, *args: str) -> CommandResult:
        """Like docker(), but timeouts become a failed result."""
        try:
            return await self.docker(*args)
        except SandboxTimeoutError as error:
            return CommandResult(exit_code=124, captured_stderr=str(error))

    async def docker_checked(
        self, *args: str, timeout: float | None = None
    ) -> CommandResult:
        result = await self.docker(*args, timeout=timeout)
        if not result.success:
            detail = result.stderr().strip() or result.stdout().strip()
            raise SandboxCreationError(
                f"docker {args[0]} failed (exit {result.exit_code}): {detail}"
            )
        return result

    # ------------------------------------------------------------------
    # Image
    # ------------------------------------------------------------------

    async def ensure_image(self) -> None:
        """Build the base image once; concurrent callers share the build."""
        if self._image_ready:
            return
        if self._image_build is None:
            self._image_build = asyncio.ensure_future(self._build_image())
        build = self._image_build
        try:
            await asyncio.shield(build)
        except Exception:
            if self._image_build is build:
                self._image_build = None
            raise
        self._image_ready = True

    async def _build_image(self) -> None:
        inspect = await self.docker("image", "inspect", self.image)
        if inspect.success:
            return
        tprint(f"[docker] building sandbox image {self.image}")
        log_event(
            component="sandbox",
            event="image.build",
            message="Building Docker sandbox image",
            image=self.image,
        )
        with tempfile.TemporaryDirectory(prefix="taskbox-sandbox-") as tmp:
            dockerfile = Path(tmp) / "Dockerfile"
            _ = dockerfile.write_text(SANDBOX_DOCKERFILE, encoding="utf-8")
            result = await self.docker(
                "build",
                "-t",
                self.image,
                "-f",
                str(dockerfile),
                tmp,
                timeout=IMAGE_BUILD_TIMEOUT_SECONDS,
            )
        if not result.success:
            raise SandboxCreationError(
                f"Failed to build sandbox image: {result.stderr().strip()[-2000:]}"
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run_args(self, sandbox: DockerSandbox, config: SandboxConfig) -> list[str]:
        args = ["run", "-d"]
        for port in sandbox.ports:
            args.extend(["-p", f"{port}:{port}"])
        args.extend(["--name", sandbox.sandbox_id])
        args.append("--add-host=host.docker.internal:host-gateway")
        args.extend(["-e", f"OLLAMA_HOST={OLLAMA_HOST}"])
        args.extend(["-e", f"XDG_CACHE_HOME={CACHE_MOUNT}"])
        args.extend(["-e", f"npm_config_cache={CACHE_MOUNT}/npm"])
        if config.vcpus:
            args.append(f"--cpus={config.vcpus}")
        args.extend(["-v", f"{sandbox.workspace_volume}:{WORKSPACE_MOUNT}"])
        args.extend(["-v", f"{sandbox.cache_volume}:{CACHE_MOUNT}"])
        args.extend(["--label", f"{IDENT_LABEL}=true"])
        args.extend(["--label", f"{CONFIG_LABEL}={sandbox.label_config().encode()}"])
        args.extend(["-w", WORKSPACE_MOUNT, self.image, "tail", "-f", "/dev/null"])
        return args

    async def create(
        self, config: SandboxConfig, *, sandbox_id: str | None = None
    ) -> DockerSandbox:
        """Start a fresh container and return its running handle.

        Raises SandboxCreationError (SandboxTimeoutError for timeouts) when
        the image, the volumes or the container cannot be created.
        """
        sid = sandbox_id or new_sandbox_id()
        label = SandboxLabelConfig.defaults_for(sid)
        label.ports = list(config.ports) or list(DEFAULT_PORTS)
        sandbox = DockerSandbox(self, sid, label=label)

        try:
            await self.ensure_image()
            _ = await self.docker_checked("volume", "create", sandbox.workspace_volume)
            _ = await self.docker_checked("volume", "create", sandbox.cache_volume)
            result = await self.docker_checked(*self.run_args(sandbox, config))
        except SandboxTimeoutError:
            raise
        except SandboxCreationError as error:
            raise SandboxCreationError(
                f"Failed to create Docker sandbox: {error}"
            ) from error

        sandbox.container_id = result.stdout().strip() or sid
        self.instances[sid] = sandbox
        sandbox.arm_timeout(config.timeout_ms)
        log_event(
            component="sandbox",
            event="sandbox.created",
            message="Docker sandbox created",
            sandbox_id=sid,
            task_id=config.task_id,
            ports=sandbox.ports,
        )

        if config.source is not None:
            await self._clone_source(sandbox, config)
        return sandbox

    async def _clone_source(self, sandbox: DockerSandbox, config: SandboxConfig) -> None:
        assert config.source is not None
        source = config.source
        clone = (
            f"mkdir -p {quote_arg(CLONE_DIR)} && git clone --depth "
            f"{max(1, source.depth)} {quote_arg(source.url)} {quote_arg(CLONE_DIR)}"
        )
        if source.revision:
            clone += f" && cd {quote_arg(CLONE_DIR)} && git checkout {quote_arg(source.revision)}"
        result = await sandbox.run_command("sh", ["-c", clone])
        if not result.success:
            await sandbox.stop()
            raise SandboxCreationError(
                "Failed to clone repository: "
                + redact_sensitive_info(result.stderr().strip())
            )

    async def inspect_container(self, name: str) -> dict[str, Any] | None:
        result = await self.docker_quiet("inspect", name)
        if not result.success:
            return None
        try:
            parsed = json.loads(result.stdout())
        except ValueError:
            return None
        if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
            return parsed[0]
        return None

    async def get(self, sandbox_id: str) -> DockerSandbox:
        """Return the live handle, rebuilding it from `docker inspect` if needed.

        Concurrent callers for the same id share one reconnect and receive
        the same handle. Raises SandboxNotFoundError when docker has no
        such container.
        """
        existing = self.instances.get(sandbox_id)
        if existing is not None:
            return existing

        pending = self._reconnecting.get(sandbox_id)
        if pending is None:
            pending = asyncio.ensure_future(self._reconnect(sandbox_id))
            self._reconnecting[sandbox_id] = pending
            pending.add_done_callback(
                lambda done: self._end_reconnect(sandbox_id, done)
            )
        return await asyncio.shield(pending)

    def _end_reconnect(
        self, sandbox_id: str, done: asyncio.Future[DockerSandbox]
    ) -> None:
        if self._reconnecting.get(sandbox_id) is done:
            del self._reconnecting[sandbox_id]
        if not done.cancelled():
            _ = done.exception()

    async def _reconnect(self, sandbox_id: str) -> DockerSandbox:
        inspect = await self.inspect_container(sandbox_id)
        if inspect is None:
            raise SandboxNotFoundError(sandbox_id)

        existing = self.instances.get(sandbox_id)
        if existing is not None:
            return existing

        labels = (inspect.get("Config") or {}).get("Labels") or {}
        label = SandboxLabelConfig.decode(
            labels.get(CONFIG_LABEL), sandbox_id=sandbox_id
        )
        sandbox = DockerSandbox(
            self,
            sandbox_id,
            label=label,
            container_id=inspect.get("Id") or sandbox_id,
            status=status_from_inspect(inspect),
        )
        self.instances[sandbox_id] = sandbox
        log_event(
            component="sandbox",
            event="sandbox.reconnected",
            message="Reconnected to existing Docker sandbox",
            sandbox_id=sandbox_id,
            schema_version=label.schema_version,
        )
        return sandbox

    def forget(self, sandbox: DockerSandbox) -> None:
        if self.instances.get(sandbox.sandbox_id) is sandbox:
            del self.instances[sandbox.sandbox_id]
