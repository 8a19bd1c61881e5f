"""Sandbox creation workflow -- repo URL in, ready sandbox on a branch out.

Stages run strictly in order, each awaiting its commands before the next:

    validate -> create sandbox -> clone -> detect project files
    -> install dependencies -> start dev server -> configure git
    -> prepare branch

Cancellation is cooperative. The CancellationToken is polled at four
checkpoints (before sandbox creation, after it, after dependency
installation, before git configuration); a command already running is never
interrupted.

Fatal stages raise WorkflowError. Dependency installation, dev-server start
and the initial push only log and carry on. create_sandbox_for_task()
catches everything once and always returns a SandboxResult: success,
cancelled, or error with a message.
"""

from __future__ import annotations

import dataclasses
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from taskbox.config import (
    DEFAULT_GIT_AUTHOR_EMAIL,
    DEFAULT_GIT_AUTHOR_NAME,
    DEFAULT_VCPUS,
    DEV_SERVER_WARMUP_SECONDS,
    create_authenticated_repo_url,
    parse_timeout_ms,
    repo_name_from_url,
    resolve_ports,
    validate_environment_variables,
)
from taskbox.logging import log_context, log_event, update_log_context
from taskbox.sandbox.base import Sandbox, SandboxConfig, SandboxError
from taskbox.sandbox.docker.backend import DockerRuntime
from taskbox.sandbox.process import quote_arg
from taskbox.sandbox.registry import SandboxRegistry
from taskbox.task_logger import EventTaskLogger, TaskLogger, log_quietly
from taskbox.utils.helpers import generate_id, redact_sensitive_info, truncate_text
from taskbox.workflow.commands import (
    PROJECT_DIR,
    run_and_log_command,
    run_in_project,
    run_in_sandbox,
)
from taskbox.workflow.dev_server import (
    DEFAULT_DEV_PORT,
    read_package_json,
    start_dev_server,
)
from taskbox.workflow.package_manager import (
    PackageManager,
    detect_package_manager,
    ensure_global_tool,
    install_dependencies,
)

TIMEOUT_MESSAGE = (
    "Sandbox creation timed out. Try with a smaller repository or fewer dependencies."
)
GET_PIP_COMMAND = (
    "cd /tmp && curl https://bootstrap.pypa.io/get-pip.py -o get-pip.py "
    "&& python3 get-pip.py && rm -f get-pip.py"
)
APT_PIP_COMMAND = "apt-get update && apt-get install -y python3-pip"


# --- Errors ---


class WorkflowError(RuntimeError):
    """A fatal stage failure; the message is shown to the user as is."""


class CancellationStage(StrEnum):
    BEFORE_SANDBOX_CREATION = "before_sandbox_creation"
    AFTER_SANDBOX_CREATION = "after_sandbox_creation"
    AFTER_DEPENDENCY_INSTALLATION = "after_dependency_installation"
    BEFORE_GIT_CONFIGURATION = "before_git_configuration"


CANCELLATION_MESSAGES: dict[CancellationStage, str] = {
    CancellationStage.BEFORE_SANDBOX_CREATION: "Task was cancelled before sandbox creation",
    CancellationStage.AFTER_SANDBOX_CREATION: "Task was cancelled after sandbox creation",
    CancellationStage.AFTER_DEPENDENCY_INSTALLATION: (
        "Task was cancelled after dependency installation"
    ),
    CancellationStage.BEFORE_GIT_CONFIGURATION: "Task was cancelled before Git configuration",
}


class WorkflowCancelledError(Exception):
    def __init__(self, stage: CancellationStage) -> None:
        super().__init__(CANCELLATION_MESSAGES[stage])
        self.stage = stage


def is_timeout_error(error: BaseException | None) -> bool:
    """True if error, or anything in its __cause__ chain, looks like a timeout."""
    seen: set[int] = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        if isinstance(error, TimeoutError):
            return True
        if getattr(error, "code", None) == "ETIMEDOUT":
            return True
        message = str(error).lower()
        if "timeout" in message or "timed out" in message:
            return True
        error = error.__cause__
    return False


# --- Inputs and outputs ---


CancellationCheck: TypeAlias = Callable[[], bool | Awaitable[bool]]


class CancellationToken:
    """Cancellation flag polled at workflow checkpoints.

    Either call cancel() or wrap a predicate (sync or async) that reports
    whether the task was cancelled elsewhere.
    """

    def __init__(self, check: CancellationCheck | None = None) -> None:
        self._check = check
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._check is None:
            return False
        result = self._check()
        if inspect.isawaitable(result):
            result = await result
        if result:
            self._cancelled = True
        return bool(result)


class TaskSandboxConfig(BaseModel):
    """What the caller asks for: one repository, one agent, some options."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_id: str
    repo_url: str
    github_token: str | None = None
    selected_agent: str = "claude"
    api_keys: dict[str, str] = Field(default_factory=dict)
    install_dependencies: bool = True
    timeout: str | None = None
    ports: list[int] | None = None
    runtime: str = "node22"
    vcpus: int | None = None
    git_author_name: str | None = None
    git_author_email: str | None = None
    pre_determined_branch_name: str | None = None
    keep_alive: bool = False
    on_progress: Callable[[int, str], Awaitable[None] | None] | None = None


class SandboxResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    cancelled: bool = False
    error: str | None = None
    sandbox: Sandbox | None = None
    domain: str | None = None
    branch_name: str | None = None

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view, with the handle reduced to its id."""
        data = self.model_dump(exclude={"sandbox"}, exclude_none=True)
        if self.sandbox is not None:
            data["sandbox_id"] = self.sandbox.sandbox_id
        return data


class SandboxProvider(Protocol):
    async def create(self, config: SandboxConfig) -> Sandbox: ...


@dataclasses.dataclass
class CreationWorkflowState:
    """Per-run scratch state. Never shared between runs."""

    sandbox: Sandbox | None = None
    package_json_detected: bool = False
    requirements_txt_detected: bool = False
    package_manager: PackageManager | None = None
    dev_port: int = DEFAULT_DEV_PORT
    domain: str | None = None
    authenticated_repo_url: SecretStr = dataclasses.field(
        default_factory=lambda: SecretStr("")
    )
    timeout_ms: int = 0
    ports: list[int] = dataclasses.field(default_factory=list)


# --- Workflow ---


class SandboxCreationWorkflow:
    def __init__(
        self,
        config: TaskSandboxConfig,
        logger: TaskLogger,
        *,
        runtime: SandboxProvider,
        registry: SandboxRegistry,
        cancellation: CancellationToken | None = None,
        warmup_seconds: float = DEV_SERVER_WARMUP_SECONDS,
    ) -> None:
        self.config = config
        self.logger = logger
        self.runtime = runtime
        self.registry = registry
        self.cancellation = cancellation or CancellationToken()
        self.warmup_seconds = warmup_seconds
        self.state = CreationWorkflowState()

    async def run(self) -> SandboxResult:
        await self.info("Processing repository URL")
        await self.check_cancellation(CancellationStage.BEFORE_SANDBOX_CREATION)
        await self.validate_environment()
        await self.create_sandbox_instance()
        await self.check_cancellation(CancellationStage.AFTER_SANDBOX_CREATION)
        await self.clone_repository()
        await self.detect_project_files()
        await self.install_dependencies_if_requested()
        await self.check_cancellation(CancellationStage.AFTER_DEPENDENCY_INSTALLATION)
        await self.maybe_start_dev_server()
        sandbox = self.sandbox
        if self.state.domain is None:
            self.state.domain = sandbox.domain(self.state.dev_port)
        await self.log_project_readiness()
        await self.check_cancellation(CancellationStage.BEFORE_GIT_CONFIGURATION)
        await self.configure_git()
        branch_name = await self.prepare_branch()

        return SandboxResult(
            success=True,
            sandbox=sandbox,
            domain=self.state.domain,
            branch_name=branch_name,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @property
    def sandbox(self) -> Sandbox:
        if self.state.sandbox is None:
            raise WorkflowError("Sandbox is not initialized")
        return self.state.sandbox

    async def info(self, message: str) -> None:
        await log_quietly(self.logger, "info", message)

    async def error(self, message: str) -> None:
        await log_quietly(self.logger, "error", message)

    async def set_progress(self, value: int, message: str) -> None:
        callback = self.config.on_progress
        if callback is None:
            return
        try:
            result = callback(value, message)
            if inspect.isawaitable(result):
                await result
        except Exception as error:
            log_event(
                component="workflow",
                event="progress.failed",
                level="warning",
                message=str(error),
            )

    async def check_cancellation(self, stage: CancellationStage) -> None:
        if await self.cancellation.is_cancelled():
            await self.info(CANCELLATION_MESSAGES[stage])
            log_event(
                component="workflow",
                event="workflow.cancelled",
                message=CANCELLATION_MESSAGES[stage],
                stage=stage.value,
            )
            raise WorkflowCancelledError(stage)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def validate_environment(self) -> None:
        await self.set_progress(20, "Validating environment variables...")
        validation = validate_environment_variables(
            self.config.selected_agent,
            self.config.github_token,
            self.config.api_keys,
        )
        if not validation.valid:
            raise WorkflowError(validation.error or "Invalid sandbox configuration")
        await self.info("Environment variables validated")

        self.state.authenticated_repo_url = create_authenticated_repo_url(
            self.config.repo_url, self.config.github_token
        )
        await self.info("Added GitHub authentication to repository URL")

        self.state.timeout_ms = parse_timeout_ms(self.config.timeout)
        self.state.ports = resolve_ports(self.config.ports)

    async def create_sandbox_instance(self) -> None:
        await self.set_progress(25, "Validating configuration...")
        sandbox_config = SandboxConfig(
            timeout_ms=self.state.timeout_ms,
            ports=self.state.ports,
            vcpus=self.config.vcpus or DEFAULT_VCPUS,
            runtime=self.config.runtime,
            task_id=self.config.task_id,
        )
        try:
            sandbox = await self.runtime.create(sandbox_config)
        except Exception as error:
            raise await self.creation_failure(error) from error

        self.state.sandbox = sandbox
        self.registry.register(self.config.task_id, sandbox, self.config.keep_alive)
        update_log_context(sandbox_id=sandbox.sandbox_id)
        await self.info("Sandbox created successfully")

    async def creation_failure(self, error: Exception) -> WorkflowError:
        if is_timeout_error(error):
            await self.error("Sandbox creation timed out")
            await self.error(
                "This usually happens when the repository is large or has many dependencies"
            )
            return WorkflowError(TIMEOUT_MESSAGE)
        await self.error("Sandbox creation failed")
        return WorkflowError(str(error) or "Failed to create sandbox")

    async def clone_repository(self) -> None:
        sandbox = self.sandbox
        await self.info("Cloning repository to project directory...")

        mkdir = await run_in_sandbox(sandbox, "mkdir", ["-p", PROJECT_DIR])
        if not mkdir.success:
            raise WorkflowError("Failed to create project directory")

        clone = await run_in_sandbox(
            sandbox,
            "git",
            [
                "clone",
                "--depth",
                "1",
                self.state.authenticated_repo_url.get_secret_value(),
                PROJECT_DIR,
            ],
        )
        if not clone.success:
            await self.error("Failed to clone repository")
            if clone.error.strip():
                await self.error(
                    truncate_text(redact_sensitive_info(clone.error.strip()), 1000)
                )
            raise WorkflowError("Failed to clone repository to project directory")

        await self.info("Repository cloned successfully")
        await self.set_progress(30, "Repository cloned, installing dependencies...")

    async def detect_project_files(self) -> None:
        sandbox = self.sandbox
        package_json = await run_in_project(sandbox, "test", ["-f", "package.json"])
        requirements = await run_in_project(sandbox, "test", ["-f", "requirements.txt"])
        self.state.package_json_detected = package_json.success
        self.state.requirements_txt_detected = requirements.success

    async def install_dependencies_if_requested(self) -> None:
        if not self.config.install_dependencies:
            await self.info("Skipping dependency installation as requested by user")
            return

        await self.info("Detecting project type and installing dependencies...")
        if self.state.package_json_detected:
            await self.install_node_dependencies()
        elif self.state.requirements_txt_detected:
            await self.install_python_dependencies()
        else:
            await self.info(
                "No package.json or requirements.txt found, skipping dependency installation"
            )

    async def install_node_dependencies(self) -> None:
        sandbox = self.sandbox
        await self.info("package.json found, installing Node.js dependencies...")

        detected = await detect_package_manager(sandbox, self.logger)
        manager: PackageManager = detected
        if detected in ("pnpm", "yarn"):
            if not await ensure_global_tool(sandbox, detected, self.logger):
                manager = "npm"
                await self.error(
                    f"Failed to install {detected} globally; detected {detected} "
                    f"from its lockfile but installing with npm instead"
                )
        self.state.package_manager = manager

        await self.set_progress(35, "Installing Node.js dependencies...")
        result = await install_dependencies(sandbox, manager, self.logger)
        if result.success:
            return

        if manager != "npm":
            await self.info("Package manager failed, trying npm as fallback")
            await self.set_progress(37, f"{manager} failed, trying npm fallback...")
            fallback = await install_dependencies(sandbox, "npm", self.logger)
            if fallback.success:
                return

        await self.info(
            "Warning: Failed to install Node.js dependencies, but continuing with sandbox setup"
        )

    async def install_python_dependencies(self) -> None:
        sandbox = self.sandbox
        await self.info("requirements.txt found, installing Python dependencies...")
        await self.set_progress(35, "Installing Python dependencies...")

        await self.ensure_pip_available()

        pip_install = await run_in_project(
            sandbox, "python3", ["-m", "pip", "install", "-r", "requirements.txt"]
        )
        if pip_install.success:
            await self.info("Python dependencies installed successfully")
            return
        await self.info("pip install failed")
        await self.info(
            "Warning: Failed to install Python dependencies, but continuing with sandbox setup"
        )

    async def ensure_pip_available(self) -> None:
        sandbox = self.sandbox
        pip_check = await run_in_project(sandbox, "python3", ["-m", "pip", "--version"])
        if pip_check.success:
            await self.info("pip is available")
            upgrade = await run_in_project(
                sandbox, "python3", ["-m", "pip", "install", "--upgrade", "pip"]
            )
            if upgrade.success:
                await self.info("pip upgraded successfully")
            else:
                await self.info("Warning: Failed to upgrade pip, continuing anyway")
            return

        await self.info("pip not found, installing pip...")
        get_pip = await run_in_sandbox(sandbox, "sh", ["-c", GET_PIP_COMMAND])
        if get_pip.success:
            await self.info("pip installed successfully")
            return

        await self.info("Failed to install pip, trying alternative method...")
        apt = await run_in_sandbox(sandbox, "sh", ["-c", APT_PIP_COMMAND])
        if apt.success:
            await self.info("pip installed via apt-get")
        else:
            await self.info("Warning: Could not install pip, skipping Python dependencies")

    async def maybe_start_dev_server(self) -> None:
        if not self.state.package_json_detected or not self.config.install_dependencies:
            return

        sandbox = self.sandbox
        package_json = await read_package_json(sandbox)
        if package_json is None:
            await self.info("Could not parse package.json, skipping auto-start of dev server")
            return
        if not package_json.has_dev_script:
            return

        manager = self.state.package_manager or await detect_package_manager(
            sandbox, self.logger
        )
        try:
            port = await start_dev_server(
                sandbox,
                package_json,
                manager,
                self.logger,
                warmup_seconds=self.warmup_seconds,
            )
        except SandboxError as error:
            await self.error(f"Failed to start development server: {error}")
            return
        if port is None:
            return
        self.state.dev_port = port
        self.state.domain = sandbox.domain(port)
        await self.info("Development server is running")

    async def log_project_readiness(self) -> None:
        sandbox = self.sandbox
        if self.state.package_json_detected:
            await self.info("Node.js project detected, sandbox ready for development")
            await self.info("Sandbox available")
            return

        if self.state.requirements_txt_detected:
            await self.info("Python project detected, sandbox ready for development")
            await self.info("Sandbox available")
            flask_app = await run_in_project(sandbox, "test", ["-f", "app.py"])
            if flask_app.success:
                await self.info("Flask app.py detected, you can run: python3 app.py")
                return
            django_manage = await run_in_project(sandbox, "test", ["-f", "manage.py"])
            if django_manage.success:
                await self.info(
                    "Django manage.py detected, you can run: python3 manage.py runserver"
                )
            return

        await self.info("Project type not detected, sandbox ready for general development")
        await self.info("Sandbox available")

    async def configure_git(self) -> None:
        await self.set_git_author()
        await self.ensure_git_repository()

    async def set_git_author(self) -> None:
        sandbox = self.sandbox
        name = self.config.git_author_name or DEFAULT_GIT_AUTHOR_NAME
        email = self.config.git_author_email or DEFAULT_GIT_AUTHOR_EMAIL
        _ = await run_in_project(sandbox, "git", ["config", "user.name", name])
        _ = await run_in_project(sandbox, "git", ["config", "user.email", email])

    async def ensure_git_repository(self) -> None:
        sandbox = self.sandbox
        repo_check = await run_in_project(sandbox, "git", ["rev-parse", "--git-dir"])
        if repo_check.success:
            await self.info("Git repository detected")
            return

        await self.info("Not in a Git repository, initializing...")
        if not (await run_in_project(sandbox, "git", ["init"])).success:
            raise WorkflowError("Failed to initialize Git repository")
        await self.info("Git repository initialized")

        title = f"# {repo_name_from_url(self.config.repo_url)}"
        readme = await run_in_project(
            sandbox, "sh", ["-c", f"printf '%s\\n' {quote_arg(title)} > README.md"]
        )
        if not readme.success:
            raise WorkflowError("Failed to create initial README")

        steps = (
            (["checkout", "-b", "main"], "Failed to create main branch"),
            (["add", "README.md"], "Failed to add README to git"),
            (["commit", "-m", "Initial commit"], "Failed to commit initial README"),
        )
        for args, failure in steps:
            if not (await run_in_project(sandbox, "git", args)).success:
                raise WorkflowError(failure)
        await self.info("Created initial commit on main branch")

        push = await run_in_project(sandbox, "git", ["push", "-u", "origin", "main"])
        if push.success:
            await self.info("Pushed main branch to origin")
        else:
            await self.info("Failed to push main branch to origin")

    async def prepare_branch(self) -> str:
        branch_name = self.config.pre_determined_branch_name
        if branch_name:
            await self.handle_predetermined_branch(branch_name)
            return branch_name
        return await self.create_fallback_branch()

    async def handle_predetermined_branch(self, branch_name: str) -> None:
        sandbox = self.sandbox
        await self.info("Using pre-determined branch name")

        local = await run_in_project(
            sandbox, "git", ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"]
        )
        if local.success:
            await self.info("Branch already exists locally, checking it out")
            await self.checkout_branch(branch_name)
            return

        remote = await run_in_project(
            sandbox, "git", ["ls-remote", "--heads", "origin", branch_name]
        )
        if remote.success and remote.output.strip():
            await self.info("Branch exists on remote, fetching and checking it out")
            await self.ensure_branch_from_remote(branch_name)
            await self.checkout_branch(branch_name)
            return

        await self.info("Creating new branch")
        await self.checkout_new_branch(branch_name)

    async def ensure_branch_from_remote(self, branch_name: str) -> None:
        sandbox = self.sandbox
        fetch = await run_in_project(
            sandbox, "git", ["fetch", "origin", f"{branch_name}:{branch_name}"]
        )
        if fetch.success:
            return

        await self.info("Failed to fetch remote branch, trying alternative method")
        if not (await run_in_project(sandbox, "git", ["fetch", "origin"])).success:
            raise WorkflowError("Failed to fetch from remote Git repository")
        track = await run_in_project(
            sandbox, "git", ["branch", branch_name, f"origin/{branch_name}"]
        )
        if not track.success:
            raise WorkflowError("Failed to prepare tracking branch")

    async def checkout_branch(self, branch_name: str) -> None:
        checkout = await run_and_log_command(
            self.sandbox, "git", ["checkout", branch_name], self.logger, PROJECT_DIR
        )
        if not checkout.success:
            raise WorkflowError("Failed to checkout Git branch")

    async def checkout_new_branch(self, branch_name: str) -> None:
        create = await run_and_log_command(
            self.sandbox, "git", ["checkout", "-b", branch_name], self.logger, PROJECT_DIR
        )
        if not create.success:
            raise WorkflowError("Failed to create Git branch")
        await self.info("Successfully created branch")

    async def create_fallback_branch(self) -> str:
        timestamp = datetime.now(UTC).strftime("%Y-%m-%dT%H-%M-%S")
        branch_name = f"agent/{timestamp}-{generate_id()}"
        await self.info("No predetermined branch name, using timestamp-based branch")
        await self.checkout_new_branch(branch_name)
        await self.info("Successfully created fallback branch")
        return branch_name


async def create_sandbox_for_task(
    config: TaskSandboxConfig,
    logger: TaskLogger | None = None,
    *,
    runtime: SandboxProvider | None = None,
    registry: SandboxRegistry | None = None,
    cancellation: CancellationToken | CancellationCheck | None = None,
    warmup_seconds: float = DEV_SERVER_WARMUP_SECONDS,
) -> SandboxResult:
    """Run the creation workflow; never raises.

    The registry receives the sandbox as soon as it exists, so a caller
    handling a cancelled or failed result can still find and stop it.
    """
    task_logger: TaskLogger = logger or EventTaskLogger(config.task_id)
    if runtime is None:
        runtime = DockerRuntime()
    if registry is None:
        registry = SandboxRegistry(runtime if isinstance(runtime, DockerRuntime) else None)
    if isinstance(cancellation, CancellationToken):
        token = cancellation
    else:
        token = CancellationToken(cancellation)

    workflow = SandboxCreationWorkflow(
        config,
        task_logger,
        runtime=runtime,
        registry=registry,
        cancellation=token,
        warmup_seconds=warmup_seconds,
    )
    with log_context(task_id=config.task_id):
        try:
            result = await workflow.run()
        except WorkflowCancelledError:
            return SandboxResult(success=False, cancelled=True)
        except Exception as error:
            log_event(
                component="workflow",
                event="workflow.failed",
                level="error",
                message=str(error),
                error_type=type(error).__name__,
            )
            await log_quietly(task_logger, "error", "Error occurred during sandbox creation")
            return SandboxResult(
                success=False,
                error=redact_sensitive_info(str(error)) or "Failed to create sandbox",
            )
        log_event(
            component="workflow",
            event="workflow.completed",
            message="Sandbox ready",
            domain=result.domain,
            branch_name=result.branch_name,
        )
        return result
