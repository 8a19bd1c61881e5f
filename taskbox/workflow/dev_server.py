"""Dev-server launch and restart for Node projects.

The command is `npm run dev` (or `pnpm dev` / `yarn dev`) with two special
cases: Vite projects get a sandbox override config that binds 0.0.0.0 and
accepts any Host header, and Next.js 16 projects get `--webpack`. Servers
always run detached; only the presence of output is logged, never the
output itself.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskbox.config import DEV_SERVER_WARMUP_SECONDS
from taskbox.sandbox.base import CommandRequest, OutputSink, Sandbox
from taskbox.task_logger import TaskLogger, log_quietly
from taskbox.utils.helpers import has_visible_content
from taskbox.workflow.commands import PROJECT_DIR, run_in_project, run_in_sandbox
from taskbox.workflow.package_manager import detect_package_manager

VITE_PORT = 5173
DEFAULT_DEV_PORT = 3000
VITE_OVERRIDE_FILE = "vite.sandbox.config.js"
GLOBAL_GITIGNORE = "~/.gitignore_global"
NEXT16_PREFIXES = ("16.", "^16.", "~16.")
RESTART_SETTLE_SECONDS = 1.0

VITE_OVERRIDE_SOURCE = """\
import fs from "node:fs"
import path from "node:path"
import { defineConfig, loadConfigFromFile, mergeConfig } from "vite"

const USER_CONFIG_FILES = [
  "vite.config.ts",
  "vite.config.mts",
  "vite.config.cts",
  "vite.config.js",
  "vite.config.mjs",
  "vite.config.cjs",
]

export default defineConfig(async (env) => {
  const root = process.cwd()
  const userFile = USER_CONFIG_FILES.find((name) => fs.existsSync(path.join(root, name)))
  const loaded = userFile ? await loadConfigFromFile(env, path.join(root, userFile), root) : null
  return mergeConfig(loaded?.config ?? {}, {
    server: {
      host: "0.0.0.0",
      strictPort: false,
      allowedHosts: true,
    },
  })
})
"""


class DevServerError(RuntimeError):
    """The project cannot run a dev server (no package.json or dev script)."""


class PackageJson(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    scripts: dict[str, str] = Field(default_factory=dict)
    dependencies: dict[str, str] = Field(default_factory=dict)
    dev_dependencies: dict[str, str] = Field(
        default_factory=dict, alias="devDependencies"
    )

    def dependency_version(self, name: str) -> str | None:
        return self.dependencies.get(name) or self.dev_dependencies.get(name)

    @property
    def has_dev_script(self) -> bool:
        return bool(self.scripts.get("dev"))


@dataclasses.dataclass(frozen=True, slots=True)
class DevEnvironment:
    dev_port: int
    has_vite: bool


@dataclasses.dataclass(frozen=True, slots=True)
class DevCommandConfig:
    command: str
    args: list[str]

    @property
    def full_command(self) -> str:
        return " ".join([self.command, *self.args])


def parse_package_json(text: str) -> PackageJson | None:
    try:
        return PackageJson.model_validate(json.loads(text))
    except (ValueError, ValidationError):
        return None


async def read_package_json(sandbox: Sandbox) -> PackageJson | None:
    read = await run_in_project(sandbox, "cat", ["package.json"])
    if not read.success or not read.output.strip():
        return None
    return parse_package_json(read.output)


def determine_dev_environment(package_json: PackageJson) -> DevEnvironment:
    has_vite = package_json.dependency_version("vite") is not None
    return DevEnvironment(
        dev_port=VITE_PORT if has_vite else DEFAULT_DEV_PORT, has_vite=has_vite
    )


def is_next16_project(package_json: PackageJson) -> bool:
    version = package_json.dependency_version("next") or ""
    return version.startswith(NEXT16_PREFIXES)


async def configure_vite_sandbox_overrides(
    sandbox: Sandbox, logger: TaskLogger | None = None
) -> None:
    """Write the override config and keep it out of the user's git status."""
    _ = await run_in_project(
        sandbox,
        "sh",
        ["-c", f"cat > {VITE_OVERRIDE_FILE} << 'VITEEOF'\n{VITE_OVERRIDE_SOURCE}VITEEOF"],
    )
    _ = await run_in_sandbox(
        sandbox,
        "sh",
        [
            "-c",
            f'grep -q "{VITE_OVERRIDE_FILE}" {GLOBAL_GITIGNORE} 2>/dev/null '
            f'|| echo "{VITE_OVERRIDE_FILE}" >> {GLOBAL_GITIGNORE}',
        ],
    )
    _ = await run_in_project(
        sandbox, "git", ["config", "core.excludesfile", GLOBAL_GITIGNORE]
    )
    await log_quietly(logger, "info", "Configured Vite sandbox overrides")


async def build_dev_command_config(
    *,
    package_manager: str,
    package_json: PackageJson,
    sandbox: Sandbox,
    has_vite: bool,
    logger: TaskLogger | None = None,
) -> DevCommandConfig:
    is_npm = package_manager == "npm"
    args = ["run", "dev"] if is_npm else ["dev"]

    if has_vite:
        await log_quietly(logger, "info", f"Vite project detected, using port {VITE_PORT}")
        await configure_vite_sandbox_overrides(sandbox, logger)
        extra = ["--config", VITE_OVERRIDE_FILE, "--host", "0.0.0.0"]
        args = ["run", "dev", "--", *extra] if is_npm else ["dev", *extra]

    if is_next16_project(package_json):
        await log_quietly(logger, "info", "Next.js 16 detected, adding --webpack flag")
        args = ["run", "dev", "--", "--webpack"] if is_npm else ["dev", "--webpack"]

    return DevCommandConfig(command=package_manager, args=args)


def create_server_log_sinks(
    logger: TaskLogger | None,
) -> tuple[OutputSink, OutputSink]:
    async def sink(chunk: str) -> None:
        if has_visible_content(chunk):
            await log_quietly(logger, "info", "Development server log entry received")

    return sink, sink


async def terminate_process_on_port(sandbox: Sandbox, port: int) -> None:
    _ = await run_in_sandbox(
        sandbox,
        "sh",
        ["-c", f"lsof -ti:{port} | xargs -r kill -9 2>/dev/null || true"],
    )


async def launch_dev_server(
    sandbox: Sandbox, config: DevCommandConfig, logger: TaskLogger | None = None
) -> None:
    """Start the dev command detached inside the project directory.

    Raises DetachedCommandError if it dies within the grace window.
    """
    stdout, stderr = create_server_log_sinks(logger)
    _ = await sandbox.run_command(
        CommandRequest(
            cmd="sh",
            args=["-c", f"cd {PROJECT_DIR} && {config.full_command}"],
            detached=True,
            stdout=stdout,
            stderr=stderr,
        )
    )


async def start_dev_server(
    sandbox: Sandbox,
    package_json: PackageJson,
    package_manager: str,
    logger: TaskLogger | None = None,
    *,
    warmup_seconds: float = DEV_SERVER_WARMUP_SECONDS,
) -> int | None:
    """Launch the dev script and return its port, or None if there is none."""
    if not package_json.has_dev_script:
        return None
    env = determine_dev_environment(package_json)
    config = await build_dev_command_config(
        package_manager=package_manager,
        package_json=package_json,
        sandbox=sandbox,
        has_vite=env.has_vite,
        logger=logger,
    )
    await log_quietly(logger, "info", "Dev script detected, starting development server...")
    await launch_dev_server(sandbox, config, logger)
    await log_quietly(logger, "info", "Development server started")
    if warmup_seconds > 0:
        await asyncio.sleep(warmup_seconds)
    return env.dev_port


async def restart_dev_server(
    sandbox: Sandbox,
    logger: TaskLogger | None = None,
    *,
    package_json: PackageJson | None = None,
    settle_seconds: float = RESTART_SETTLE_SECONDS,
) -> int:
    """Kill whatever holds the dev port and start the dev script again.

    Returns the dev port. Raises DevServerError when the project has no
    readable package.json or no dev script.
    """
    if package_json is None:
        check = await run_in_project(sandbox, "test", ["-f", "package.json"])
        if not check.success:
            raise DevServerError("No package.json found in sandbox")
        package_json = await read_package_json(sandbox)
        if package_json is None:
            raise DevServerError("Could not read package.json")
    if not package_json.has_dev_script:
        raise DevServerError("No dev script found in package.json")

    env = determine_dev_environment(package_json)
    await terminate_process_on_port(sandbox, env.dev_port)
    if settle_seconds > 0:
        await asyncio.sleep(settle_seconds)

    package_manager = await detect_package_manager(sandbox, logger)
    config = await build_dev_command_config(
        package_manager=package_manager,
        package_json=package_json,
        sandbox=sandbox,
        has_vite=env.has_vite,
        logger=logger,
    )
    await launch_dev_server(sandbox, config, logger)
    await log_quietly(logger, "info", "Development server restarted")
    return env.dev_port
