"""npm / pnpm / yarn selection for a cloned Node project.

Detection is by lockfile only: pnpm-lock.yaml wins, then yarn.lock, then
npm. ensure_global_tool() reports whether the chosen tool is usable so the
workflow can fall back to npm.
"""

from __future__ import annotations

from typing import Literal, TypeAlias

from taskbox.sandbox.base import Sandbox
from taskbox.task_logger import TaskLogger, log_quietly
from taskbox.utils.helpers import truncate_text
from taskbox.workflow.commands import CommandOutcome, run_in_project

PackageManager: TypeAlias = Literal["npm", "pnpm", "yarn"]

LOCKFILES: tuple[tuple[str, PackageManager], ...] = (
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
)

INSTALL_ARGS: dict[str, list[str]] = {
    "npm": ["install", "--no-audit", "--no-fund"],
    "pnpm": ["install"],
    "yarn": ["install"],
}


async def detect_package_manager(
    sandbox: Sandbox, logger: TaskLogger | None = None
) -> PackageManager:
    for lockfile, manager in LOCKFILES:
        check = await run_in_project(sandbox, "test", ["-f", lockfile])
        if check.success:
            await log_quietly(logger, "info", f"{lockfile} found, using {manager}")
            return manager
    await log_quietly(logger, "info", "No pnpm or yarn lockfile found, using npm")
    return "npm"


async def ensure_global_tool(
    sandbox: Sandbox, tool: str, logger: TaskLogger | None = None
) -> bool:
    """True if `tool` is on PATH, installing it with npm when missing."""
    check = await run_in_project(sandbox, "which", [tool])
    if check.success:
        return True

    await log_quietly(logger, "info", f"Installing {tool} globally")
    install = await run_in_project(sandbox, "npm", ["install", "-g", tool])
    if not install.success:
        return False
    await log_quietly(logger, "info", f"{tool} installed globally")
    return True


async def install_dependencies(
    sandbox: Sandbox, manager: str, logger: TaskLogger | None = None
) -> CommandOutcome:
    args = INSTALL_ARGS.get(manager, ["install"])
    await log_quietly(logger, "command", f"{manager} {' '.join(args)}")
    outcome = await run_in_project(sandbox, manager, args)
    if outcome.success:
        await log_quietly(logger, "info", f"Node.js dependencies installed with {manager}")
    else:
        detail = outcome.error.strip() or outcome.output.strip()
        await log_quietly(
            logger,
            "error",
            f"{manager} install failed (exit {outcome.exit_code})"
            + (f": {truncate_text(detail, 500)}" if detail else ""),
        )
    return outcome
