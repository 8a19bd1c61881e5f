"""Run a command in a sandbox and normalize the result.

Stage code never looks at CommandResult directly: these helpers return a
CommandOutcome carrying the exit code and both output streams, and turn
sandbox-level failures (container gone, not initialized) into a failed
outcome instead of an exception.
"""

from __future__ import annotations

from pydantic import BaseModel

from taskbox.sandbox.base import CommandRequest, Sandbox, SandboxError
from taskbox.sandbox.process import quote_arg
from taskbox.task_logger import TaskLogger, log_quietly
from taskbox.utils.helpers import redact_sensitive_info

PROJECT_DIR = "/workspace/project"


class CommandOutcome(BaseModel):
    success: bool
    exit_code: int
    output: str = ""
    error: str = ""
    command: str = ""


def format_command(cmd: str, args: list[str] | None = None) -> str:
    if not args:
        return cmd
    return f"{cmd} {' '.join(quote_arg(arg) for arg in args)}"


async def run_request(sandbox: Sandbox, request: CommandRequest) -> CommandOutcome:
    command = format_command(request.cmd, request.args)
    try:
        result = await sandbox.run_command(request)
    except SandboxError as error:
        return CommandOutcome(
            success=False, exit_code=1, error=str(error), command=command
        )
    return CommandOutcome(
        success=result.success,
        exit_code=result.exit_code,
        output=result.stdout(),
        error=result.stderr(),
        command=command,
    )


async def run_in_sandbox(
    sandbox: Sandbox, cmd: str, args: list[str] | None = None
) -> CommandOutcome:
    return await run_request(sandbox, CommandRequest(cmd=cmd, args=list(args or [])))


async def run_in_project(
    sandbox: Sandbox, cmd: str, args: list[str] | None = None
) -> CommandOutcome:
    """Run cmd with the cloned project as working directory."""
    return await run_request(
        sandbox, CommandRequest(cmd=cmd, args=list(args or []), cwd=PROJECT_DIR)
    )


async def run_and_log_command(
    sandbox: Sandbox,
    cmd: str,
    args: list[str],
    logger: TaskLogger | None,
    cwd: str | None = None,
) -> CommandOutcome:
    """Run a command, logging its redacted text, output and error."""
    await log_quietly(logger, "command", redact_sensitive_info(format_command(cmd, args)))

    request = CommandRequest(cmd=cmd, args=list(args), cwd=cwd)
    outcome = await run_request(sandbox, request)

    if outcome.output.strip():
        await log_quietly(logger, "info", redact_sensitive_info(outcome.output.strip()))
    if not outcome.success and outcome.error:
        await log_quietly(logger, "error", redact_sensitive_info(outcome.error))
    return outcome
