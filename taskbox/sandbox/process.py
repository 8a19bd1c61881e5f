"""Process runner: turn a CommandRequest into a `docker exec` subprocess.

Two quoting regimes exist and must stay separate. Without a working
directory the command and its arguments go to `docker exec` as an argv
vector, no shell involved. With a working directory everything is joined
into one `cd <dir> && <cmd> <args>` string for `sh -c`; the directory and
each argument are single-quoted by quote_arg() so paths, commit messages
and refs survive. The command itself stays a shell word.

Foreground commands are awaited to exit. Detached commands (dev servers)
return once they have survived DETACHED_GRACE_SECONDS; a nonzero exit
inside that window raises DetachedCommandError instead. Nothing here is
retried.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import dataclasses
import inspect
import time

from taskbox.config import DETACHED_GRACE_SECONDS, DOCKER_BINARY
from taskbox.logging import log_event
from taskbox.sandbox.base import (
    CommandRequest,
    CommandResult,
    DetachedCommandError,
    OutputSink,
)

READ_CHUNK_SIZE = 4096
SINGLE_QUOTE_ESCAPE = "'\\''"


def quote_arg(arg: str) -> str:
    """Single-quote for POSIX sh: ' becomes '\\'' inside the quotes."""
    return "'" + arg.replace("'", SINGLE_QUOTE_ESCAPE) + "'"


def build_shell_command(cmd: str, args: list[str], cwd: str) -> str:
    # cmd stays a shell word so callers can pass `npm run` style commands.
    pieces = [cmd, *(quote_arg(arg) for arg in args)]
    return f"cd {quote_arg(cwd)} && {' '.join(pieces)}"


def build_exec_args(container: str, request: CommandRequest) -> list[str]:
    """Arguments for `docker exec` (without the binary itself)."""
    args: list[str] = ["exec"]
    if not request.detached:
        args.append("-i")
    if request.sudo:
        args.extend(["--user", "root"])
    for key, value in request.env.items():
        args.extend(["-e", f"{key}={value}"])
    args.append(container)
    if request.cwd:
        args.extend(
            ["sh", "-c", build_shell_command(request.cmd, request.args, request.cwd)]
        )
    else:
        args.append(request.cmd)
        args.extend(request.args)
    return args


async def emit_chunk(sink: OutputSink | None, chunk: str) -> None:
    if sink is None or not chunk:
        return
    try:
        result = sink(chunk)
        if inspect.isawaitable(result):
            await result
    except Exception as error:
        log_event(
            component="process",
            event="sink.failed",
            level="warning",
            message=str(error),
        )


async def drain_stream(
    stream: asyncio.StreamReader | None,
    chunks: list[str],
    sink: OutputSink | None,
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            break
        text = decoder.decode(data)
        if text:
            chunks.append(text)
            await emit_chunk(sink, text)
    tail = decoder.decode(b"", final=True)
    if tail:
        chunks.append(tail)
        await emit_chunk(sink, tail)


async def kill_process(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    _ = await proc.wait()


async def run_process(
    argv: list[str],
    *,
    stdout_sink: OutputSink | None = None,
    stderr_sink: OutputSink | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run argv to completion, capturing output while forwarding chunks.

    Launch failures become a nonzero result with the OS error as stderr.
    Raises TimeoutError (after killing the child) when timeout expires.
    """
    t0 = time.monotonic()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as error:
        return CommandResult(
            exit_code=1,
            captured_stderr=str(error),
            duration_ms=int((time.monotonic() - t0) * 1000),
        )

    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []

    async def communicate() -> int:
        await asyncio.gather(
            drain_stream(proc.stdout, stdout_chunks, stdout_sink),
            drain_stream(proc.stderr, stderr_chunks, stderr_sink),
        )
        return await proc.wait()

    try:
        if timeout is None:
            exit_code = await communicate()
        else:
            exit_code = await asyncio.wait_for(communicate(), timeout)
    except TimeoutError:
        await kill_process(proc)
        raise

    return CommandResult(
        exit_code=exit_code,
        captured_stdout="".join(stdout_chunks),
        captured_stderr="".join(stderr_chunks),
        duration_ms=int((time.monotonic() - t0) * 1000),
    )


@dataclasses.dataclass(eq=False)
class DetachedProcess:
    """A long-running child whose output keeps draining into its sinks."""

    proc: asyncio.subprocess.Process
    drain_task: asyncio.Task[None]
    stdout_chunks: list[str]
    stderr_chunks: list[str]

    @property
    def running(self) -> bool:
        return self.proc.returncode is None

    async def terminate(self) -> None:
        await kill_process(self.proc)
        if not self.drain_task.done():
            self.drain_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self.drain_task


async def start_detached(
    argv: list[str],
    *,
    stdout_sink: OutputSink | None = None,
    stderr_sink: OutputSink | None = None,
    grace_seconds: float = DETACHED_GRACE_SECONDS,
) -> DetachedProcess:
    """Spawn argv and return once it has survived the grace window."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as error:
        raise DetachedCommandError(
            f"Failed to start detached command: {error}"
        ) from error

    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []

    async def drain_both() -> None:
        await asyncio.gather(
            drain_stream(proc.stdout, stdout_chunks, stdout_sink),
            drain_stream(proc.stderr, stderr_chunks, stderr_sink),
        )

    detached = DetachedProcess(
        proc=proc,
        drain_task=asyncio.create_task(drain_both()),
        stdout_chunks=stdout_chunks,
        stderr_chunks=stderr_chunks,
    )
    try:
        exit_code = await asyncio.wait_for(proc.wait(), grace_seconds)
    except TimeoutError:
        return detached

    if exit_code != 0:
        with contextlib.suppress(Exception):
            await asyncio.wait_for(detached.drain_task, 1.0)
        stderr = "".join(stderr_chunks).strip()
        message = f"Detached command exited with code {exit_code}"
        if stderr:
            message += f": {stderr[:500]}"
        raise DetachedCommandError(message, exit_code=exit_code)
    return detached


class ProcessRunner:
    """Runs CommandRequests against containers through the docker CLI.

    Tracks the detached processes started per container so the owning
    sandbox can terminate them when it stops.
    """

    def __init__(
        self,
        docker_binary: str = DOCKER_BINARY,
        *,
        detached_grace_seconds: float = DETACHED_GRACE_SECONDS,
    ) -> None:
        self.docker_binary = docker_binary
        self.detached_grace_seconds = detached_grace_seconds
        self._detached: dict[str, list[DetachedProcess]] = {}

    def exec_argv(self, container: str, request: CommandRequest) -> list[str]:
        return [self.docker_binary, *build_exec_args(container, request)]

    async def run(self, container: str, request: CommandRequest) -> CommandResult:
        argv = self.exec_argv(container, request)
        if not request.detached:
            return await run_process(
                argv,
                stdout_sink=request.stdout,
                stderr_sink=request.stderr,
            )

        t0 = time.monotonic()
        detached = await start_detached(
            argv,
            stdout_sink=request.stdout,
            stderr_sink=request.stderr,
            grace_seconds=self.detached_grace_seconds,
        )
        if detached.running:
            alive = self.detached_processes(container)
            self._detached[container] = [*alive, detached]
        return CommandResult(
            exit_code=0,
            duration_ms=int((time.monotonic() - t0) * 1000),
            detached=True,
        )

    def detached_processes(self, container: str) -> list[DetachedProcess]:
        return [p for p in self._detached.get(container, []) if p.running]

    async def terminate_detached(self, container: str) -> None:
        for detached in self._detached.pop(container, []):
            await detached.terminate()
