from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# taskbox modules read their settings at import; import them after load_dotenv().


def print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taskbox")
    subparsers = parser.add_subparsers(dest="command")

    create_parser = subparsers.add_parser(
        "create", help="Provision a sandbox for a repository"
    )
    create_parser.add_argument("repo_url")
    create_parser.add_argument("--task-id", default=None)
    create_parser.add_argument("--agent", default="claude")
    create_parser.add_argument("--branch", default=None, help="Predetermined branch name")
    create_parser.add_argument("--no-install", action="store_true")
    create_parser.add_argument("--duration", default=None, help='Lifetime, e.g. "45 minutes"')
    create_parser.add_argument("--port", type=int, action="append", dest="ports")
    create_parser.add_argument("--vcpus", type=int, default=None)
    create_parser.add_argument("--keep-alive", action="store_true")
    create_parser.add_argument(
        "--github-token",
        default=None,
        help="Defaults to $GITHUB_TOKEN or $GH_TOKEN",
    )

    stop_parser = subparsers.add_parser("stop", help="Remove a sandbox and its volumes")
    stop_parser.add_argument("sandbox_id")

    health_parser = subparsers.add_parser("health", help="Probe a sandbox's dev server")
    health_parser.add_argument("sandbox_id")
    health_parser.add_argument("--url", default=None)

    restart_parser = subparsers.add_parser(
        "restart-dev", help="Restart the dev server inside a sandbox"
    )
    restart_parser.add_argument("sandbox_id")
    return parser


async def create_command(args: argparse.Namespace) -> int:
    from taskbox.sandbox import DockerRuntime, SandboxRegistry
    from taskbox.task_logger import EventTaskLogger
    from taskbox.utils.helpers import generate_id, tprint
    from taskbox.workflow.creation import TaskSandboxConfig, create_sandbox_for_task

    task_id = args.task_id or generate_id()
    github_token = (
        args.github_token
        or os.environ.get("GITHUB_TOKEN")
        or os.environ.get("GH_TOKEN")
    )
    config = TaskSandboxConfig(
        task_id=task_id,
        repo_url=args.repo_url,
        github_token=github_token,
        selected_agent=args.agent,
        install_dependencies=not args.no_install,
        timeout=args.duration,
        ports=args.ports,
        vcpus=args.vcpus,
        pre_determined_branch_name=args.branch,
        keep_alive=args.keep_alive,
        on_progress=lambda value, message: tprint(f"[{value:>3}%] {message}"),
    )
    runtime = DockerRuntime()
    result = await create_sandbox_for_task(
        config,
        EventTaskLogger(task_id, echo=True),
        runtime=runtime,
        registry=SandboxRegistry(runtime),
    )
    print_json({"task_id": task_id, **result.summary()})
    return 0 if result.success else 1


async def stop_command(args: argparse.Namespace) -> int:
    from taskbox.sandbox import DockerRuntime, SandboxNotFoundError

    runtime = DockerRuntime()
    try:
        sandbox = await runtime.get(args.sandbox_id)
    except SandboxNotFoundError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1
    await sandbox.stop()
    print(f"Stopped sandbox: {args.sandbox_id}")
    return 0


async def health_command(args: argparse.Namespace) -> int:
    from taskbox.health import check_sandbox_health
    from taskbox.sandbox import DockerRuntime, SandboxRegistry

    runtime = DockerRuntime()
    registry = SandboxRegistry(runtime)
    url = args.url
    if url is None:
        sandbox = await registry.get_or_reconnect(args.sandbox_id, args.sandbox_id)
        url = sandbox.domain() if sandbox is not None else None
    health = await check_sandbox_health(
        args.sandbox_id, args.sandbox_id, url, registry=registry
    )
    print_json(health.model_dump(exclude_none=True))
    return 0 if health.status == "running" else 1


async def restart_dev_command(args: argparse.Namespace) -> int:
    from taskbox.sandbox import DockerRuntime, SandboxNotFoundError
    from taskbox.task_logger import EventTaskLogger
    from taskbox.workflow.dev_server import DevServerError, restart_dev_server

    runtime = DockerRuntime()
    try:
        sandbox = await runtime.get(args.sandbox_id)
    except SandboxNotFoundError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1
    try:
        port = await restart_dev_server(sandbox, EventTaskLogger(args.sandbox_id, echo=True))
    except DevServerError as error:
        print(f"error: {error}", file=sys.stderr)
        return 1
    print(f"Dev server restarted: {sandbox.domain(port)}")
    return 0


COMMANDS = {
    "create": create_command,
    "stop": stop_command,
    "health": health_command,
    "restart-dev": restart_dev_command,
}


def main(argv: list[str] | None = None) -> None:
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)
    else:
        load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(COMMANDS[args.command](args)))


if __name__ == "__main__":
    main()
