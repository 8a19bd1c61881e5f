"""Dev-server health probe for a task's sandbox.

Maps one HTTP GET against the dev-server URL to a coarse status the UI can
poll: running, starting, stopped, error or not_available.
"""

from __future__ import annotations

from typing import Literal, TypeAlias

import httpx
from pydantic import BaseModel

from taskbox.logging import log_event
from taskbox.sandbox.base import SandboxError
from taskbox.sandbox.registry import SandboxRegistry

HEALTH_TIMEOUT_SECONDS = 5.0

HealthStatus: TypeAlias = Literal["running", "starting", "stopped", "error", "not_available"]


class SandboxHealth(BaseModel):
    status: HealthStatus
    message: str | None = None
    status_code: int | None = None


def interpret_dev_server_response(
    status_code: int, body: str, content_length: str | None = None
) -> SandboxHealth:
    if status_code == 200 and (content_length == "0" or not body):
        return SandboxHealth(status="starting", message="Dev server is starting up")
    if 200 <= status_code < 300 and body:
        return SandboxHealth(
            status="running", message="Sandbox and dev server are running"
        )
    if status_code in (410, 502):
        return SandboxHealth(status="stopped", message="Sandbox has stopped or expired")
    if status_code >= 500:
        return SandboxHealth(
            status="error",
            message="Dev server returned an error",
            status_code=status_code,
        )
    if status_code == 404:
        return SandboxHealth(status="starting", message="Dev server is starting up")
    return SandboxHealth(status="starting", message="Dev server is initializing")


async def probe_dev_server(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = HEALTH_TIMEOUT_SECONDS,
) -> SandboxHealth:
    try:
        if client is None:
            async with httpx.AsyncClient() as owned:
                response = await owned.get(url, timeout=timeout)
        else:
            response = await client.get(url, timeout=timeout)
    except httpx.TimeoutException:
        return SandboxHealth(
            status="starting", message="Dev server is starting or not responding"
        )
    except httpx.HTTPError as error:
        log_event(
            component="health",
            event="probe.failed",
            level="warning",
            message=str(error),
            url=url,
        )
        return SandboxHealth(status="stopped", message="Cannot connect to sandbox")

    return interpret_dev_server_response(
        response.status_code,
        response.text,
        response.headers.get("content-length"),
    )


async def check_sandbox_health(
    task_id: str,
    sandbox_id: str | None,
    sandbox_url: str | None,
    *,
    registry: SandboxRegistry,
    client: httpx.AsyncClient | None = None,
    timeout: float = HEALTH_TIMEOUT_SECONDS,
) -> SandboxHealth:
    """Reconnect to the task's sandbox, then probe its dev server."""
    if not sandbox_id or not sandbox_url:
        return SandboxHealth(status="not_available", message="Sandbox not created yet")

    try:
        sandbox = await registry.get_or_reconnect(task_id, sandbox_id)
    except SandboxError as error:
        log_event(
            component="health",
            event="reconnect.failed",
            level="warning",
            message=str(error),
            task_id=task_id,
            sandbox_id=sandbox_id,
        )
        return SandboxHealth(status="stopped", message="Sandbox no longer exists")
    if sandbox is None:
        return SandboxHealth(status="stopped", message="Sandbox has stopped or expired")

    return await probe_dev_server(sandbox_url, client=client, timeout=timeout)
