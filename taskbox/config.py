"""Runtime settings and per-task environment validation.

Settings are read from the process environment once at import time (the CLI
loads `.env` first). The validation helpers decide whether a task can be
provisioned for the chosen agent and build the credential-bearing clone URL,
which is returned as a SecretStr so it never lands in a log by accident.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel, SecretStr

DEFAULT_PORTS: tuple[int, ...] = (3000, 5173)

DOCKER_BINARY = os.environ.get("TASKBOX_DOCKER_BINARY", "docker")
SANDBOX_IMAGE = os.environ.get("TASKBOX_SANDBOX_IMAGE", "taskbox-sandbox:latest")
PUBLIC_HOST = os.environ.get("TASKBOX_PUBLIC_HOST", "localhost")
OLLAMA_HOST = os.environ.get(
    "OLLAMA_HOST", "http://host.docker.internal:11434"
)
DOCKER_TIMEOUT_SECONDS = max(
    1, int(os.environ.get("TASKBOX_DOCKER_TIMEOUT_SECONDS", "300"))
)
IMAGE_BUILD_TIMEOUT_SECONDS = max(
    1, int(os.environ.get("TASKBOX_IMAGE_BUILD_TIMEOUT_SECONDS", "1800"))
)
# Grace window for detached commands: a server that survives this long is
# reported as started. Real readiness is the health probe's job.
DETACHED_GRACE_SECONDS = float(
    os.environ.get("TASKBOX_DETACHED_GRACE_SECONDS", "0.5")
)
DEV_SERVER_WARMUP_SECONDS = float(
    os.environ.get("TASKBOX_DEV_SERVER_WARMUP_SECONDS", "3")
)
DEFAULT_GIT_AUTHOR_NAME = os.environ.get("TASKBOX_GIT_AUTHOR_NAME", "Coding Agent")
DEFAULT_GIT_AUTHOR_EMAIL = os.environ.get(
    "TASKBOX_GIT_AUTHOR_EMAIL", "agent@example.com"
)
DEFAULT_TIMEOUT_MINUTES = 60
DEFAULT_VCPUS = 4

# Any one of the listed keys satisfies the agent. An empty tuple means the
# agent needs no key (local models behind OLLAMA_HOST).
AGENT_REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "claude": ("ANTHROPIC_API_KEY",),
    "codex": ("OPENAI_API_KEY", "AI_GATEWAY_API_KEY"),
    "copilot": ("GH_TOKEN", "GITHUB_TOKEN"),
    "cursor": ("CURSOR_API_KEY",),
    "gemini": ("GEMINI_API_KEY",),
    "opencode": ("OPENAI_API_KEY", "ANTHROPIC_API_KEY"),
    "deepseek": (),
    "qwen": (),
}

NON_DIGIT_RE = re.compile(r"\D")


class EnvironmentValidation(BaseModel):
    valid: bool
    error: str | None = None


def lookup_key(
    name: str,
    api_keys: Mapping[str, str] | None,
    *,
    github_token: str | None = None,
) -> str | None:
    if api_keys and api_keys.get(name):
        return api_keys[name]
    if name in {"GH_TOKEN", "GITHUB_TOKEN"} and github_token:
        return github_token
    value = os.environ.get(name, "").strip()
    return value or None


def validate_environment_variables(
    selected_agent: str,
    github_token: str | None,
    api_keys: Mapping[str, str] | None = None,
) -> EnvironmentValidation:
    agent = (selected_agent or "").strip().lower()
    required = AGENT_REQUIRED_KEYS.get(agent)
    if required is None:
        return EnvironmentValidation(
            valid=False, error=f"Unknown agent: {selected_agent}"
        )
    if not github_token:
        return EnvironmentValidation(
            valid=False,
            error="GitHub token is required to clone and push the repository",
        )
    if required and not any(
        lookup_key(name, api_keys, github_token=github_token) for name in required
    ):
        names = " or ".join(required)
        return EnvironmentValidation(
            valid=False, error=f"{names} is required for the {agent} agent"
        )
    return EnvironmentValidation(valid=True)


def create_authenticated_repo_url(
    repo_url: str, github_token: str | None
) -> SecretStr:
    """Embed the token into a github.com HTTPS clone URL."""
    if not github_token:
        return SecretStr(repo_url)
    parts = urlsplit(repo_url)
    if parts.scheme != "https" or parts.hostname != "github.com":
        return SecretStr(repo_url)
    netloc = f"{github_token}:x-oauth-basic@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return SecretStr(
        urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    )


def parse_timeout_ms(duration: str | None) -> int:
    """Minutes from a free-form duration string ("45", "45 minutes")."""
    digits = NON_DIGIT_RE.sub("", duration or "")
    minutes = int(digits) if digits else DEFAULT_TIMEOUT_MINUTES
    return minutes * 60 * 1000


def resolve_ports(ports: list[int] | None) -> list[int]:
    return list(ports) if ports else list(DEFAULT_PORTS)


def repo_name_from_url(repo_url: str) -> str:
    match = re.search(r"/([^/]+?)(\.git)?/?$", repo_url)
    return match.group(1) if match else "repository"
