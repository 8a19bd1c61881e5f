"""taskbox: per-task Docker sandboxes for coding agents.

A sandbox is an ephemeral container with a cloned repository, installed
dependencies, an optional dev server and a prepared working branch. The
creation workflow drives the Docker runtime; the registry maps task ids to
live sandbox handles.

Settings are read from the environment when taskbox.config is first
imported, so this module imports nothing eagerly.
"""

__all__ = [
    "create_sandbox_for_task",
]


async def create_sandbox_for_task(*args, **kwargs):
    from .workflow.creation import create_sandbox_for_task as create_function

    return await create_function(*args, **kwargs)
