from taskbox.sandbox.docker.backend import DockerRuntime, DockerSandbox

__all__ = ["DockerRuntime", "DockerSandbox"]
