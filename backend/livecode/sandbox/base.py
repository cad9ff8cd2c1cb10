"""Sandbox capability contract.

The executor and the materializer never reach for a global sandbox; they get
an object implementing ``SandboxCapability`` at construction time. Production
uses ``VercelSandbox``; tests pass an in-memory fake.
"""

import posixpath
from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable


@runtime_checkable
class SandboxProcess(Protocol):
    """A process spawned inside the sandbox."""

    def output(self) -> AsyncIterator[str]:
        """Combined stdout/stderr as it arrives (raw, may contain ANSI codes)."""
        ...

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        ...

    async def kill(self) -> None:
        """Best-effort termination."""
        ...


@runtime_checkable
class SandboxCapability(Protocol):
    async def spawn(self, command: str, *, cwd: str | None = None) -> SandboxProcess:
        ...

    async def read_file(self, path: str) -> str:
        ...

    async def write_file(self, path: str, content: str) -> None:
        ...

    async def mkdir(self, path: str, *, recursive: bool = True) -> None:
        ...

    async def readdir(self, path: str) -> list[str]:
        ...


def resolve_cwd(base_cwd: str, requested: str | None) -> str:
    """Resolve a working directory, confined to ``base_cwd``.

    Relative paths are joined under the base; absolute paths outside it and
    paths escaping it with ``..`` fall back to the base.
    """
    if not requested or not requested.strip():
        return base_cwd
    requested = requested.strip()
    if requested.startswith("/"):
        candidate = posixpath.normpath(requested)
    else:
        candidate = posixpath.normpath(posixpath.join(base_cwd, requested))
    base = posixpath.normpath(base_cwd)
    if candidate == base or candidate.startswith(base.rstrip("/") + "/"):
        return candidate
    return base
