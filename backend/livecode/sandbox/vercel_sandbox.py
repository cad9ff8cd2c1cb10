import base64
import logging
import posixpath
import shlex
from collections.abc import AsyncIterator
from typing import Any

from vercel.sandbox import AsyncSandbox as Sandbox

from livecode.errors import SandboxError
from livecode.sandbox.base import resolve_cwd


logger = logging.getLogger("livecode.sandbox.vercel")

# Files are pushed to the sandbox in batches to avoid 500s on rapid writes
WRITE_BATCH_SIZE = 64


class VercelProcess:
    """Wraps a detached Vercel sandbox command as a ``SandboxProcess``."""

    def __init__(self, cmd: Any) -> None:
        self._cmd = cmd

    async def output(self) -> AsyncIterator[str]:
        async for line in self._cmd.logs():
            # line.data contains already-formatted text with newlines
            yield line.data

    async def wait(self) -> int:
        done = await self._cmd.wait()
        return int(done.exit_code)

    async def kill(self) -> None:
        kill = getattr(self._cmd, "kill", None)
        if kill is None:
            logger.warning("sandbox command does not support kill; leaving it running")
            return
        await kill()


class VercelSandbox:
    """``SandboxCapability`` backed by a Vercel Sandbox.

    Relative paths are resolved against the sandbox working directory; shell
    commands always run through ``bash -lc`` with an explicit ``cd``.
    """

    def __init__(self, sandbox: Sandbox) -> None:
        self._sandbox = sandbox

    @classmethod
    async def create(
        cls,
        *,
        runtime: str | None = None,
        ports: list[int] | None = None,
        timeout_ms: int = 600_000,
    ) -> "VercelSandbox":
        sandbox = await Sandbox.create(timeout=timeout_ms, runtime=runtime, ports=ports)
        logger.info("sandbox created id=%s runtime=%s", sandbox.sandbox_id, runtime)
        return cls(sandbox)

    @classmethod
    async def get(cls, sandbox_id: str) -> "VercelSandbox":
        return cls(await Sandbox.get(sandbox_id=sandbox_id))

    @property
    def sandbox_id(self) -> str:
        return self._sandbox.sandbox_id

    @property
    def cwd(self) -> str:
        return self._sandbox.sandbox.cwd

    def preview_url(self, port: int) -> str | None:
        try:
            return self._sandbox.domain(port)
        except Exception:
            logger.debug("no preview domain for port %s", port)
            return None

    def _abs(self, path: str) -> str:
        return resolve_cwd(self.cwd, path)

    async def _run(self, script: str) -> str:
        cmd = await self._sandbox.run_command("bash", ["-lc", f"cd {shlex.quote(self.cwd)} && {script}"])
        return await cmd.stdout() or ""

    async def spawn(self, command: str, *, cwd: str | None = None) -> VercelProcess:
        safe_cwd = resolve_cwd(self.cwd, cwd)
        try:
            cmd = await self._sandbox.run_command_detached(
                "bash",
                ["-lc", f"cd {shlex.quote(safe_cwd)} && {command}"],
            )
        except Exception as e:
            raise SandboxError(f"Failed to spawn '{command}': {e}") from e
        return VercelProcess(cmd)

    async def write_file(self, path: str, content: str) -> None:
        await self.write_files({path: content})

    async def write_files(self, files: dict[str, str]) -> int:
        to_write: list[dict[str, Any]] = []
        for path, content in files.items():
            p = posixpath.relpath(self._abs(str(path)), self.cwd)
            if p == ".":
                raise SandboxError(f"Refusing to write outside the sandbox: {path}")
            to_write.append({"path": p, "content": content.encode("utf-8")})
        try:
            for i in range(0, len(to_write), WRITE_BATCH_SIZE):
                await self._sandbox.write_files(to_write[i : i + WRITE_BATCH_SIZE])
        except Exception as e:
            raise SandboxError(f"Failed to write files: {e}") from e
        return len(to_write)

    async def read_file(self, path: str) -> str:
        safe = shlex.quote(self._abs(path))
        out = await self._run(f"if [ -f {safe} ]; then base64 {safe}; else echo '__MISSING__'; fi")
        b64 = out.strip()
        if b64 == "__MISSING__":
            raise FileNotFoundError(path)
        return base64.b64decode(b64).decode("utf-8", errors="replace")

    async def mkdir(self, path: str, *, recursive: bool = True) -> None:
        flag = "-p " if recursive else ""
        await self._run(f"mkdir {flag}{shlex.quote(self._abs(path))}")

    async def readdir(self, path: str) -> list[str]:
        safe = shlex.quote(self._abs(path))
        out = await self._run(f"ls -1A {safe} 2>/dev/null")
        return [line for line in out.splitlines() if line]

    async def stop(self) -> None:
        try:
            await self._sandbox.stop()
        finally:
            # Close the API client even if stop failed (sandbox may already be gone)
            try:
                await self._sandbox.client.aclose()
            except Exception:
                logger.debug("sandbox client close failed", exc_info=True)
