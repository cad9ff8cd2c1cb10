from __future__ import annotations

import base64
from types import SimpleNamespace

import pytest

from livecode.errors import SandboxError
from livecode.sandbox.base import resolve_cwd
from livecode.sandbox.terminal import (
    clean_terminal_output,
    contains_ansi_codes,
    extract_error_messages,
    format_error,
    format_prompt,
    strip_ansi_codes,
)
from livecode.sandbox.vercel_sandbox import VercelSandbox


class _Cmd:
    def __init__(self, stdout: str = "", lines: list[str] | None = None, exit_code: int = 0) -> None:
        self._stdout = stdout
        self._lines = lines or []
        self._exit_code = exit_code

    async def stdout(self) -> str:
        return self._stdout

    async def logs(self):
        for line in self._lines:
            yield SimpleNamespace(data=line)

    async def wait(self):
        return SimpleNamespace(exit_code=self._exit_code)


class _StubSandbox:
    """Records calls the adapter makes against the Vercel SDK object."""

    def __init__(self) -> None:
        self.sandbox = SimpleNamespace(cwd="/vercel/sandbox")
        self.sandbox_id = "sbx_123"
        self.run_calls: list[tuple[str, list[str]]] = []
        self.detached_calls: list[tuple[str, list[str]]] = []
        self.written: list[list[dict]] = []
        self.stdout = ""
        self.detached = _Cmd()
        self.stopped = False
        self.client = SimpleNamespace(aclose=self._aclose)
        self.client_closed = False

    async def _aclose(self) -> None:
        self.client_closed = True

    async def run_command(self, cmd: str, args: list[str]):
        self.run_calls.append((cmd, args))
        return _Cmd(stdout=self.stdout)

    async def run_command_detached(self, cmd: str, args: list[str]):
        self.detached_calls.append((cmd, args))
        return self.detached

    async def write_files(self, files: list[dict]) -> None:
        self.written.append(files)

    def domain(self, port: int) -> str:
        return f"https://{self.sandbox_id}-{port}.vercel.run"

    async def stop(self) -> None:
        self.stopped = True


def test_resolve_cwd_is_confined() -> None:
    base = "/vercel/sandbox"
    assert resolve_cwd(base, None) == base
    assert resolve_cwd(base, "my-app") == "/vercel/sandbox/my-app"
    assert resolve_cwd(base, "/vercel/sandbox/my-app/src") == "/vercel/sandbox/my-app/src"
    assert resolve_cwd(base, "../etc") == base
    assert resolve_cwd(base, "/etc") == base


def test_terminal_helpers() -> None:
    raw = "\x1b[31merror\x1b[0m: boom\r\n\r\nnext\r\n"
    assert contains_ansi_codes(raw)
    assert strip_ansi_codes(raw) == "error: boom\r\n\r\nnext\r\n"
    assert clean_terminal_output(raw) == "error: boom\n\nnext"
    assert extract_error_messages("ok\nnpm ERR! code 1\nTraceback (most recent call last):") == [
        "npm ERR! code 1",
        "Traceback (most recent call last):",
    ]
    assert "$ npm test" in format_prompt("npm test")
    assert "Error: nope" in format_error("nope")


@pytest.mark.asyncio
async def test_spawn_runs_detached_bash_in_confined_cwd() -> None:
    stub = _StubSandbox()
    stub.detached = _Cmd(lines=["hello\n", "world\n"], exit_code=3)
    sandbox = VercelSandbox(stub)

    process = await sandbox.spawn("npm test", cwd="my-app")

    assert stub.detached_calls == [("bash", ["-lc", "cd /vercel/sandbox/my-app && npm test"])]
    assert [data async for data in process.output()] == ["hello\n", "world\n"]
    assert await process.wait() == 3


@pytest.mark.asyncio
async def test_spawn_failure_is_sandbox_error() -> None:
    stub = _StubSandbox()

    async def broken(cmd, args):
        raise RuntimeError("503")

    stub.run_command_detached = broken
    with pytest.raises(SandboxError):
        await VercelSandbox(stub).spawn("ls")


@pytest.mark.asyncio
async def test_write_files_batches_relative_paths() -> None:
    stub = _StubSandbox()
    sandbox = VercelSandbox(stub)

    count = await sandbox.write_files({f"my-app/f{i}.txt": "x" for i in range(70)})

    assert count == 70
    assert [len(batch) for batch in stub.written] == [64, 6]
    assert stub.written[0][0] == {"path": "my-app/f0.txt", "content": b"x"}


@pytest.mark.asyncio
async def test_read_file_decodes_base64_and_reports_missing() -> None:
    stub = _StubSandbox()
    sandbox = VercelSandbox(stub)

    stub.stdout = base64.b64encode("héllo".encode()).decode() + "\n"
    assert await sandbox.read_file("my-app/a.txt") == "héllo"

    stub.stdout = "__MISSING__\n"
    with pytest.raises(FileNotFoundError):
        await sandbox.read_file("my-app/missing.txt")


@pytest.mark.asyncio
async def test_stop_closes_client() -> None:
    stub = _StubSandbox()
    sandbox = VercelSandbox(stub)

    assert sandbox.preview_url(5173) == "https://sbx_123-5173.vercel.run"
    await sandbox.stop()

    assert stub.stopped
    assert stub.client_closed


@pytest.mark.asyncio
async def test_write_outside_sandbox_raises_instead_of_skipping() -> None:
    stub = _StubSandbox()
    sandbox = VercelSandbox(stub)

    with pytest.raises(SandboxError):
        await sandbox.write_file("../../outside/config.json", "{}")

    assert stub.written == []
