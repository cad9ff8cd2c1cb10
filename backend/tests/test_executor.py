from __future__ import annotations

import asyncio

import pytest

from livecode.commands.executor import TIMEOUT_EXIT_CODE, CommandExecutor
from livecode.config import Settings

from _fakes import FakeSandbox, ScriptedRun, collect


@pytest.mark.asyncio
async def test_install_batch_runs_serially_and_stops_at_first_failure(settings: Settings) -> None:
    sandbox = FakeSandbox(
        {"npm install": ScriptedRun(output=["npm ERR! missing script\n"], exit_code=1)}
    )
    terminal, write = collect()
    executor = CommandExecutor(sandbox, settings=settings, terminal=write)

    results = await executor.execute_all(["npm install", "npm run build", "ls"])

    assert len(results) == 1
    assert not results[0].success
    assert results[0].exit_code == 1
    assert results[0].error == "npm ERR! missing script"
    assert sandbox.spawned_commands() == ["npm install"]
    assert any("Command failed: npm install. Stopping execution." in t for t in terminal)
    await executor.aclose()


@pytest.mark.asyncio
async def test_non_install_batch_returns_results_in_order(settings: Settings) -> None:
    sandbox = FakeSandbox(
        {
            "ls": ScriptedRun(output=["a\nb\n"], delay=0.05),
            "pwd": ScriptedRun(output=["/app\n"]),
        }
    )
    executor = CommandExecutor(sandbox, settings=settings)

    results = await executor.execute_all(["ls", "pwd"])

    assert [r.output for r in results] == ["a\nb", "/app"]
    assert all(r.success for r in results)
    await executor.aclose()


@pytest.mark.asyncio
async def test_cached_read_only_command_is_not_spawned_twice(settings: Settings) -> None:
    sandbox = FakeSandbox({"cat package.json": ScriptedRun(output=['{"name": "demo"}\n'])})
    executor = CommandExecutor(sandbox, settings=settings)

    first = await executor.execute("cat package.json")
    second = await executor.execute("cat package.json")

    assert second is first
    assert sandbox.spawned_commands() == ["cat package.json"]
    await executor.aclose()


@pytest.mark.asyncio
async def test_failed_read_only_command_is_not_cached(settings: Settings) -> None:
    sandbox = FakeSandbox({"cat missing.json": ScriptedRun(exit_code=1)})
    executor = CommandExecutor(sandbox, settings=settings)

    await executor.execute("cat missing.json")
    await executor.execute("cat missing.json")

    assert sandbox.spawned_commands() == ["cat missing.json", "cat missing.json"]
    await executor.aclose()


@pytest.mark.asyncio
async def test_denied_command_never_spawns(settings: Settings) -> None:
    sandbox = FakeSandbox()
    terminal, write = collect()
    executor = CommandExecutor(sandbox, settings=settings, terminal=write)

    result = await executor.execute("rm -rf /")

    assert not result.success
    assert result.exit_code == 1
    assert result.error.startswith("Dangerous command detected")
    assert sandbox.spawned == []
    assert any("Dangerous command detected" in t for t in terminal)
    await executor.aclose()


@pytest.mark.asyncio
async def test_timeout_reports_failure_and_kills(settings: Settings) -> None:
    sandbox = FakeSandbox({"node server.js": ScriptedRun(output=["listening\n"], hang=True)})
    executor = CommandExecutor(sandbox, settings=settings)

    result = await executor.execute("node server.js")

    assert not result.success
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "timed out" in result.error
    assert "unknown" in result.error
    assert sandbox.processes[0].killed
    await executor.aclose()


@pytest.mark.asyncio
async def test_timeout_without_kill_leaves_process(settings: Settings) -> None:
    settings.kill_on_timeout = False
    sandbox = FakeSandbox({"node server.js": ScriptedRun(hang=True)})
    executor = CommandExecutor(sandbox, settings=settings)

    result = await executor.execute("node server.js")

    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert not sandbox.processes[0].killed
    await executor.aclose()


@pytest.mark.asyncio
async def test_dev_server_detaches_and_keeps_streaming(settings: Settings) -> None:
    sandbox = FakeSandbox({"npm run dev": ScriptedRun(output=["VITE ready\n"], hang=True)})
    terminal, write = collect()
    executor = CommandExecutor(sandbox, settings=settings, terminal=write)

    result = await executor.execute("npm run dev")

    assert result.success
    assert result.detached
    assert result.output == "VITE ready"
    assert not sandbox.processes[0].killed
    assert "VITE ready\n" in terminal
    await executor.aclose()


@pytest.mark.asyncio
async def test_failing_vite_build_is_awaited_not_detached(settings: Settings) -> None:
    sandbox = FakeSandbox(
        {"npx vite build": ScriptedRun(output=["error TS2304\n"], exit_code=1, delay=0.35)}
    )
    executor = CommandExecutor(sandbox, settings=settings)

    result = await executor.execute("npx vite build")

    assert not result.success
    assert not result.detached
    assert result.exit_code == 1
    assert result.error == "error TS2304"
    await executor.aclose()


@pytest.mark.asyncio
async def test_output_is_cleaned_but_raw_data_is_forwarded(settings: Settings) -> None:
    raw = "\x1b[32mbuilt\x1b[0m\r\n"
    sandbox = FakeSandbox({"npm run build": ScriptedRun(output=[raw])})
    terminal, write = collect()
    process_output, on_process_output = collect()
    per_call, on_output = collect()
    executor = CommandExecutor(
        sandbox, settings=settings, terminal=write, on_process_output=on_process_output
    )

    result = await executor.execute("npm run build", on_output=on_output)

    assert result.output == "built"
    assert raw in terminal
    assert process_output == [raw]
    assert per_call == [raw]
    # Prompt annotation reaches the terminal only
    assert any("$ npm run build" in t for t in terminal)
    await executor.aclose()


@pytest.mark.asyncio
async def test_batches_from_different_callers_do_not_interleave(settings: Settings) -> None:
    sandbox = FakeSandbox({"npm install": ScriptedRun(delay=0.1)})
    executor = CommandExecutor(sandbox, settings=settings)

    first = asyncio.create_task(executor.execute_all(["npm install"]))
    second = asyncio.create_task(executor.execute_all(["ls"]))
    await asyncio.sleep(0.05)
    assert sandbox.spawned_commands() == ["npm install"]

    await asyncio.gather(first, second)
    assert sandbox.spawned_commands() == ["npm install", "ls"]
    await executor.aclose()


@pytest.mark.asyncio
async def test_commands_run_in_project_directory(settings: Settings) -> None:
    sandbox = FakeSandbox()
    executor = CommandExecutor(sandbox, settings=settings)

    await executor.execute("ls")
    await executor.execute("ls -la", cwd="other")

    assert sandbox.spawned == [("ls", "my-app"), ("ls -la", "other")]
    await executor.aclose()


@pytest.mark.asyncio
async def test_spawn_failure_becomes_failed_result(settings: Settings) -> None:
    class BrokenSandbox(FakeSandbox):
        async def spawn(self, command: str, *, cwd: str | None = None):
            raise RuntimeError("sandbox gone")

    executor = CommandExecutor(BrokenSandbox(), settings=settings)
    result = await executor.execute("npm install")

    assert not result.success
    assert result.error == "sandbox gone"
    await executor.aclose()
