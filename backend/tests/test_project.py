from __future__ import annotations

import asyncio

import pytest

from livecode.agent.session import SessionOrchestrator
from livecode.config import Settings

from _fakes import FakeSandbox, ScriptedModelStream, ScriptedRun

CREATE = "npm create --yes vite@latest my-app -- --template react-ts"
DEV = "npm run dev -- --host 0.0.0.0 --port 5173"
APP = "function App() {\n  return <h1>Vite + React</h1>;\n}\n\nexport default App;\n"


def _scaffold(**overrides) -> dict[str, ScriptedRun]:
    scripts = {
        CREATE: ScriptedRun(
            output=["npm warn deprecated inflight: this module failed audits\n"],
            writes={"my-app/package.json": '{"name": "my-app"}', "my-app/src/App.tsx": APP},
        ),
        DEV: ScriptedRun(output=["VITE ready in 300 ms\n"], hang=True),
    }
    scripts.update(overrides)
    return scripts


def _event_types(orchestrator: SessionOrchestrator) -> list[str]:
    return [e.event_type for e in orchestrator.events]


@pytest.mark.asyncio
async def test_fresh_sandbox_is_scaffolded_installed_and_served(settings: Settings) -> None:
    sandbox = FakeSandbox(_scaffold())
    stream = ScriptedModelStream([])
    orchestrator = SessionOrchestrator(sandbox, stream, settings)

    result = await orchestrator.initialize()

    assert result.success
    assert result.scaffolded
    assert result.entry_file == "my-app/src/App.tsx"
    assert sandbox.spawned == [(CREATE, "."), ("npm install", "my-app"), (DEV, "my-app")]
    assert not sandbox.processes[-1].killed
    assert orchestrator.current_code == APP

    types = _event_types(orchestrator)
    assert types[0] == "project_initializing"
    assert types.index("code_updated") < types.index("project_ready")

    # Scaffolding chatter never turns into a fix request
    await asyncio.sleep(settings.feedback_debounce * 3)
    assert stream.calls == []
    assert orchestrator.feedback.enabled
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_existing_project_only_starts_dev_server(settings: Settings) -> None:
    sandbox = FakeSandbox(_scaffold())
    sandbox.files.update({"my-app/package.json": "{}", "my-app/src/App.tsx": APP})
    orchestrator = SessionOrchestrator(sandbox, ScriptedModelStream([]), settings)

    result = await orchestrator.initialize()

    assert result.success
    assert not result.scaffolded
    assert sandbox.spawned_commands() == [DEV]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_failed_scaffold_stops_setup(settings: Settings) -> None:
    sandbox = FakeSandbox(_scaffold(**{CREATE: ScriptedRun(output=["npm ERR! 503\n"], exit_code=1)}))
    orchestrator = SessionOrchestrator(sandbox, ScriptedModelStream([]), settings)

    result = await orchestrator.initialize()

    assert not result.success
    assert result.error.startswith("Vite project creation failed")
    assert sandbox.spawned_commands() == [CREATE]
    failed = [e for e in orchestrator.events if e.event_type == "project_failed"]
    assert failed and failed[0].error == result.error
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_missing_entry_file_fails_setup(settings: Settings) -> None:
    sandbox = FakeSandbox(_scaffold())
    sandbox.files["my-app/package.json"] = "{}"
    orchestrator = SessionOrchestrator(sandbox, ScriptedModelStream([]), settings)

    result = await orchestrator.initialize()

    assert not result.success
    assert result.error == "Entry file my-app/src/App.tsx is missing."
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_initialize_runs_once_and_first_turn_waits_for_it(settings: Settings) -> None:
    sandbox = FakeSandbox(_scaffold(**{"npm install": ScriptedRun(delay=0.1)}))
    settings.feedback_enabled = False
    orchestrator = SessionOrchestrator(sandbox, ScriptedModelStream([["Hi!"]]), settings)

    setup = asyncio.create_task(orchestrator.initialize())
    await asyncio.sleep(0)
    assistant = await orchestrator.send_message("hello")
    again = await orchestrator.initialize()

    assert assistant.content == "Hi!"
    assert (await setup) is again
    assert sandbox.spawned_commands().count(CREATE) == 1
    types = _event_types(orchestrator)
    assert types.index("project_ready") < types.index("turn_started")
    await orchestrator.aclose()
