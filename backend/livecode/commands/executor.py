"""Queue-backed execution of extracted shell commands against the sandbox.

Every batch, from every turn, goes through one FIFO drained by a single
worker task, so commands from a feedback-triggered turn never interleave with
a batch that is still running. Inside a batch, install-class commands force
serial execution (stop at first failure); otherwise the batch fans out.

Timeouts only stop *waiting*: the spawned process may still be running when a
timed-out result is returned, so callers must treat it as "final state
unknown". With ``kill_on_timeout`` a best-effort kill is attempted.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from livecode.commands.cache import CommandCache
from livecode.commands.policy import CommandPolicy
from livecode.config import Settings
from livecode.sandbox.base import SandboxCapability, SandboxProcess
from livecode.sandbox.terminal import (
    clean_terminal_output,
    format_error,
    format_prompt,
)
from livecode.types import (
    CommandClass,
    CommandQueueEntry,
    CommandResult,
    CommandState,
)


logger = logging.getLogger("livecode.commands.executor")


OutputSink = Callable[[str], None]
CommandListener = Callable[[str, CommandResult], None]

TIMEOUT_EXIT_CODE = 124


@dataclass
class _Batch:
    entries: list[CommandQueueEntry]
    serial: bool
    on_output: OutputSink | None
    future: asyncio.Future = field(repr=False)


class CommandExecutor:
    def __init__(
        self,
        sandbox: SandboxCapability,
        policy: CommandPolicy | None = None,
        settings: Settings | None = None,
        *,
        cache: CommandCache | None = None,
        working_directory: str | None = None,
        terminal: OutputSink | None = None,
        on_process_output: OutputSink | None = None,
        on_command_start: Callable[[str], None] | None = None,
        on_command_complete: CommandListener | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.sandbox = sandbox
        self.policy = policy or CommandPolicy.from_settings(self.settings)
        self.cache = cache or CommandCache(
            max_entries=self.settings.cache_max_entries, ttl=self.settings.cache_ttl
        )
        self.working_directory = (
            working_directory if working_directory is not None else self.settings.project_dir
        )
        self.terminal = terminal
        # Raw process output only, without prompt/error annotations
        self.on_process_output = on_process_output
        self.on_command_start = on_command_start
        self.on_command_complete = on_command_complete

        self._queue: asyncio.Queue[_Batch] | None = None
        self._worker: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------ API

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        on_output: OutputSink | None = None,
    ) -> CommandResult:
        results = await self._submit([command], serial=True, cwd=cwd, on_output=on_output)
        return results[0]

    async def execute_all(
        self,
        commands: list[str],
        *,
        cwd: str | None = None,
        on_output: OutputSink | None = None,
    ) -> list[CommandResult]:
        if not commands:
            return []
        serial = any(self.policy.classify(c) is CommandClass.INSTALL for c in commands)
        return await self._submit(commands, serial=serial, cwd=cwd, on_output=on_output)

    def timeout_for(self, command: str) -> float:
        command_class = self.policy.classify(command)
        if command_class is CommandClass.INSTALL:
            return self.settings.install_timeout
        if command_class is CommandClass.BUILD:
            return self.settings.build_timeout
        return self.settings.default_timeout

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def aclose(self) -> None:
        tasks = [t for t in (self._worker, *self._background) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker = None
        self._background.clear()

    # -------------------------------------------------------------- queueing

    async def _submit(
        self,
        commands: list[str],
        *,
        serial: bool,
        cwd: str | None,
        on_output: OutputSink | None,
    ) -> list[CommandResult]:
        loop = asyncio.get_running_loop()
        batch = _Batch(
            entries=[
                CommandQueueEntry(command=c.strip(), working_directory=cwd or self.working_directory)
                for c in commands
            ],
            serial=serial,
            on_output=on_output,
            future=loop.create_future(),
        )
        self._ensure_worker()
        assert self._queue is not None
        await self._queue.put(batch)
        logger.debug(
            "queued batch of %d command(s) serial=%s pending=%d",
            len(commands),
            serial,
            self._queue.qsize(),
        )
        return await batch.future

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._drain(), name="livecode-command-queue")

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            batch = await self._queue.get()
            try:
                if batch.future.cancelled():
                    continue
                results = await self._run_batch(batch)
                if not batch.future.done():
                    batch.future.set_result(results)
            except asyncio.CancelledError:
                if not batch.future.done():
                    batch.future.cancel()
                raise
            except Exception as e:
                logger.exception("command batch crashed")
                if not batch.future.done():
                    batch.future.set_exception(e)
            finally:
                self._queue.task_done()

    async def _run_batch(self, batch: _Batch) -> list[CommandResult]:
        if not batch.serial:
            return list(
                await asyncio.gather(*(self._run_entry(e, batch.on_output) for e in batch.entries))
            )

        results: list[CommandResult] = []
        for entry in batch.entries:
            result = await self._run_entry(entry, batch.on_output)
            results.append(result)
            if not result.success:
                logger.info("stopping batch after failed command: %s", entry.command)
                self._write_terminal(
                    format_error(f"Command failed: {entry.command}. Stopping execution.")
                )
                break
        return results

    # ------------------------------------------------------------- execution

    async def _run_entry(
        self, entry: CommandQueueEntry, on_output: OutputSink | None
    ) -> CommandResult:
        command = entry.command
        cacheable = self.policy.is_cacheable(command)
        if cacheable:
            cached = self.cache.get(command)
            if cached is not None:
                logger.debug("using cached result for: %s", command)
                entry.state = CommandState.COMPLETED
                self._notify_complete(command, cached)
                return cached

        entry.state = CommandState.VALIDATING
        validation = self.policy.validate(command)
        if not validation.valid:
            entry.state = CommandState.REJECTED
            message = validation.warning or "Invalid command"
            logger.warning("rejected command %r: %s", command, message)
            self._write_terminal(format_error(message))
            result = CommandResult(success=False, output="", exit_code=1, error=message)
            self._notify_complete(command, result)
            return result
        if validation.warning:
            logger.info("%s (%s)", validation.warning, command)

        entry.state = CommandState.RUNNING
        if self.on_command_start is not None:
            self.on_command_start(command)
        result = await self._spawn_and_wait(entry, on_output)
        if entry.state is CommandState.RUNNING:
            entry.state = CommandState.COMPLETED

        if cacheable and result.success:
            self.cache.set(command, result)
        self._notify_complete(command, result)
        return result

    async def _spawn_and_wait(
        self, entry: CommandQueueEntry, on_output: OutputSink | None
    ) -> CommandResult:
        command = entry.command
        long_running = self.policy.long_running_match(command) is not None
        timeout = self.settings.detach_after if long_running else self.timeout_for(command)
        self._write_terminal(format_prompt(command))

        try:
            process = await self.sandbox.spawn(command, cwd=entry.working_directory)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning("spawn failed for %r: %s", command, message)
            self._write_terminal(format_error(message))
            return CommandResult(success=False, output="", exit_code=1, error=message)

        collected: list[str] = []

        def sink(data: str) -> None:
            collected.append(data)
            self._forward(data, on_output)

        pump = asyncio.create_task(self._pump(process, sink))
        started = asyncio.get_running_loop().time()

        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            output = clean_terminal_output("".join(collected))
            if long_running:
                # Keep streaming the server's output to the terminal sinks
                self._background.add(pump)
                pump.add_done_callback(self._background.discard)
                logger.info("left %r running in the background after %.1fs", command, timeout)
                return CommandResult(success=True, output=output, exit_code=0, detached=True)

            entry.state = CommandState.TIMED_OUT
            logger.warning("command timed out after %.1fs: %s", timeout, command)
            if self.settings.kill_on_timeout:
                await self._kill(process, command)
            pump.cancel()
            message = f"Command timed out after {timeout:g}s; final process state unknown"
            self._write_terminal(format_error(message))
            return CommandResult(
                success=False, output=output, exit_code=TIMEOUT_EXIT_CODE, error=message
            )
        except Exception as e:
            pump.cancel()
            message = str(e) or e.__class__.__name__
            logger.warning("waiting on %r failed: %s", command, message)
            self._write_terminal(format_error(message))
            return CommandResult(
                success=False,
                output=clean_terminal_output("".join(collected)),
                exit_code=1,
                error=message,
            )

        if not pump.done():
            try:
                await asyncio.wait_for(asyncio.shield(pump), self.settings.output_drain_timeout)
            except asyncio.TimeoutError:
                pump.cancel()

        output = clean_terminal_output("".join(collected))
        success = exit_code == 0
        elapsed = asyncio.get_running_loop().time() - started
        logger.info("command exited code=%d in %.2fs: %s", exit_code, elapsed, command)
        self._write_terminal("\r\n")
        return CommandResult(
            success=success,
            output=output,
            exit_code=exit_code,
            error=None if success else (output or f"Process exited with code {exit_code}"),
        )

    async def _pump(self, process: SandboxProcess, sink: OutputSink) -> None:
        try:
            async for data in process.output():
                sink(data)
        except asyncio.CancelledError:
            raise
        except Exception:
            # A broken output stream does not decide the command's outcome
            logger.debug("output stream ended with error", exc_info=True)

    async def _kill(self, process: SandboxProcess, command: str) -> None:
        try:
            await process.kill()
        except Exception:
            logger.warning("could not kill timed out command: %s", command, exc_info=True)

    # ---------------------------------------------------------------- sinks

    def _forward(self, data: str, on_output: OutputSink | None) -> None:
        for sink in (self.terminal, self.on_process_output, on_output):
            if sink is None:
                continue
            try:
                sink(data)
            except Exception:
                logger.exception("terminal output sink failed")

    def _write_terminal(self, text: str) -> None:
        if self.terminal is None:
            return
        try:
            self.terminal(text)
        except Exception:
            logger.exception("terminal output sink failed")

    def _notify_complete(self, command: str, result: CommandResult) -> None:
        if self.on_command_complete is None:
            return
        try:
            self.on_command_complete(command, result)
        except Exception:
            logger.exception("command completion listener failed")
