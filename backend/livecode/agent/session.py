"""One live coding conversation bound to one sandbox.

A turn appends the user message and an assistant placeholder, streams the
model response through the chunk parser, then materialises completed files
and runs extracted commands. Results come back as system messages. Every state
change is recorded as a ``SessionEvent`` for the SSE layer.
"""

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from livecode.agent.feedback import ErrorFeedbackLoop
from livecode.agent.model import ModelStream
from livecode.agent.project import ProjectInitializer
from livecode.commands.executor import CommandExecutor
from livecode.config import Settings
from livecode.files.materializer import FileMaterializer
from livecode.parsing.chunks import ChunkParser, extract_partial_file
from livecode.parsing.decoder import StreamDecoder
from livecode.sandbox.base import SandboxCapability
from livecode.sandbox.terminal import extract_error_messages
from livecode.types import (
    CommandChunk,
    CommandResult,
    FileProcessingResult,
    Message,
    PartialFile,
    ProjectSetupResult,
    RenderChunk,
    SessionEvent,
)


logger = logging.getLogger("livecode.agent.session")


STREAM_ERROR_PLACEHOLDER = "[Error receiving response]"
MAX_ERROR_DETAIL = 300

EventListener = Callable[[SessionEvent], None]


def _update_payload(message: Message) -> dict[str, Any]:
    # Streaming updates skip the fields that never change mid-turn
    return message.model_dump(include={"id", "content", "chunks"})


def summarize_files(results: list[FileProcessingResult]) -> str | None:
    if not results:
        return None
    lines: list[str] = []
    written = [r.path or r.filename for r in results if r.success]
    if written:
        lines.append(f"✅ Wrote {len(written)} file(s): {', '.join(written)}")
    for r in results:
        if not r.success:
            lines.append(f"❌ Failed to write {r.filename}: {r.error}")
    return "\n".join(lines)


def summarize_commands(commands: list[str], results: list[CommandResult]) -> str | None:
    if not results:
        return None
    lines: list[str] = []
    for command, result in zip(commands, results):
        if result.success:
            suffix = " (running in background)" if result.detached else ""
            lines.append(f"✅ Command completed: {command}{suffix}")
            continue
        detail = "\n".join(extract_error_messages(result.output)) or (result.error or "")
        if len(detail) > MAX_ERROR_DETAIL:
            detail = detail[:MAX_ERROR_DETAIL] + "..."
        lines.append(f"❌ Command failed (exit code: {result.exit_code}): {command}")
        if detail:
            lines.append(detail)
    skipped = commands[len(results):]
    if skipped:
        lines.append(f"Skipped {len(skipped)} command(s) after failure: {', '.join(skipped)}")
    return "\n".join(lines)


class SessionOrchestrator:
    def __init__(
        self,
        sandbox: SandboxCapability,
        model_stream: ModelStream,
        settings: Settings | None = None,
        *,
        session_id: str | None = None,
        parser: ChunkParser | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or Settings()
        self.session_id = session_id
        self.sandbox = sandbox
        self.model_stream = model_stream
        self.clock = clock

        self.parser = parser or ChunkParser(cache_size=self.settings.parse_cache_size)
        self.materializer = FileMaterializer(
            sandbox, self.settings, on_code_update=self._on_code_update
        )
        self.feedback = ErrorFeedbackLoop(
            self._submit_feedback,
            debounce=self.settings.feedback_debounce,
            enabled=self.settings.feedback_enabled,
            max_attempts=self.settings.feedback_max_attempts,
            terminal=self._on_terminal_output,
        )
        self.executor = CommandExecutor(
            sandbox,
            settings=self.settings,
            terminal=self._on_terminal_output,
            on_process_output=self.feedback.on_output,
            on_command_start=self._on_command_start,
            on_command_complete=self._on_command_complete,
        )
        self.initializer = ProjectInitializer(
            self.executor, self.materializer, self.settings, terminal=self._on_terminal_output
        )

        self.messages: list[Message] = []
        # Bounded log; events_dropped is the absolute index of events[0]
        self.events: deque[SessionEvent] = deque(maxlen=max(self.settings.event_log_size, 1))
        self.events_dropped = 0
        self.listeners: list[EventListener] = []

        self._turn: asyncio.Task | None = None
        self._streaming: set[asyncio.Task] = set()
        self._setup: asyncio.Task | None = None

    # ------------------------------------------------------------------ API

    @property
    def current_code(self) -> str | None:
        return self.materializer.current_code

    @property
    def busy(self) -> bool:
        return self._turn is not None and not self._turn.done()

    async def send_message(self, text: str, images: list[str] | None = None) -> Message | None:
        """Run a user turn. Returns the final assistant message, or None if cancelled."""
        if not text.strip():
            return None
        if self._setup is not None and not self._setup.done():
            # The first turn waits for the project the model is told exists
            await asyncio.shield(self._setup)
        self.feedback.reset_attempts()
        return await self._start_turn(text, images or [], automatic=False)

    async def initialize(self) -> ProjectSetupResult:
        """Scaffold the project and start the dev server, once per session."""
        if self._setup is None:
            self._setup = asyncio.create_task(self._initialize(), name="livecode-project-setup")
        return await asyncio.shield(self._setup)

    async def _initialize(self) -> ProjectSetupResult:
        self.emit("project_initializing", data={"project_dir": self.settings.project_dir})
        # Scaffolding and install chatter is not the model's to fix
        enabled = self.feedback.enabled
        self.feedback.enabled = False
        try:
            result = await self.initializer.run()
        except Exception as e:
            logger.exception("project setup crashed")
            result = ProjectSetupResult(success=False, error=str(e) or e.__class__.__name__)
        finally:
            self.feedback.cancel()
            self.feedback.enabled = enabled

        if result.success:
            self.emit("project_ready", data=result.model_dump())
        else:
            self.emit("project_failed", data=result.model_dump(), error=result.error)
        return result

    def cancel(self) -> bool:
        """Abort the in-flight turn. Files and commands already applied stay applied."""
        if self._turn is None or self._turn.done():
            return False
        logger.info("cancelling in-flight turn")
        self._turn.cancel()
        return True

    def clear(self) -> None:
        self.cancel()
        self.feedback.cancel()
        self.feedback.reset_attempts()
        self.messages = []
        self.materializer.reset()
        self.parser.clear_cache()
        # Cursors stay absolute, so a reconnect at the old position resumes here
        self.events_dropped += len(self.events)
        self.events.clear()
        self.emit("session_cleared")
        logger.info("session cleared")

    async def aclose(self) -> None:
        turn = self._turn
        self.cancel()
        if turn is not None:
            try:
                await turn
            except asyncio.CancelledError:
                pass
        setup = self._setup
        if setup is not None and not setup.done():
            setup.cancel()
            try:
                await setup
            except asyncio.CancelledError:
                pass
        await self.feedback.aclose()
        await self.executor.aclose()
        closer = getattr(self.model_stream, "aclose", None)
        if closer is not None:
            await closer()

    # ----------------------------------------------------------------- events

    def emit(self, event_type: str, data: Any = None, error: Any = None) -> SessionEvent:
        event = SessionEvent(event_type=event_type, data=data, error=error)
        if len(self.events) == self.events.maxlen:
            self.events_dropped += 1
        self.events.append(event)
        for listener in list(self.listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("session event listener failed")
        return event

    def events_since(self, cursor: int) -> tuple[list[SessionEvent], int]:
        """Events at absolute positions >= ``cursor`` and the cursor after them.

        A cursor older than the log resumes at the oldest retained event.
        """
        start = max(cursor - self.events_dropped, 0)
        events = list(itertools.islice(self.events, start, None))
        return events, self.events_dropped + len(self.events)

    def _on_terminal_output(self, data: str) -> None:
        self.emit("terminal_output", data=data)

    def _on_code_update(self, path: str, code: str) -> None:
        self.emit("code_updated", data={"path": path, "code": code})

    def _on_command_start(self, command: str) -> None:
        self.emit("command_started", data={"command": command})

    def _on_command_complete(self, command: str, result: CommandResult) -> None:
        self.emit("command_completed", data={"command": command, "result": result.model_dump()})

    # --------------------------------------------------------------- messages

    def _append(self, message: Message) -> Message:
        self.messages.append(message)
        self.emit("message_added", data=message.model_dump())
        return message

    def _replace(self, message: Message) -> None:
        for i, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[i] = message
                return
        # Cleared mid-turn; nothing to update
        logger.debug("message %s no longer in transcript", message.id)

    def _remove(self, message_id: str) -> None:
        before = len(self.messages)
        self.messages = [m for m in self.messages if m.id != message_id]
        if len(self.messages) != before:
            self.emit("message_removed", data={"id": message_id})

    # ------------------------------------------------------------------ turns

    async def _submit_feedback(self, prompt: str) -> None:
        self.emit("feedback_submitted", data={"content": prompt})
        await self._start_turn(prompt, [], automatic=True)

    async def _start_turn(self, text: str, images: list[str], *, automatic: bool) -> Message | None:
        # Only a still-streaming response is aborted; a turn that is already
        # applying files/commands finishes on its own
        aborted = list(self._streaming)
        for task in aborted:
            task.cancel()
        if aborted:
            await asyncio.wait(aborted)

        task = asyncio.create_task(self._run_turn(text, images, automatic))
        self._turn = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            return None
        return task.result()

    async def _run_turn(self, text: str, images: list[str], automatic: bool) -> Message | None:
        task = asyncio.current_task()
        user = self._append(Message(role="user", content=text, images=images))
        placeholder = self._append(Message(role="assistant", content=""))
        self.emit(
            "turn_started",
            data={"message_id": placeholder.id, "user_message_id": user.id, "automatic": automatic},
        )
        logger.info("turn started automatic=%s prompt_len=%d", automatic, len(text))

        history = [m for m in self.messages if m.id != placeholder.id]
        streamed_files: list[FileProcessingResult] = []

        self._streaming.add(task)
        try:
            assistant = await self._stream_response(placeholder, history, streamed_files)
        except asyncio.CancelledError:
            self._remove(placeholder.id)
            self.emit("turn_cancelled", data={"message_id": placeholder.id})
            logger.info("turn cancelled while streaming")
            raise
        except Exception as e:
            logger.error("model stream failed: %s", e)
            failed = placeholder.model_copy(update={"content": STREAM_ERROR_PLACEHOLDER, "chunks": None})
            self._replace(failed)
            self.emit("message_updated", data=_update_payload(failed))
            self.emit("turn_failed", data={"message_id": placeholder.id}, error=str(e))
            return failed
        finally:
            self._streaming.discard(task)

        try:
            files, commands, results = await self._apply(assistant, streamed_files)
        except asyncio.CancelledError:
            self.emit("turn_cancelled", data={"message_id": assistant.id})
            raise
        except Exception as e:
            logger.exception("applying assistant response failed")
            self._append(Message(role="system", content=f"Error: {e}"))
            self.emit("turn_failed", data={"message_id": assistant.id}, error=str(e))
            return assistant

        self.emit(
            "turn_completed",
            data={
                "message_id": assistant.id,
                "files": [f.model_dump() for f in files],
                "commands": [
                    {"command": c, "result": r.model_dump()} for c, r in zip(commands, results)
                ],
            },
        )
        return assistant

    async def _stream_response(
        self,
        placeholder: Message,
        history: list[Message],
        streamed_files: list[FileProcessingResult],
    ) -> Message:
        decoder = StreamDecoder()
        last_parse_at = self.clock()
        last_parse_len = 0
        last_partial: PartialFile | None = None
        current = placeholder

        stream = self.model_stream(history)
        try:
            async for fragment in stream:
                if not decoder.feed(fragment):
                    continue
                now = self.clock()
                if (
                    now - last_parse_at < self.settings.parse_interval
                    and len(decoder) - last_parse_len < self.settings.parse_min_chars
                ):
                    continue
                last_parse_at, last_parse_len = now, len(decoder)

                buffer = decoder.text
                parsed = self.parser.parse(buffer)
                current = current.model_copy(update={"content": buffer, "chunks": parsed.chunks})
                self._replace(current)
                self.emit("message_updated", data=_update_payload(current))

                partial = extract_partial_file(buffer, self.settings.partial_preview_min_chars)
                if partial is not None and partial != last_partial:
                    last_partial = partial
                    self.emit("file_preview", data=partial.model_dump())

                if self.settings.materialize_while_streaming and parsed.has_structured_chunks:
                    for result in await self.materializer.materialize_chunks(parsed.chunks):
                        streamed_files.append(result)
                        self.emit("file_written", data=result.model_dump())
        finally:
            closer = getattr(stream, "aclose", None)
            if closer is not None:
                await closer()

        decoder.finish()
        buffer = decoder.text
        parsed = self.parser.parse(buffer)
        final = current.model_copy(update={"content": buffer, "chunks": parsed.chunks})
        self._replace(final)
        self.emit("message_completed", data=final.model_dump())
        logger.info(
            "response complete chars=%d chunks=%d structured=%s",
            len(buffer),
            len(parsed.chunks),
            parsed.has_structured_chunks,
        )
        return final

    async def _apply(
        self, assistant: Message, streamed_files: list[FileProcessingResult]
    ) -> tuple[list[FileProcessingResult], list[str], list[CommandResult]]:
        chunks: list[RenderChunk] = list(assistant.chunks or [])

        written = await self.materializer.materialize_chunks(chunks)
        for result in written:
            self.emit("file_written", data=result.model_dump())
        files = streamed_files + written
        summary = summarize_files(files)
        if summary:
            self._append(Message(role="system", content=summary))

        commands: list[str] = []
        for chunk in chunks:
            if isinstance(chunk, CommandChunk):
                commands.extend(self.executor.policy.extract_commands(chunk.content))
        results: list[CommandResult] = []
        if commands:
            results = await self.executor.execute_all(commands)
            summary = summarize_commands(commands, results)
            if summary:
                self._append(Message(role="system", content=summary))
        return files, commands, results
