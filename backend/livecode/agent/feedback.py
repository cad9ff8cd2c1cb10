"""Turn sandbox and preview failures into follow-up model turns.

Terminal output and preview errors both end up in ``report_candidate_error``.
A single-slot debounce collapses a burst of related lines into one prompt,
which is handed to the session's normal turn entry point.
"""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any, Protocol
from urllib.parse import urlsplit

from livecode.errors import PreviewAccessError


logger = logging.getLogger("livecode.agent.feedback")


ERROR_SIGNATURE = re.compile(
    r"error|not found|failed|unexpected|syntaxerror|referenceerror|typeerror"
    r"|does not provide an export|cannot resolve|module not found"
    r"|compilation failed|build failed",
    re.IGNORECASE,
)

FIX_PROMPT = "I noticed an error while running your code:\n\n{context}\n\nCould you propose a fix?"


PREVIEW_ERROR_SCRIPT = """
window.addEventListener('error', function(event) {
  try {
    if (event.message && !event.message.includes('Script error') && !event.message.includes('cross-origin')) {
      window.parent.postMessage({
        type: 'error',
        message: event.message,
        filename: event.filename,
        lineno: event.lineno,
        colno: event.colno,
        stack: event.error ? event.error.stack : ''
      }, '*');
    }
  } catch (e) {}
});

window.addEventListener('unhandledrejection', function(event) {
  try {
    window.parent.postMessage({
      type: 'error',
      message: 'Unhandled Promise Rejection: ' + String(event.reason),
      filename: 'unknown',
      lineno: 0,
      colno: 0,
      stack: event.reason && event.reason.stack ? event.reason.stack : ''
    }, '*');
  } catch (e) {}
});

const originalError = console.error;
console.error = function(...args) {
  originalError.apply(console, args);
  try {
    const message = args.join(' ');
    if (!message.includes('cross-origin') && !message.includes('Script error')) {
      window.parent.postMessage('error:' + message, '*');
    }
  } catch (e) {}
};
"""


SubmitTurn = Callable[[str], Awaitable[Any]]


class PreviewSurface(Protocol):
    """A rendered preview of the app that may accept an injected script."""

    url: str

    async def inject_script(self, source: str) -> None: ...


def is_likely_error(text: str) -> bool:
    return bool(text) and ERROR_SIGNATURE.search(text) is not None


def parse_error_from_output(data: str) -> str | None:
    """Return the error context carried by a chunk of terminal output, if any.

    Structured lines like ``{"error": ...}`` win over the keyword predicate.
    """
    for line in [data, *data.splitlines()]:
        candidate = line.strip()
        if not candidate.startswith("{"):
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict) and parsed.get("error"):
            return json.dumps(parsed["error"])

    if is_likely_error(data):
        return data
    return None


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()


async def inject_error_capture(preview: PreviewSurface, host_origin: str) -> bool:
    """Install ``PREVIEW_ERROR_SCRIPT`` into a same-origin preview.

    Cross-origin previews cannot be introspected; that is reported as a
    skipped injection, not a failure.
    """
    if _origin(preview.url) != _origin(host_origin):
        logger.debug("preview %s is cross-origin, error capture skipped", preview.url)
        return False
    try:
        await preview.inject_script(PREVIEW_ERROR_SCRIPT)
    except PreviewAccessError as e:
        logger.debug("preview not introspectable, error capture skipped: %s", e)
        return False
    except Exception:
        logger.warning("unexpected failure injecting preview error capture", exc_info=True)
        return False
    logger.info("injected error capture into preview %s", preview.url)
    return True


class ErrorFeedbackLoop:
    def __init__(
        self,
        submit: SubmitTurn,
        *,
        debounce: float = 1.0,
        enabled: bool = True,
        max_attempts: int = 3,
        terminal: Callable[[str], None] | None = None,
    ) -> None:
        self.submit = submit
        self.debounce = debounce
        self.enabled = enabled
        self.max_attempts = max_attempts
        self.terminal = terminal

        self.attempts = 0
        self._contexts: list[str] = []
        self._timer: asyncio.Task | None = None
        self._inflight: set[asyncio.Task] = set()

    # ----------------------------------------------------------------- sinks

    def on_output(self, data: str) -> None:
        error = parse_error_from_output(data)
        if error:
            self.report_candidate_error(error)

    def on_runtime_error(self, message: str, location: str | None = None) -> None:
        self.report_candidate_error(f"{message} (at {location})" if location else message)

    def on_preview_message(self, data: Any) -> None:
        """Route a postMessage payload coming from the preview."""
        if isinstance(data, str):
            if data.startswith("console:"):
                if self.terminal is not None:
                    self.terminal(f"\r\n{data[len('console:'):]}\r\n")
            elif data.startswith("error:"):
                self.report_candidate_error(f"Preview Error: {data[len('error:'):]}")
            return

        if isinstance(data, dict) and data.get("type") == "error":
            message = str(data.get("message", ""))
            if message.startswith("Unhandled Promise Rejection:"):
                self.report_candidate_error(message)
                return
            self.report_candidate_error(
                f"JavaScript Error: {message} "
                f"(at {data.get('filename')}:{data.get('lineno')}:{data.get('colno')})"
            )
        elif isinstance(data, dict) and data.get("type") == "unhandledrejection":
            self.report_candidate_error(f"Unhandled Promise Rejection: {data.get('reason')}")

    # ---------------------------------------------------------------- control

    def report_candidate_error(self, context: str) -> None:
        if not self.enabled or not context.strip():
            return
        if self.attempts >= self.max_attempts:
            logger.info(
                "dropping error after %d automatic fix attempts: %.120s", self.attempts, context
            )
            return
        if context not in self._contexts:
            self._contexts.append(context)
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._fire_later(), name="livecode-feedback-debounce")

    async def flush(self) -> bool:
        """Submit any pending context now. Returns whether a turn was submitted."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        return await self._submit_pending()

    def cancel(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self._contexts.clear()

    def reset_attempts(self) -> None:
        self.attempts = 0

    @property
    def pending(self) -> bool:
        return bool(self._contexts)

    async def aclose(self) -> None:
        self.cancel()
        for task in list(self._inflight):
            task.cancel()
        for task in list(self._inflight):
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -------------------------------------------------------------- internals

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.debounce)
        self._timer = None
        # The submitted turn outlives this timer slot
        task = asyncio.create_task(self._submit_pending(), name="livecode-feedback-submit")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _submit_pending(self) -> bool:
        if not self._contexts:
            return False
        context = "\n\n".join(self._contexts)
        self._contexts.clear()
        if self.attempts >= self.max_attempts:
            logger.info("automatic fix limit reached, not submitting")
            return False
        self.attempts += 1
        logger.info("submitting automatic fix request (attempt %d)", self.attempts)
        try:
            await self.submit(FIX_PROMPT.format(context=context))
        except Exception:
            logger.exception("automatic fix turn failed")
        return True
