import logging
import posixpath
import re
from collections.abc import Callable, Iterable

from livecode.config import Settings
from livecode.parsing.chunks import FILE_PATTERN
from livecode.sandbox.base import SandboxCapability
from livecode.types import CodeFileChunk, FileProcessingResult, RenderChunk


logger = logging.getLogger("livecode.files")


ROOT_LEVEL_FILES = {"App.css", "index.css", "globals.css"}
KEPT_PREFIXES = ("src/", "public/", "styles/", "package.json")
SOURCE_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js")
CAPITALISED = re.compile(r"^[A-Z]")
# Tooling config (vite.config.ts, tailwind.config.js, ...) lives at the project root
ROOT_CONFIG = re.compile(r"^[\w.-]+\.config\.(ts|js|mjs|cjs)$")

CodeListener = Callable[[str, str], None]


def normalize_filename(filename: str) -> str:
    """Map a model-supplied path onto the project layout.

    Stylesheets like ``App.css`` stay at the root; bare or component-looking
    source files move under ``src/``; already-nested paths are kept.
    """
    normalized = re.sub(r"^/+", "", filename.strip())
    if normalized.startswith("./"):
        normalized = normalized[2:]

    if normalized in ROOT_LEVEL_FILES or ROOT_CONFIG.match(normalized):
        return normalized
    if normalized.startswith(KEPT_PREFIXES):
        return normalized

    top = normalized.split("/")[0]
    if normalized.endswith(".css"):
        if "/" in normalized or CAPITALISED.match(top):
            return f"src/{normalized}"
    elif normalized.endswith(SOURCE_EXTENSIONS):
        if "/" not in normalized or CAPITALISED.match(top):
            return f"src/{normalized}"
    return normalized


def content_fingerprint(content: str) -> str:
    return f"{len(content)}:{content[:50]}"


class EntryFileWriter:
    """Writes the application entry file and publishes it as the editor's code."""

    def __init__(
        self,
        sandbox: SandboxCapability,
        on_code_update: CodeListener | None = None,
    ) -> None:
        self.sandbox = sandbox
        self.on_code_update = on_code_update
        self.current_code: str | None = None
        self.current_path: str | None = None

    async def write(self, path: str, code: str) -> bool:
        if not code.strip():
            logger.debug("ignoring empty entry file write for %s", path)
            return False
        await self.sandbox.write_file(path, code)
        self.current_code = code
        self.current_path = path
        if self.on_code_update is not None:
            self.on_code_update(path, code)
        return True

    async def read(self, path: str) -> str:
        return await self.sandbox.read_file(path)

    async def load(self, path: str) -> str:
        """Read the existing entry file and publish it as the current code."""
        code = await self.read(path)
        self.current_code = code
        self.current_path = path
        if self.on_code_update is not None:
            self.on_code_update(path, code)
        return code


class FileMaterializer:
    """Write completed file blocks into the sandbox project, once each.

    Write failures are returned as unsuccessful ``FileProcessingResult``s so
    one bad file never stops its siblings.
    """

    def __init__(
        self,
        sandbox: SandboxCapability,
        settings: Settings | None = None,
        *,
        on_code_update: CodeListener | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.sandbox = sandbox
        self.project_dir = self.settings.project_dir.strip("/")
        self.entry_files = list(self.settings.entry_files)
        self.entry_writer = EntryFileWriter(sandbox, on_code_update=on_code_update)
        self._processed: set[str] = set()

    @property
    def current_code(self) -> str | None:
        return self.entry_writer.current_code

    def is_entry_file(self, normalized: str) -> bool:
        return any(
            normalized == entry or normalized.endswith(f"/{entry}") for entry in self.entry_files
        )

    def sandbox_path(self, normalized: str) -> str:
        return posixpath.join(self.project_dir, normalized) if self.project_dir else normalized

    def is_processed(self, filename: str, content: str) -> bool:
        return f"{filename}:{content_fingerprint(content)}" in self._processed

    def reset(self) -> None:
        self._processed.clear()

    async def materialize(self, filename: str, content: str) -> FileProcessingResult:
        filename = filename.strip()
        key = f"{filename}:{content_fingerprint(content)}"
        normalized = normalize_filename(filename)
        path = self.sandbox_path(normalized)

        if ".." in normalized.split("/"):
            message = f"Path escapes the project directory: {filename}"
            logger.error("refusing to write %s: %s", filename, message)
            return FileProcessingResult(filename=filename, path=path, success=False, error=message)

        if key in self._processed:
            logger.debug("skipping already written file %s", filename)
            return FileProcessingResult(filename=filename, path=path, success=True, skipped=True)

        try:
            parent = posixpath.dirname(path)
            if parent:
                await self.sandbox.mkdir(parent, recursive=True)
            if self.is_entry_file(normalized):
                await self.entry_writer.write(path, content)
            else:
                await self.sandbox.write_file(path, content)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.error("failed to write %s: %s", path, message)
            return FileProcessingResult(filename=filename, path=path, success=False, error=message)

        self._processed.add(key)
        logger.info("wrote %s (%d chars)", path, len(content))
        return FileProcessingResult(filename=filename, path=path, success=True)

    async def materialize_chunks(self, chunks: Iterable[RenderChunk]) -> list[FileProcessingResult]:
        results: list[FileProcessingResult] = []
        for chunk in chunks:
            if not isinstance(chunk, CodeFileChunk):
                continue
            result = await self.materialize(chunk.filename, chunk.content)
            if not result.skipped:
                results.append(result)
        return results

    async def process_response(self, text: str) -> list[FileProcessingResult]:
        """Write every completed file block found in ``text``."""
        results: list[FileProcessingResult] = []
        for m in FILE_PATTERN.finditer(text):
            result = await self.materialize(m.group(1).strip(), m.group(2).strip())
            if not result.skipped:
                results.append(result)
        return results

    async def process_streaming(self, buffer: str) -> list[FileProcessingResult]:
        """Streaming variant: only closed blocks match, so partial bodies are never written."""
        return await self.process_response(buffer)
