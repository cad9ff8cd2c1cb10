"""Incremental parsing of assistant output into typed render chunks.

The parser is called repeatedly on a growing buffer while the model streams.
Each call re-scans the whole buffer and returns a fresh chunk list; nothing is
mutated between calls. Three marker grammars are recognised:

    ---filename: src/App.tsx---      file block (path + trimmed body)
    ...
    ---end---

    ```bash / ```shell / ```cmd        command block (trimmed body)
    ```tree / ```files / ```structure  file tree (verbatim body)

Unterminated markers are plain text until their closing marker arrives.
"""

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass

from livecode.types import (
    CodeFileChunk,
    CommandChunk,
    FileTreeChunk,
    ParsedMessage,
    PartialFile,
    RenderChunk,
    TextChunk,
)


logger = logging.getLogger("livecode.parsing")


FILE_PATTERN = re.compile(r"---filename:\s*(.+?)---([\s\S]*?)---end---")
COMMAND_PATTERN = re.compile(r"```(?:bash|shell|cmd)\n([\s\S]*?)```")
FILE_TREE_PATTERN = re.compile(r"```(?:tree|files|structure)\n([\s\S]*?)```")
FILE_HEADER_PATTERN = re.compile(r"---filename:\s*(.+?)---")

# Lower rank wins when two grammars start at the same offset
_PRECEDENCE = {"code-file": 0, "command": 1, "file-tree": 2}

LANGUAGE_BY_EXTENSION: dict[str, str] = {
    "ts": "typescript",
    "tsx": "tsx",
    "js": "javascript",
    "jsx": "jsx",
    "py": "python",
    "json": "json",
    "css": "css",
    "scss": "scss",
    "html": "html",
    "md": "markdown",
    "yml": "yaml",
    "yaml": "yaml",
    "xml": "xml",
    "sql": "sql",
    "sh": "bash",
    "bash": "bash",
}


def language_for_filename(filename: str) -> str:
    if "." not in filename:
        return "text"
    ext = filename.rsplit(".", 1)[-1].lower()
    return LANGUAGE_BY_EXTENSION.get(ext, "text")


@dataclass(frozen=True)
class _Match:
    type: str
    start: int
    end: int
    content: str
    filename: str | None = None


def _collect_matches(content: str) -> list[_Match]:
    matches: list[_Match] = []
    for m in FILE_PATTERN.finditer(content):
        matches.append(
            _Match(
                type="code-file",
                start=m.start(),
                end=m.end(),
                content=m.group(2).strip(),
                filename=m.group(1).strip(),
            )
        )
    for m in COMMAND_PATTERN.finditer(content):
        matches.append(
            _Match(type="command", start=m.start(), end=m.end(), content=m.group(1).strip())
        )
    for m in FILE_TREE_PATTERN.finditer(content):
        matches.append(
            _Match(type="file-tree", start=m.start(), end=m.end(), content=m.group(1))
        )
    matches.sort(key=lambda x: (x.start, _PRECEDENCE[x.type]))

    # Drop anything starting inside an accepted match (e.g. a ```bash fence
    # written inside a README file block).
    accepted: list[_Match] = []
    last_end = 0
    for match in matches:
        if match.start < last_end:
            continue
        accepted.append(match)
        last_end = match.end
    return accepted


def _make_chunk(match: _Match) -> RenderChunk:
    chunk_id = f"{match.type}_{match.start}"
    if match.type == "code-file":
        filename = match.filename or ""
        return CodeFileChunk(
            id=chunk_id,
            content=match.content,
            filename=filename,
            language=language_for_filename(filename),
        )
    if match.type == "command":
        return CommandChunk(id=chunk_id, content=match.content)
    return FileTreeChunk(id=chunk_id, content=match.content)


class ChunkParser:
    """Parse buffers into ``ParsedMessage``s, memoised by exact buffer value."""

    def __init__(self, cache_size: int = 50) -> None:
        self.cache_size = cache_size
        self._cache: OrderedDict[str, ParsedMessage] = OrderedDict()

    def parse(self, content: str) -> ParsedMessage:
        cached = self._cache.get(content)
        if cached is not None:
            self._cache.move_to_end(content)
            return cached

        result = self._parse(content)

        if self.cache_size > 0:
            if len(self._cache) >= self.cache_size:
                self._cache.popitem(last=False)
            self._cache[content] = result
        return result

    def _parse(self, content: str) -> ParsedMessage:
        chunks: list[RenderChunk] = []
        matches = _collect_matches(content)
        last_index = 0

        for match in matches:
            if match.start > last_index:
                text = content[last_index : match.start].strip()
                if text:
                    chunks.append(TextChunk(id=f"text_{last_index}", content=text))
            chunks.append(_make_chunk(match))
            last_index = match.end

        if last_index < len(content):
            remaining = content[last_index:].strip()
            if remaining:
                chunks.append(TextChunk(id=f"text_{last_index}", content=remaining))

        if not chunks:
            chunks.append(TextChunk(id="text_0", content=content))

        return ParsedMessage(chunks=chunks, has_structured_chunks=bool(matches))

    def clear_cache(self) -> None:
        self._cache.clear()


_default_parser = ChunkParser()


def parse_message(content: str) -> ParsedMessage:
    return _default_parser.parse(content)


def clear_parse_cache() -> None:
    _default_parser.clear_cache()


def extract_partial_file(content: str, min_chars: int = 40) -> PartialFile | None:
    """Return the trailing unterminated file block, if its body is long enough.

    Used only to live-update an editor/preview while the block streams in;
    the result must never drive a write or a command.
    """
    last_header = None
    for m in FILE_HEADER_PATTERN.finditer(content):
        last_header = m
    if last_header is None:
        return None

    body = content[last_header.end() :]
    if "---end---" in body:
        return None
    # Hold back a possibly half-written closing marker
    marker_start = body.rfind("---")
    if marker_start != -1 and "---end---".startswith(body[marker_start:].rstrip()):
        body = body[:marker_start]
    body = body.strip()
    if len(body) < min_chars:
        return None

    filename = last_header.group(1).strip()
    logger.debug("partial file preview %s (%d chars)", filename, len(body))
    return PartialFile(
        filename=filename, content=body, language=language_for_filename(filename)
    )
