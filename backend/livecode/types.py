import time
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def make_message_id() -> str:
    return f"msg_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


class ChunkMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["created", "updated", "deleted"] | None = None
    size: str | None = None
    path: str | None = None


class _BaseChunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    content: str
    metadata: ChunkMetadata | None = None


class TextChunk(_BaseChunk):
    type: Literal["text"] = "text"


class CodeFileChunk(_BaseChunk):
    type: Literal["code-file"] = "code-file"
    filename: str
    language: str = "text"


class CommandChunk(_BaseChunk):
    type: Literal["command"] = "command"


class FileTreeChunk(_BaseChunk):
    type: Literal["file-tree"] = "file-tree"


RenderChunk = Annotated[
    Union[TextChunk, CodeFileChunk, CommandChunk, FileTreeChunk],
    Field(discriminator="type"),
]


class ParsedMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    chunks: list[RenderChunk]
    has_structured_chunks: bool


class PartialFile(BaseModel):
    """An unterminated file block surfaced for live preview only."""

    model_config = ConfigDict(frozen=True)

    filename: str
    content: str
    language: str = "text"


class Message(BaseModel):
    """One entry of the conversation.

    Messages are immutable; the session replaces an assistant message by id
    while it streams instead of editing it in place.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=make_message_id)
    role: Literal["user", "assistant", "system"]
    content: str
    images: list[str] = Field(default_factory=list)
    chunks: list[RenderChunk] | None = None
    created_at: float = Field(default_factory=time.time)


class CommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    output: str
    exit_code: int
    error: str | None = None
    # Server-start command still running in the background
    detached: bool = False

    @model_validator(mode="after")
    def _success_matches_exit_code(self) -> "CommandResult":
        if self.success != (self.exit_code == 0):
            raise ValueError("success must hold exactly when exit_code == 0")
        return self


class CommandValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    valid: bool
    warning: str | None = None


class CommandClass(str, Enum):
    INSTALL = "install"
    BUILD = "build"
    DEFAULT = "default"


class CommandState(str, Enum):
    QUEUED = "queued"
    VALIDATING = "validating"
    REJECTED = "rejected"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class CommandQueueEntry(BaseModel):
    command: str
    working_directory: str | None = None
    enqueued_at: float = Field(default_factory=time.monotonic)
    state: CommandState = CommandState.QUEUED


class CachedCommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: CommandResult
    timestamp: float


class FileProcessingResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    filename: str
    path: str | None = None
    success: bool
    error: str | None = None
    skipped: bool = False


class SessionEvent(BaseModel):
    event_type: str
    data: Any = None
    error: Any = None


class ProjectSetupResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    error: str | None = None
    scaffolded: bool = False
    entry_file: str | None = None
