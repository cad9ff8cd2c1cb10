class LivecodeError(Exception):
    """Base class for errors raised by livecode components."""


class SandboxError(LivecodeError):
    """A sandbox operation (spawn, read, write) failed."""


class PreviewAccessError(LivecodeError):
    """The preview surface refused script access (cross-origin, detached frame)."""


class ModelStreamError(LivecodeError):
    """The model stream could not be opened or broke mid-response."""
