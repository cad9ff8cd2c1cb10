import codecs


class StreamDecoder:
    """Accumulate model stream fragments into a growing text buffer.

    Fragments may be ``bytes`` split in the middle of a UTF-8 sequence; the
    incremental decoder holds the partial sequence until the rest arrives.
    ``str`` fragments are appended as-is.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._parts: list[str] = []
        self._length = 0

    def feed(self, fragment: bytes | str) -> str:
        """Append a fragment and return the text it contributed."""
        if isinstance(fragment, str):
            text = fragment
        else:
            text = self._decoder.decode(fragment)
        if text:
            self._parts.append(text)
            self._length += len(text)
        return text

    def finish(self) -> str:
        """Flush any buffered partial sequence (as replacement chars if incomplete)."""
        text = self._decoder.decode(b"", final=True)
        if text:
            self._parts.append(text)
            self._length += len(text)
        return text

    @property
    def text(self) -> str:
        if len(self._parts) > 1:
            self._parts = ["".join(self._parts)]
        return self._parts[0] if self._parts else ""

    def __len__(self) -> int:
        return self._length
