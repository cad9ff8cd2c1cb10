import time
from collections.abc import Callable

from livecode.types import CachedCommandResult, CommandResult


class CommandCache:
    """Bounded, expiring cache of read-only command results keyed by command text.

    When full, the oldest half of the entries (by timestamp) is evicted before
    inserting. Entries older than ``ttl`` seconds are treated as missing.
    """

    def __init__(
        self,
        max_entries: int = 20,
        ttl: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, CachedCommandResult] = {}

    def get(self, command: str) -> CommandResult | None:
        cached = self._entries.get(command)
        if cached is None:
            return None
        if self._clock() - cached.timestamp >= self.ttl:
            del self._entries[command]
            return None
        return cached.result

    def set(self, command: str, result: CommandResult) -> None:
        if command not in self._entries and len(self._entries) >= self.max_entries:
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1].timestamp)
            for key, _ in oldest[: max(1, self.max_entries // 2)]:
                del self._entries[key]
        self._entries[command] = CachedCommandResult(result=result, timestamp=self._clock())

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, command: str) -> bool:
        return self.get(command) is not None
