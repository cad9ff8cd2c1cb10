from __future__ import annotations

from livecode.commands.cache import CommandCache
from livecode.types import CommandResult


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _ok(output: str) -> CommandResult:
    return CommandResult(success=True, output=output, exit_code=0)


def test_hit_returns_same_object_until_ttl() -> None:
    clock = _Clock()
    cache = CommandCache(ttl=15.0, clock=clock)
    result = _ok("{}")
    cache.set("cat package.json", result)

    clock.now = 14.9
    assert cache.get("cat package.json") is result

    clock.now = 15.0
    assert cache.get("cat package.json") is None
    assert len(cache) == 0


def test_full_cache_evicts_oldest_half() -> None:
    clock = _Clock()
    cache = CommandCache(max_entries=4, clock=clock)
    for i in range(4):
        clock.now = float(i)
        cache.set(f"cmd{i}", _ok(str(i)))

    clock.now = 4.0
    cache.set("cmd4", _ok("4"))

    assert "cmd0" not in cache
    assert "cmd1" not in cache
    assert "cmd2" in cache
    assert "cmd3" in cache
    assert "cmd4" in cache


def test_overwriting_existing_key_does_not_evict() -> None:
    cache = CommandCache(max_entries=2)
    cache.set("a", _ok("1"))
    cache.set("b", _ok("2"))
    cache.set("a", _ok("3"))
    assert len(cache) == 2
    assert cache.get("a").output == "3"
