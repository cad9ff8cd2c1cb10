from __future__ import annotations

import pytest

from livecode.config import Settings
from livecode.parsing.chunks import clear_parse_cache

from _fakes import FakeSandbox


@pytest.fixture
def settings() -> Settings:
    # Fast timers; parse on every fragment
    return Settings(
        default_timeout=0.5,
        build_timeout=0.5,
        install_timeout=0.5,
        detach_after=0.2,
        output_drain_timeout=0.2,
        parse_interval=0.0,
        parse_min_chars=0,
        feedback_debounce=0.05,
    )


@pytest.fixture
def sandbox() -> FakeSandbox:
    return FakeSandbox()


@pytest.fixture(autouse=True)
def _fresh_parse_cache() -> None:
    clear_parse_cache()
