"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from typing import Callable

import pytest

from tests.helpers.clock import FakeClock, SleepRecorder
from treehash.app import TreeHashApp
from treehash.settings import HashSettings


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = os.getenv("RUN_SLOW", "").lower() in {"1", "true", "yes"}
    for item in items:
        if "slow" in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason="slow test"))


@pytest.fixture(autouse=True)
def _isolate_treehash_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer TREEHASH_* variables out of the tests."""
    for key in list(os.environ):
        if key.startswith("TREEHASH_"):
            monkeypatch.delenv(key)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def test_settings() -> HashSettings:
    """Small, fast settings for tests."""
    return HashSettings(
        max_workers=2,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        timeout_seconds=2.0,
        flush_interval=0.05,
        batch_size=2,
    )


@pytest.fixture
def make_app(test_settings: HashSettings, sleeps: SleepRecorder) -> Callable[..., TreeHashApp]:
    """Factory for apps with recorded (non-blocking) backoff sleeps."""

    def _make(**overrides) -> TreeHashApp:
        settings = test_settings.with_overrides(**overrides)
        return TreeHashApp(settings=settings, sleep_fn=sleeps)

    return _make
