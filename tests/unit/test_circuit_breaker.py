"""Unit tests for the circuit breaker."""

from __future__ import annotations

import threading

import pytest

from tests.helpers.clock import FakeClock
from treehash.core.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry


def _registry(clock: FakeClock, threshold: int = 3, timeout: float = 10.0) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(threshold=threshold, reset_timeout=timeout, now_fn=clock)


def test_closed_by_default(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock)

    assert registry.allow("disk") is True
    state = registry.state("disk")
    assert state.failure_count == 0
    assert state.is_open is False


def test_opens_after_threshold_consecutive_failures(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock, threshold=3)

    registry.report("disk", True)
    registry.report("disk", True)
    assert registry.allow("disk") is True

    registry.report("disk", True)
    assert registry.allow("disk") is False
    assert registry.state("disk").is_open is True
    assert registry.state("disk").failure_count == 3


def test_success_resets_consecutive_failures(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock, threshold=3)

    registry.report("disk", True)
    registry.report("disk", True)
    registry.report("disk", False)
    registry.report("disk", True)
    registry.report("disk", True)

    assert registry.allow("disk") is True
    assert registry.state("disk").failure_count == 2


def test_success_before_timeout_does_not_close(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock, threshold=2, timeout=10.0)
    registry.report("disk", True)
    registry.report("disk", True)

    fake_clock.advance(5)
    registry.report("disk", False)

    assert registry.allow("disk") is False
    assert registry.state("disk").is_open is True


def test_recovers_after_timeout_and_successful_probe(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock, threshold=3, timeout=10.0)
    for _ in range(3):
        registry.report("disk", True)
    assert registry.allow("disk") is False

    fake_clock.advance(10.5)
    assert registry.allow("disk") is True

    registry.report("disk", False)

    assert registry.allow("disk") is True
    state = registry.state("disk")
    assert state.is_open is False
    assert state.failure_count == 0


def test_failing_probe_extends_open_period(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock, threshold=2, timeout=10.0)
    registry.report("disk", True)
    registry.report("disk", True)

    fake_clock.advance(11)
    assert registry.allow("disk") is True
    registry.report("disk", True)

    assert registry.allow("disk") is False
    fake_clock.advance(5)
    assert registry.allow("disk") is False
    fake_clock.advance(6)
    assert registry.allow("disk") is True


def test_components_are_independent(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock, threshold=1)

    registry.report("nas-a", True)

    assert registry.allow("nas-a") is False
    assert registry.allow("nas-b") is True
    assert registry.open_components() == ["nas-a"]
    assert registry.breaker("nas-a") is registry.breaker("nas-a")


def test_reset_clears_state(fake_clock: FakeClock) -> None:
    registry = _registry(fake_clock, threshold=1)
    registry.report("disk", True)

    registry.reset("disk")

    assert registry.allow("disk") is True
    assert registry.state("disk").last_failure_time is None


def test_rejects_invalid_threshold() -> None:
    with pytest.raises(ValueError):
        CircuitBreaker("disk", threshold=0)


def test_concurrent_reports_are_serialized(fake_clock: FakeClock) -> None:
    breaker = CircuitBreaker("disk", threshold=10_000, reset_timeout=1.0, now_fn=fake_clock)

    def worker() -> None:
        for _ in range(250):
            breaker.report(True)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert breaker.state().failure_count == 2000
