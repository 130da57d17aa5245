"""Failure-threshold gate with timed recovery.

A breaker starts closed. ``threshold`` consecutive failures open it; while
open, ``allow()`` returns False without the guarded operation being tried.
Once ``reset_timeout`` seconds have passed since the last failure, calls are
let through again as probes. A successful probe closes the breaker and
clears the counter; a failing probe refreshes the last-failure time and so
keeps the breaker open for another timeout.
"""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Callable, Optional

from treehash.core.models import CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Breaker state for a single component tag."""

    def __init__(
        self,
        component: str,
        threshold: int = 5,
        reset_timeout: float = 60.0,
        now_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.component = component
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._now_fn = now_fn or time.monotonic
        self._lock = Lock()
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._open = False

    def allow(self) -> bool:
        with self._lock:
            if not self._open:
                return True
            return self._timeout_elapsed()

    def report(self, is_failure: bool) -> None:
        with self._lock:
            if is_failure:
                self._failure_count += 1
                self._last_failure_time = self._now_fn()
                if not self._open and self._failure_count >= self.threshold:
                    self._open = True
                    logger.warning(
                        "Circuit breaker opened for %s after %d consecutive failures",
                        self.component,
                        self._failure_count,
                    )
                return

            if self._open:
                # Successes that raced the trip do not close the breaker early.
                if not self._timeout_elapsed():
                    return
                self._open = False
                logger.info("Circuit breaker closed for %s after successful probe", self.component)
            self._failure_count = 0

    def state(self) -> CircuitBreakerState:
        with self._lock:
            return CircuitBreakerState(
                failure_count=self._failure_count,
                last_failure_time=self._last_failure_time,
                is_open=self._open,
            )

    def reset(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._last_failure_time = None
            self._open = False

    def _timeout_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._now_fn() - self._last_failure_time > self.reset_timeout


class CircuitBreakerRegistry:
    """One breaker per component tag, created on first use."""

    def __init__(
        self,
        threshold: int = 5,
        reset_timeout: float = 60.0,
        now_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self._now_fn = now_fn
        self._lock = Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, component: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(component)
            if breaker is None:
                breaker = CircuitBreaker(
                    component,
                    threshold=self.threshold,
                    reset_timeout=self.reset_timeout,
                    now_fn=self._now_fn,
                )
                self._breakers[component] = breaker
            return breaker

    def allow(self, component: str) -> bool:
        return self.breaker(component).allow()

    def report(self, component: str, is_failure: bool) -> None:
        self.breaker(component).report(is_failure)

    def state(self, component: str) -> CircuitBreakerState:
        return self.breaker(component).state()

    def reset(self, component: Optional[str] = None) -> None:
        with self._lock:
            targets = list(self._breakers.values())
        for breaker in targets:
            if component is None or breaker.component == component:
                breaker.reset()

    def open_components(self) -> list[str]:
        with self._lock:
            targets = list(self._breakers.values())
        return sorted(breaker.component for breaker in targets if breaker.state().is_open)
