"""Application bootstrap with dependency injection."""

from __future__ import annotations

from pathlib import Path
from threading import Event
from typing import Callable, Optional

from .core.circuit_breaker import CircuitBreakerRegistry
from .core.hash_engine import HashEngine
from .core.models import RunStatistics
from .core.orchestrator import HashRun
from .infrastructure.result_log import ResumableLog
from .settings import HashSettings, load_settings


class TreeHashApp:
    """Run context shared by every component of one process.

    Holds what would otherwise be process-wide globals: settings, circuit
    breaker state, run statistics and the cancellation signal.
    """

    def __init__(
        self,
        settings: Optional[HashSettings] = None,
        sleep_fn: Optional[Callable[[float], None]] = None,
        now_fn: Optional[Callable[[], float]] = None,
    ):
        """Initialize the run context.

        Args:
            settings: Resolved settings (default: built-in defaults)
            sleep_fn: Replacement for backoff sleeps (tests)
            now_fn: Monotonic clock for circuit breakers (tests)
        """
        self.settings = settings or HashSettings()
        self.cancel_event = Event()
        self.stats = RunStatistics()
        self.breakers = CircuitBreakerRegistry(
            threshold=self.settings.circuit_failure_threshold,
            reset_timeout=self.settings.circuit_reset_timeout,
            now_fn=now_fn,
        )
        self.engine = HashEngine(
            settings=self.settings,
            breakers=self.breakers,
            cancel_event=self.cancel_event,
            sleep_fn=sleep_fn,
        )

    def open_log(self, path: Path) -> ResumableLog:
        settings = self.settings
        return ResumableLog(
            path,
            batch_size=settings.batch_size,
            max_flush_entries=settings.max_flush_entries,
            flush_interval=settings.flush_interval,
            lock_retries=settings.lock_retries,
        )

    def create_run(self, log_path: Path) -> HashRun:
        return HashRun(self, self.open_log(log_path))

    def cancel(self) -> None:
        """Ask every worker to stop at its next checkpoint."""
        self.cancel_event.set()

    @classmethod
    def from_config(cls, config_path: Optional[Path], **overrides) -> TreeHashApp:
        """Create app from a settings file, environment and explicit overrides.

        Args:
            config_path: JSON settings path (missing file means defaults)
            **overrides: Settings fields to override; None values are ignored

        Returns:
            TreeHashApp instance
        """
        settings = load_settings(config_path).with_overrides(**overrides)
        return cls(settings=settings)
