"""Per-file hash computation: streaming, retryable and race-aware.

``HashEngine.compute_hash`` runs a bounded attempt loop around one file:

1. With ``verify_integrity`` or ``strict_mode`` a baseline snapshot is taken
   (unless the caller supplied one). Failing to take it is a fatal
   ``Integrity`` outcome.
2. Every attempt asks the circuit breaker first, normalizes the path, checks
   existence, waits (bounded) until the file can be opened for reading,
   re-snapshots to detect a race, streams the content into the digest and
   finally compares a post-read snapshot with the baseline.
3. ``IO``/``Unknown`` failures are reported to the breaker and retried with
   capped exponential backoff. Everything else stops the loop.

Cancellation is cooperative: the shared event is checked between attempts,
while polling for access and between chunks. A cancelled computation raises
``HashCancelled`` instead of returning a result.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from threading import Event
from typing import Callable, Optional

from treehash.core.algorithms import HashAlgorithm, buffer_size_for
from treehash.core.circuit_breaker import CircuitBreakerRegistry
from treehash.core.models import ErrorCategory, HashResult, IntegritySnapshot
from treehash.core.paths import normalize_path
from treehash.errors import HashCancelled, IntegrityViolation
from treehash.settings import HashSettings

logger = logging.getLogger(__name__)

DEFAULT_COMPONENT = "file-io"
ACCESS_POLL_INITIAL = 0.05
ACCESS_POLL_MAX = 1.0


class DirectoryNotFoundError(FileNotFoundError):
    """The parent directory of the requested file does not exist."""


@dataclass
class _AttemptState:
    baseline: Optional[IntegritySnapshot]
    race_detected: bool = False


def categorize(exc: BaseException) -> ErrorCategory:
    """Map an exception raised during an attempt onto the error taxonomy."""
    if isinstance(exc, IntegrityViolation):
        return ErrorCategory.INTEGRITY
    if isinstance(exc, DirectoryNotFoundError):
        return ErrorCategory.DIRECTORY_NOT_FOUND
    if isinstance(exc, FileNotFoundError):
        return ErrorCategory.FILE_NOT_FOUND
    if isinstance(exc, NotADirectoryError):
        return ErrorCategory.DIRECTORY_NOT_FOUND
    if isinstance(exc, PermissionError):
        return ErrorCategory.ACCESS_DENIED
    if isinstance(exc, OSError):
        return ErrorCategory.IO
    return ErrorCategory.UNKNOWN


class HashEngine:
    """Computes file digests under a shared circuit breaker registry."""

    def __init__(
        self,
        settings: Optional[HashSettings] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        cancel_event: Optional[Event] = None,
        sleep_fn: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        component: str = DEFAULT_COMPONENT,
    ) -> None:
        self.settings = settings or HashSettings()
        self.breakers = breakers or CircuitBreakerRegistry(
            threshold=self.settings.circuit_failure_threshold,
            reset_timeout=self.settings.circuit_reset_timeout,
        )
        self.cancel_event = cancel_event or Event()
        self.component = component
        self._sleep_fn = sleep_fn
        self._clock = clock

    def compute_hash(
        self,
        path: str | os.PathLike,
        algorithm: HashAlgorithm | str | None = None,
        retry_count: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        verify_integrity: Optional[bool] = None,
        strict_mode: Optional[bool] = None,
        pre_snapshot: Optional[IntegritySnapshot] = None,
        size_hint: int = 0,
    ) -> HashResult:
        """Hash one file; never raises for per-file failures.

        Args:
            path: File to hash
            algorithm: Digest algorithm (default: settings.algorithm)
            retry_count: Maximum attempts (default: settings.retry_count)
            timeout_seconds: Bound on waiting for read access per attempt
            verify_integrity: Compare metadata before and after the read
            strict_mode: Treat races as failures instead of warnings
            pre_snapshot: Baseline captured earlier, e.g. at discovery
            size_hint: Size reported by discovery, recorded on failures

        Returns:
            HashResult describing success or the last failure

        Raises:
            HashCancelled: if the cancel event was set
        """
        settings = self.settings
        path = os.fspath(path)
        algorithm = HashAlgorithm.parse(algorithm or settings.algorithm)
        retry_count = max(1, retry_count if retry_count is not None else settings.retry_count)
        timeout = timeout_seconds if timeout_seconds is not None else settings.timeout_seconds
        verify = settings.verify_integrity if verify_integrity is None else verify_integrity
        strict = settings.strict_mode if strict_mode is None else strict_mode
        check_integrity = verify or strict
        started = time.perf_counter()

        if check_integrity and pre_snapshot is None:
            try:
                pre_snapshot = IntegritySnapshot.capture(normalize_path(path))
            except OSError as exc:
                return self._failure(
                    path,
                    ErrorCategory.INTEGRITY,
                    f"Unable to capture integrity snapshot: {exc}",
                    attempts=0,
                    started=started,
                    size=size_hint,
                )

        state = _AttemptState(baseline=pre_snapshot)
        result: Optional[HashResult] = None
        for attempt in range(1, retry_count + 1):
            self._checkpoint()
            if not self.breakers.allow(self.component):
                logger.debug("Circuit open for %s; skipping %s", self.component, path)
                return self._failure(
                    path,
                    ErrorCategory.CIRCUIT_BREAKER_OPEN,
                    f"Circuit breaker open for component {self.component}",
                    attempts=attempt - 1,
                    started=started,
                    state=state,
                    size=state.baseline.size if state.baseline else size_hint,
                )

            try:
                digest, size, verified = self._attempt(
                    path, algorithm, timeout, check_integrity, strict, state
                )
            except HashCancelled:
                raise
            except Exception as exc:
                category = categorize(exc)
                result = self._failure(
                    path,
                    category,
                    str(exc) or exc.__class__.__name__,
                    attempts=attempt,
                    started=started,
                    state=state,
                    size=state.baseline.size if state.baseline else size_hint,
                )
            else:
                self.breakers.report(self.component, False)
                return HashResult(
                    path=path,
                    success=True,
                    hash=digest,
                    size=size,
                    attempts=attempt,
                    elapsed_seconds=time.perf_counter() - started,
                    race_condition_detected=state.race_detected,
                    integrity_verified=verified,
                )

            if not category.retriable:
                logger.debug("Non-retriable %s failure for %s: %s", category.value, path, result.error)
                return result

            self.breakers.report(self.component, True)
            if attempt < retry_count:
                delay = min(
                    settings.retry_base_delay * (2 ** (attempt - 1)),
                    settings.retry_max_delay,
                )
                logger.warning(
                    "Attempt %d/%d failed for %s (%s); retrying in %.2fs",
                    attempt,
                    retry_count,
                    path,
                    result.error,
                    delay,
                )
                self._sleep(delay)

        logger.error("All %d attempts failed for %s: %s", retry_count, path, result.error)
        return result

    def _attempt(
        self,
        path: str,
        algorithm: HashAlgorithm,
        timeout: float,
        check_integrity: bool,
        strict: bool,
        state: _AttemptState,
    ) -> tuple[str, int, bool]:
        normalized = normalize_path(path)
        self._ensure_exists(normalized)
        self._wait_until_accessible(normalized, timeout)

        if state.baseline is not None:
            current = IntegritySnapshot.capture(normalized)
            if not state.baseline.matches(current):
                difference = state.baseline.describe_difference(current)
                if strict:
                    raise IntegrityViolation(
                        f"Race condition: file changed before read ({difference})"
                    )
                state.race_detected = True
                logger.warning("Race condition detected for %s: %s", path, difference)
                state.baseline = current

        digest, size = self._digest_file(normalized, algorithm)

        if not check_integrity:
            return digest, size, False
        after = IntegritySnapshot.capture(normalized)
        if state.baseline is None or not state.baseline.matches(after):
            difference = state.baseline.describe_difference(after) if state.baseline else "no baseline"
            raise IntegrityViolation(f"File changed while hashing ({difference})")
        return digest, size, True

    def _ensure_exists(self, path: str) -> None:
        if os.path.isfile(path):
            return
        if os.path.isdir(path):
            raise FileNotFoundError(f"Not a regular file: {path}")
        parent = os.path.dirname(path)
        if parent and not os.path.isdir(parent):
            raise DirectoryNotFoundError(f"Directory not found: {parent}")
        raise FileNotFoundError(f"File not found: {path}")

    def _wait_until_accessible(self, path: str, timeout: float) -> None:
        deadline = self._clock() + timeout
        delay = ACCESS_POLL_INITIAL
        while True:
            self._checkpoint()
            try:
                with open(path, "rb"):
                    return
            except FileNotFoundError:
                raise
            except PermissionError as exc:
                # Sharing violations surface as PermissionError on Windows only.
                if os.name != "nt":
                    raise
                last_error: OSError = exc
            except OSError as exc:
                last_error = exc

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise TimeoutError(
                    f"File not accessible within {timeout:.1f}s: {last_error}"
                ) from last_error
            logger.debug("Waiting %.2fs for access to %s: %s", delay, path, last_error)
            self._sleep(min(delay, remaining))
            delay = min(delay * 2, ACCESS_POLL_MAX)

    def _digest_file(self, path: str, algorithm: HashAlgorithm) -> tuple[str, int]:
        with open(path, "rb") as handle:
            size = os.fstat(handle.fileno()).st_size
            hasher = algorithm.new()
            if size == 0:
                return hasher.hexdigest(), 0

            if size > self.settings.large_file_threshold:
                buffer_size = self.settings.chunk_size
                logger.debug("Streaming %s in %d byte chunks", path, buffer_size)
            else:
                buffer_size = buffer_size_for(algorithm, size)

            total = 0
            while True:
                self._checkpoint()
                chunk = handle.read(buffer_size)
                if not chunk:
                    break
                total += len(chunk)
                if total > size:
                    raise IntegrityViolation(
                        f"Read {total} bytes from a file recorded as {size} bytes; possible corruption"
                    )
                hasher.update(chunk)

        if total < size:
            raise OSError(f"Short read: {total} of {size} bytes")
        return hasher.hexdigest().lower(), size

    def _checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise HashCancelled("Hash computation cancelled")

    def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
        else:
            self.cancel_event.wait(seconds)
        self._checkpoint()

    def _failure(
        self,
        path: str,
        category: ErrorCategory,
        message: str,
        *,
        attempts: int,
        started: float,
        state: Optional[_AttemptState] = None,
        size: int = 0,
    ) -> HashResult:
        return HashResult(
            path=path,
            success=False,
            size=size,
            error=message,
            error_category=category,
            attempts=attempts,
            elapsed_seconds=time.perf_counter() - started,
            race_condition_detected=state.race_detected if state else False,
        )
