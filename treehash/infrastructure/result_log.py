"""
Append-only result log with batched writes and crash-safe replay.

Every hashed file produces exactly one line:

    <path> = <lowercase-hex-hash>, size: <bytes>
    <path> = ERROR(<Category>): <message>, size: <bytes>

Lines starting with ``#`` and blank lines are comments. The log is never
rewritten; replaying it yields the Processed/Failed maps a restarted run uses
to skip work that is already durable. A file that was being hashed when the
process died has no line and is hashed again.

Writes are at-least-once: a batch that cannot be written is rolled back to
the offset it started at, pushed back to the front of the queue, and the
error is raised to the caller. Writers in other processes are serialized by
an OS-level lock on ``<log>.lock``, which the OS releases if a writer dies.
"""
from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections import deque
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union

from filelock import FileLock, Timeout as FileLockTimeout

from treehash.core.models import ErrorCategory, HashResult
from treehash.errors import LogWriteError

logger = logging.getLogger(__name__)

DEFAULT_STREAMING_THRESHOLD = 64 * 1024 * 1024
_ENCODING = "utf-8"
_ERRORS = "surrogateescape"

_FAILURE_RE = re.compile(
    r"^(?P<path>.+?) = ERROR\((?P<category>[A-Za-z]+)\): (?P<message>.*), size: (?P<size>\d+)$"
)
_SUCCESS_RE = re.compile(r"^(?P<path>.+) = (?P<hash>[0-9a-fA-F]+), size: (?P<size>\d+)$")
_HEADER_RE = re.compile(r"^# (?P<key>[A-Za-z_][\w-]*): (?P<value>.*)$")


@dataclass(frozen=True)
class LogRecord:
    """A successful outcome replayed from the log."""
    path: str
    hash: str
    size: int


@dataclass(frozen=True)
class FailureRecord:
    """A failed outcome replayed from the log."""
    path: str
    category: ErrorCategory
    message: str
    size: int


@dataclass
class LogReplayStats:
    lines: int = 0
    processed: int = 0
    failed: int = 0
    comments: int = 0
    malformed: int = 0
    torn: int = 0
    streamed: bool = False

    def to_dict(self) -> dict:
        return {
            "lines": self.lines,
            "processed": self.processed,
            "failed": self.failed,
            "comments": self.comments,
            "malformed": self.malformed,
            "torn": self.torn,
            "streamed": self.streamed,
        }


@dataclass
class ResumeState:
    """Path-keyed outcomes recorded by earlier runs."""
    processed: dict[str, LogRecord] = field(default_factory=dict)
    failed: dict[str, FailureRecord] = field(default_factory=dict)
    stats: LogReplayStats = field(default_factory=LogReplayStats)
    header: dict[str, str] = field(default_factory=dict)

    def should_skip(self, path: str, retry_failed: bool = False) -> bool:
        """True when ``path`` already has a final outcome in the log."""
        if path in self.processed:
            return True
        failure = self.failed.get(path)
        if failure is None:
            return False
        if retry_failed:
            return False
        return not failure.category.resumable


def is_loggable_path(path: str) -> bool:
    """Paths with line breaks cannot be represented in the line format."""
    return "\n" not in path and "\r" not in path


def format_entry(result: HashResult) -> str:
    """Serialize a HashResult as a single log line (no newline).

    Raises:
        ValueError: the path contains a line break
    """
    if not is_loggable_path(result.path):
        raise ValueError(f"Path contains a line break: {result.path!r}")
    path = result.path
    if result.success:
        return f"{path} = {result.hash}, size: {result.size}"
    category = result.error_category or ErrorCategory.UNKNOWN
    message = _single_line(result.error or "")
    return f"{path} = ERROR({category.value}): {message}, size: {result.size}"


def parse_line(line: str) -> Union[LogRecord, FailureRecord, None]:
    """Parse one log line.

    Returns None for blank and comment lines; raises ValueError when the line
    matches neither grammar.
    """
    text = line.rstrip("\r\n")
    if not text.strip() or text.lstrip().startswith("#"):
        return None

    match = _FAILURE_RE.match(text)
    if match:
        raw_category = match.group("category")
        try:
            category = ErrorCategory(raw_category)
        except ValueError:
            logger.warning("Unknown error category %r in log line; treating as Unknown", raw_category)
            category = ErrorCategory.UNKNOWN
        return FailureRecord(
            path=match.group("path"),
            category=category,
            message=match.group("message"),
            size=int(match.group("size")),
        )

    match = _SUCCESS_RE.match(text)
    if match:
        return LogRecord(
            path=match.group("path"),
            hash=match.group("hash").lower(),
            size=int(match.group("size")),
        )
    raise ValueError(f"Unrecognized log line: {text[:200]!r}")


def load_existing(
    path: Path,
    streaming_threshold: int = DEFAULT_STREAMING_THRESHOLD,
) -> ResumeState:
    """Replay a result log top to bottom.

    Later lines for the same path supersede earlier ones. A final line
    without a newline is a torn write from a crash and is ignored. Logs larger
    than ``streaming_threshold`` bytes are read line by line.
    """
    state = ResumeState()
    path = Path(path)
    if not path.exists():
        return state

    size = path.stat().st_size
    stats = state.stats
    stats.streamed = size > streaming_threshold
    for line in _iter_lines(path, stats.streamed):
        stats.lines += 1
        if not line.endswith("\n"):
            stats.torn += 1
            logger.warning("Ignoring torn final line in %s", path)
            continue
        try:
            record = parse_line(line)
        except ValueError as exc:
            stats.malformed += 1
            logger.warning("%s:%d: %s", path, stats.lines, exc)
            continue
        if record is None:
            stats.comments += 1
            _read_header_line(line, state.header)
        elif isinstance(record, LogRecord):
            state.failed.pop(record.path, None)
            state.processed[record.path] = record
        else:
            state.processed.pop(record.path, None)
            state.failed[record.path] = record

    stats.processed = len(state.processed)
    stats.failed = len(state.failed)
    logger.info(
        "Replayed %s: %d processed, %d failed, %d malformed",
        path,
        stats.processed,
        stats.failed,
        stats.malformed,
    )
    return state


def _iter_lines(path: Path, streamed: bool) -> Iterator[str]:
    if streamed:
        with path.open("r", encoding=_ENCODING, errors=_ERRORS, newline="\n") as handle:
            yield from handle
        return
    with path.open("r", encoding=_ENCODING, errors=_ERRORS, newline="\n") as handle:
        text = handle.read()
    parts = text.split("\n")
    for part in parts[:-1]:
        yield part + "\n"
    if parts[-1]:
        yield parts[-1]


def _read_header_line(line: str, header: dict[str, str]) -> None:
    match = _HEADER_RE.match(line.rstrip("\r\n"))
    if match:
        header.setdefault(match.group("key"), match.group("value"))


def _single_line(value: str) -> str:
    return value.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")


class ResumableLog:
    """
    Batched, lock-serialized writer for one result log file.

    Usage:
        with ResumableLog(path) as log:
            log.initialize({"algorithm": "SHA256"})
            log.append(result)
        # the exit performs a final flush
    """

    def __init__(
        self,
        path: Path,
        batch_size: int = 100,
        max_flush_entries: int = 1000,
        flush_interval: float = 5.0,
        lock_retries: int = 10,
        lock_retry_delay: float = 0.05,
        lock_timeout: float = 10.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.batch_size = batch_size
        self.max_flush_entries = max_flush_entries
        self.flush_interval = flush_interval
        self.lock_retries = lock_retries
        self.lock_retry_delay = lock_retry_delay
        self.lock_timeout = lock_timeout
        self._file_lock = FileLock(str(self.lock_path), timeout=lock_timeout)
        self._sleep = sleep_fn
        self._queue: deque[str] = deque()
        self._flush_lock = threading.Lock()
        self._stop = threading.Event()
        self._flusher: Optional[threading.Thread] = None
        self.entries_written = 0

    def __enter__(self) -> ResumableLog:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    @property
    def pending(self) -> int:
        return len(self._queue)

    def initialize(self, header: Mapping[str, object]) -> None:
        """Create the log (or reopen it for a resumed run) and write the header."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            resumed = self.path.exists() and self.path.stat().st_size > 0
            if resumed:
                with self._file_lock:
                    self._drop_torn_tail()
            now = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            lines = [f"# resumed: {now}"] if resumed else []
            lines.extend(f"# {key}: {_single_line(str(value))}" for key, value in header.items())
            with self._flush_lock:
                self._write_lines(lines)
        except LogWriteError:
            raise
        except OSError as exc:
            raise LogWriteError(f"Cannot create result log {self.path}: {exc}") from exc
        logger.debug("Result log %s ready (resumed=%s)", self.path, resumed)

    def append(self, result: HashResult, use_batching: bool = True) -> None:
        line = format_entry(result)
        if not use_batching:
            with self._flush_lock:
                self._write_lines([line])
            return
        self._queue.append(line)
        if len(self._queue) >= self.batch_size and self._flush_lock.acquire(blocking=False):
            try:
                self._drain()
            finally:
                self._flush_lock.release()

    def flush(self) -> int:
        """Write every queued entry. Returns the number of lines written."""
        with self._flush_lock:
            return self._drain()

    def start(self) -> None:
        """Start the periodic flush thread."""
        if self._flusher is not None:
            return
        self._stop.clear()
        self._flusher = threading.Thread(
            target=self._run_flusher,
            name=f"treehash-log-flush:{self.path.name}",
            daemon=True,
        )
        self._flusher.start()

    def close(self) -> None:
        """Stop the flush thread and perform one final flush."""
        self._stop.set()
        if self._flusher is not None:
            self._flusher.join()
            self._flusher = None
        self.flush()

    def load_existing(self, streaming_threshold: int = DEFAULT_STREAMING_THRESHOLD) -> ResumeState:
        return load_existing(self.path, streaming_threshold)

    def _run_flusher(self) -> None:
        while not self._stop.wait(self.flush_interval):
            try:
                self.flush()
            except LogWriteError as exc:
                logger.error("Periodic flush of %s failed; entries kept for retry: %s", self.path, exc)

    def _drain(self) -> int:
        written = 0
        while True:
            batch = self._dequeue(self.max_flush_entries)
            if not batch:
                return written
            try:
                self._write_lines(batch)
            except LogWriteError:
                self._queue.extendleft(reversed(batch))
                raise
            written += len(batch)

    def _dequeue(self, limit: int) -> list[str]:
        batch: list[str] = []
        while len(batch) < limit:
            try:
                batch.append(self._queue.popleft())
            except IndexError:
                break
        return batch

    def _write_lines(self, lines: Iterable[str]) -> None:
        payload = "".join(f"{line}\n" for line in lines)
        if not payload:
            return
        data = payload.encode(_ENCODING, errors=_ERRORS)
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.lock_retries + 1):
            try:
                with self._file_lock:
                    self._append(data)
            except (FileLockTimeout, OSError) as exc:
                last_error = exc
                if attempt < self.lock_retries:
                    delay = min(self.lock_retry_delay * (2 ** (attempt - 1)), 1.0)
                    logger.debug("Log write attempt %d failed for %s: %s", attempt, self.path, exc)
                    self._sleep(delay)
                continue
            self.entries_written += payload.count("\n")
            return
        raise LogWriteError(
            f"Failed to append to {self.path} after {self.lock_retries} attempts: {last_error}"
        ) from last_error

    def _append(self, data: bytes) -> None:
        """Append ``data`` completely or not at all.

        Must be called with the file lock held. A failed write is truncated
        back to the starting offset so a retry never glues a fragment onto
        the next line.
        """
        with self.path.open("ab", buffering=0) as handle:
            start = handle.seek(0, os.SEEK_END)
            if start and not _ends_with_newline(self.path):
                # A fragment survived an earlier failed rollback; fence it off.
                data = b"\n" + data
            try:
                _write_all(handle, data)
                os.fsync(handle.fileno())
            except OSError:
                try:
                    os.ftruncate(handle.fileno(), start)
                except OSError as exc:
                    logger.error("Cannot roll back partial write to %s: %s", self.path, exc)
                raise

    def _drop_torn_tail(self) -> None:
        with self.path.open("rb+") as handle:
            handle.seek(0, os.SEEK_END)
            end = handle.tell()
            handle.seek(end - 1)
            if handle.read(1) == b"\n":
                return
            # Walk back to the last complete line.
            position = end
            block = 4096
            keep = 0
            while position > 0:
                start = max(0, position - block)
                handle.seek(start)
                chunk = handle.read(position - start)
                index = chunk.rfind(b"\n")
                if index != -1:
                    keep = start + index + 1
                    break
                position = start
            handle.truncate(keep)
        logger.warning("Truncated torn final line of %s at byte %d", self.path, keep)


def _write_all(handle, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = handle.write(view)
        view = view[written:]


def _ends_with_newline(path: Path) -> bool:
    with path.open("rb") as handle:
        handle.seek(-1, os.SEEK_END)
        return handle.read(1) == b"\n"
