"""Run orchestration: resume, worker pool, durable logging, final barrier."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from treehash import __version__ as TREEHASH_VERSION
from treehash.core.aggregator import combine
from treehash.core.models import (
    DirectoryIntegrityResult,
    FileDescriptor,
    HashResult,
    IntegritySnapshot,
)
from treehash.errors import HashCancelled, LogWriteError, ValidationError
from treehash.settings import settings_hash
from treehash.infrastructure.result_log import (
    LogReplayStats,
    ResumableLog,
    ResumeState,
    is_loggable_path,
    load_existing,
)

if TYPE_CHECKING:
    from treehash.app import TreeHashApp

logger = logging.getLogger(__name__)


@dataclass
class RunReport:
    """Outcome of one orchestrated run."""
    log_path: Path
    result: Optional[DirectoryIntegrityResult]
    stats: dict[str, int]
    cancelled: bool = False
    failures: list[HashResult] = field(default_factory=list)
    resume: LogReplayStats = field(default_factory=LogReplayStats)
    logged_failures: int = 0

    @property
    def has_failures(self) -> bool:
        """True if any file of the tree has no digest, this run or an earlier one."""
        return (
            bool(self.failures)
            or self.logged_failures > 0
            or self.stats.get("rejected", 0) > 0
        )

    def to_dict(self) -> dict:
        return {
            "log_path": str(self.log_path),
            "cancelled": self.cancelled,
            "result": self.result.to_dict() if self.result else None,
            "stats": dict(self.stats),
            "resume": self.resume.to_dict(),
            "logged_failures": self.logged_failures,
            "failures": [
                {
                    "path": failure.path,
                    "category": failure.error_category.value if failure.error_category else None,
                    "error": failure.error,
                }
                for failure in self.failures
            ],
        }


def build_header(
    app: TreeHashApp,
    root: Optional[str],
    discovery: Optional[str] = None,
) -> dict[str, str]:
    """Header lines identifying the tool, settings and source of a run."""
    settings = app.settings
    header = {
        "tool": f"treehash {TREEHASH_VERSION}",
        "started": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "algorithm": settings.algorithm.value,
        "source": root or "",
        "settings": settings_hash(settings)[:16],
        "mode": "strict" if settings.strict_mode else (
            "verify" if settings.verify_integrity else "fast"
        ),
    }
    if discovery:
        header["discovery"] = discovery
    return header


class HashRun:
    """Dispatches hash computations for one log file.

    Outcomes are appended to the log by the worker that produced them. The
    composite hash is computed only after every dispatched file has an
    outcome and the log has been closed, and it is computed from the log
    itself, so a resumed run and an uninterrupted run agree.
    """

    def __init__(self, app: TreeHashApp, log: ResumableLog) -> None:
        self.app = app
        self.log = log
        self._ignored = {
            os.path.abspath(log.path),
            os.path.abspath(log.lock_path),
        }

    def cancel(self) -> None:
        self.app.cancel()

    def run(
        self,
        descriptors: Iterable[FileDescriptor],
        root: Optional[str] = None,
        header: Optional[Mapping[str, object]] = None,
    ) -> RunReport:
        """Hash every descriptor not already recorded and aggregate the log.

        Raises:
            LogWriteError: the log could not be created or the final flush failed
            ValidationError: the existing log was written with another algorithm
        """
        settings = self.app.settings
        stats = self.app.stats
        resume = load_existing(self.log.path, settings.log_streaming_threshold)
        self._check_compatible(resume.header)
        if resume.processed or resume.failed:
            logger.info(
                "Resuming from %s: %d processed, %d failed",
                self.log.path,
                len(resume.processed),
                len(resume.failed),
            )

        self.log.initialize(header if header is not None else build_header(self.app, root))
        self.log.start()
        failures: list[HashResult] = []
        cancelled = False
        try:
            cancelled = self._dispatch(descriptors, resume, failures)
        finally:
            self.log.close()

        cancelled = cancelled or self.app.cancel_event.is_set()
        if cancelled:
            logger.warning("Run cancelled; %d entries durable in %s", self.log.entries_written, self.log.path)
            return RunReport(
                log_path=self.log.path,
                result=None,
                stats=stats.snapshot(),
                cancelled=True,
                failures=failures,
                resume=resume.stats,
            )

        final = load_existing(self.log.path, settings.log_streaming_threshold)
        result = combine(
            final.processed,
            settings.algorithm,
            root=root,
            sort_mode=settings.sort_mode,
            combine_mode=settings.combine_mode,
            entry_algorithm=settings.algorithm,
        )
        if result is None:
            logger.info("No files hashed; no composite hash for %s", root or self.log.path)
        return RunReport(
            log_path=self.log.path,
            result=result,
            stats=stats.snapshot(),
            failures=failures,
            resume=resume.stats,
            logged_failures=len(final.failed),
        )

    def _dispatch(
        self,
        descriptors: Iterable[FileDescriptor],
        resume: ResumeState,
        failures: list[HashResult],
    ) -> bool:
        settings = self.app.settings
        stats = self.app.stats
        max_pending = settings.max_workers * 4
        pending: set[Future] = set()
        with ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="treehash-worker"
        ) as executor:
            try:
                for descriptor in descriptors:
                    if self.app.cancel_event.is_set():
                        break
                    if os.path.abspath(descriptor.path) in self._ignored:
                        continue
                    stats.increment("discovered")
                    if not is_loggable_path(descriptor.path):
                        logger.warning(
                            "Skipping %r: line breaks cannot be recorded in the log",
                            descriptor.path,
                        )
                        stats.increment("rejected")
                        continue
                    if resume.should_skip(descriptor.path, settings.retry_failed):
                        stats.increment("skipped")
                        continue
                    pending.add(executor.submit(self._process, descriptor))
                    if len(pending) >= max_pending:
                        done, pending = wait(pending, return_when=FIRST_COMPLETED)
                        self._harvest(done, failures)
                while pending:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    self._harvest(done, failures)
            except KeyboardInterrupt:
                logger.warning("Interrupted; cancelling %d pending files", len(pending))
                self.cancel()
                for future in pending:
                    future.cancel()
                return True
        return False

    def _harvest(self, done: set[Future], failures: list[HashResult]) -> None:
        for future in done:
            result = future.result()
            if result is not None and not result.success:
                failures.append(result)

    def _process(self, descriptor: FileDescriptor) -> Optional[HashResult]:
        settings = self.app.settings
        pre_snapshot = None
        if settings.snapshot_from_discovery and (settings.verify_integrity or settings.strict_mode):
            pre_snapshot = IntegritySnapshot.from_descriptor(descriptor)
        try:
            result = self.app.engine.compute_hash(
                descriptor.path, pre_snapshot=pre_snapshot, size_hint=descriptor.size
            )
        except HashCancelled:
            logger.debug("Cancelled before finishing %s", descriptor.path)
            return None

        self.app.stats.record(result)
        if not result.success:
            logger.warning(
                "Failed %s: %s: %s",
                descriptor.path,
                result.error_category.value if result.error_category else "Unknown",
                result.error,
            )
        try:
            self.log.append(result)
        except LogWriteError as exc:
            # The entry stays queued; close() retries and raises if still failing.
            logger.error("Deferred log write for %s: %s", descriptor.path, exc)
        return result

    def _check_compatible(self, header: Mapping[str, str]) -> None:
        recorded = header.get("algorithm")
        current = self.app.settings.algorithm.value
        if recorded and recorded.upper() != current:
            raise ValidationError(
                f"Log {self.log.path} was written with {recorded}; refusing to resume with {current}"
            )
