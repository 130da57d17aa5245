"""Core data models for hashing, integrity snapshots and run outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import hashlib
import os
import stat
from threading import Lock
from typing import Optional

# FILE_ATTRIBUTE_READONLY; stat only exposes it on Windows builds.
_WINDOWS_READONLY = getattr(stat, "FILE_ATTRIBUTE_READONLY", 0x1)


class ErrorCategory(str, Enum):
    """Failure taxonomy recorded in HashResult and the result log."""

    FILE_NOT_FOUND = "FileNotFound"
    DIRECTORY_NOT_FOUND = "DirectoryNotFound"
    ACCESS_DENIED = "AccessDenied"
    INTEGRITY = "Integrity"
    IO = "IO"
    CIRCUIT_BREAKER_OPEN = "CircuitBreakerOpen"
    UNKNOWN = "Unknown"

    @property
    def retriable(self) -> bool:
        """Whether the attempt loop may try again after this failure."""
        return self in (ErrorCategory.IO, ErrorCategory.UNKNOWN)

    @property
    def resumable(self) -> bool:
        """Whether a later run should hash the file again."""
        return self.retriable or self is ErrorCategory.CIRCUIT_BREAKER_OPEN


@dataclass(frozen=True)
class FileDescriptor:
    """A file produced by discovery. Immutable once produced."""
    path: str
    size: int
    last_write_time: datetime
    attributes: int
    is_symlink: bool = False

    @classmethod
    def from_stat(cls, path: str, st: os.stat_result, is_symlink: bool = False) -> FileDescriptor:
        return cls(
            path=path,
            size=st.st_size,
            last_write_time=_mtime_utc(st),
            attributes=_attributes(st),
            is_symlink=is_symlink,
        )


@dataclass(frozen=True)
class IntegritySnapshot:
    """File metadata captured before and after hashing."""
    size: int
    last_write_time: datetime
    attributes: int
    read_only: bool
    captured_at: datetime
    path_identity: str

    def matches(self, other: IntegritySnapshot) -> bool:
        """Two snapshots match iff size, mtime, attributes and read-only agree."""
        return (
            self.size == other.size
            and self.last_write_time == other.last_write_time
            and self.attributes == other.attributes
            and self.read_only == other.read_only
        )

    def describe_difference(self, other: IntegritySnapshot) -> str:
        changes = []
        if self.size != other.size:
            changes.append(f"size {self.size} -> {other.size}")
        if self.last_write_time != other.last_write_time:
            changes.append(
                f"mtime {self.last_write_time.isoformat()} -> {other.last_write_time.isoformat()}"
            )
        if self.attributes != other.attributes:
            changes.append(f"attributes {self.attributes:#x} -> {other.attributes:#x}")
        if self.read_only != other.read_only:
            changes.append(f"read_only {self.read_only} -> {other.read_only}")
        return ", ".join(changes) or "no change"

    @classmethod
    def capture(cls, path: str) -> IntegritySnapshot:
        """Stat ``path`` now. Raises OSError if the file cannot be stat'ed."""
        st = os.stat(path)
        return cls._build(path, st.st_size, _mtime_utc(st), _attributes(st))

    @classmethod
    def from_descriptor(cls, descriptor: FileDescriptor) -> IntegritySnapshot:
        return cls._build(
            descriptor.path,
            descriptor.size,
            descriptor.last_write_time,
            descriptor.attributes,
        )

    @classmethod
    def _build(cls, path: str, size: int, mtime: datetime, attributes: int) -> IntegritySnapshot:
        return cls(
            size=size,
            last_write_time=mtime,
            attributes=attributes,
            read_only=_is_read_only(attributes),
            captured_at=datetime.now(timezone.utc),
            path_identity=path_identity(path),
        )


@dataclass(frozen=True)
class HashResult:
    """Outcome of hashing one file in one run."""
    path: str
    success: bool
    hash: Optional[str] = None
    size: int = 0
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    attempts: int = 0
    elapsed_seconds: float = 0.0
    race_condition_detected: bool = False
    integrity_verified: bool = False

    def __post_init__(self) -> None:
        if self.hash is not None and not self.success:
            raise ValueError("HashResult with a hash must be successful")
        if not self.success and self.error_category is None:
            raise ValueError("Failed HashResult requires an error category")

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "success": self.success,
            "hash": self.hash,
            "size": self.size,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
            "attempts": self.attempts,
            "elapsed_seconds": round(self.elapsed_seconds, 6),
            "race_condition_detected": self.race_condition_detected,
            "integrity_verified": self.integrity_verified,
        }


@dataclass(frozen=True)
class CircuitBreakerState:
    failure_count: int = 0
    last_failure_time: Optional[float] = None
    is_open: bool = False


@dataclass(frozen=True)
class DirectoryIntegrityResult:
    """Composite hash summarizing a set of per-file hashes."""
    composite_hash: str
    file_count: int
    total_bytes: int
    algorithm: str
    sort_mode: str
    combine_mode: str
    duration_seconds: float
    files_per_second: float
    bytes_per_second: float
    generated_at: str
    skipped_entries: int = 0

    def to_dict(self) -> dict:
        return {
            "composite_hash": self.composite_hash,
            "file_count": self.file_count,
            "total_bytes": self.total_bytes,
            "algorithm": self.algorithm,
            "sort_mode": self.sort_mode,
            "combine_mode": self.combine_mode,
            "skipped_entries": self.skipped_entries,
            "performance": {
                "duration_seconds": round(self.duration_seconds, 6),
                "files_per_second": round(self.files_per_second, 3),
                "bytes_per_second": round(self.bytes_per_second, 3),
            },
            "generated_at": self.generated_at,
        }


@dataclass
class RunStatistics:
    """Counters shared by all workers of a run."""
    discovered: int = 0
    skipped: int = 0
    processed: int = 0
    failed: int = 0
    bytes_hashed: int = 0
    race_conditions: int = 0
    retries: int = 0
    rejected: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def record(self, result: HashResult) -> None:
        with self._lock:
            if result.success:
                self.processed += 1
                self.bytes_hashed += result.size
            else:
                self.failed += 1
            if result.race_condition_detected:
                self.race_conditions += 1
            if result.attempts > 1:
                self.retries += result.attempts - 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "discovered": self.discovered,
                "skipped": self.skipped,
                "processed": self.processed,
                "failed": self.failed,
                "bytes_hashed": self.bytes_hashed,
                "race_conditions": self.race_conditions,
                "retries": self.retries,
                "rejected": self.rejected,
            }


def path_identity(path: str) -> str:
    return hashlib.sha256(path.encode("utf-8", errors="surrogateescape")).hexdigest()[:16]


def _mtime_utc(st: os.stat_result) -> datetime:
    return datetime.fromtimestamp(st.st_mtime_ns / 1_000_000_000, tz=timezone.utc)


def _attributes(st: os.stat_result) -> int:
    windows_attributes = getattr(st, "st_file_attributes", None)
    if windows_attributes is not None:
        return windows_attributes
    return st.st_mode


def _is_read_only(attributes: int) -> bool:
    if os.name == "nt":
        return bool(attributes & _WINDOWS_READONLY)
    return not attributes & stat.S_IWUSR
