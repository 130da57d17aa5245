"""Unit tests for core models."""

from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from treehash.core.algorithms import HashAlgorithm, buffer_size_for, empty_digest, is_hex_digest
from treehash.core.models import (
    ErrorCategory,
    FileDescriptor,
    HashResult,
    IntegritySnapshot,
    RunStatistics,
)
from treehash.errors import ValidationError


def test_retriable_categories() -> None:
    assert {c for c in ErrorCategory if c.retriable} == {ErrorCategory.IO, ErrorCategory.UNKNOWN}
    assert ErrorCategory.CIRCUIT_BREAKER_OPEN.resumable is True
    assert ErrorCategory.ACCESS_DENIED.resumable is False


def test_failed_result_requires_category() -> None:
    with pytest.raises(ValueError):
        HashResult(path="/x", success=False, error="boom")


def test_result_to_dict_uses_category_value() -> None:
    payload = HashResult(
        path="/x", success=False, error="gone", error_category=ErrorCategory.FILE_NOT_FOUND
    ).to_dict()

    assert payload["error_category"] == "FileNotFound"
    assert payload["hash"] is None


def test_snapshot_matches_unchanged_file(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    target.write_text("hello")

    first = IntegritySnapshot.capture(str(target))
    second = IntegritySnapshot.capture(str(target))

    assert first.matches(second)
    assert first.describe_difference(second) == "no change"


def test_snapshot_detects_size_and_mtime_changes(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    target.write_text("hello")
    before = IntegritySnapshot.capture(str(target))

    target.write_text("hello world")
    os.utime(target, (1_000_000, 1_000_000))
    after = IntegritySnapshot.capture(str(target))

    assert not before.matches(after)
    difference = before.describe_difference(after)
    assert "size 5 -> 11" in difference
    assert "mtime" in difference


def test_snapshot_from_descriptor_matches_capture(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    target.write_text("hello")
    descriptor = FileDescriptor.from_stat(str(target), target.stat())

    assert IntegritySnapshot.from_descriptor(descriptor).matches(IntegritySnapshot.capture(str(target)))


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_read_only_flag_follows_permissions(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    target.write_text("hello")
    target.chmod(0o444)
    try:
        assert IntegritySnapshot.capture(str(target)).read_only is True
    finally:
        target.chmod(0o644)
    assert IntegritySnapshot.capture(str(target)).read_only is False


def test_run_statistics_record() -> None:
    stats = RunStatistics()
    stats.record(HashResult(path="/a", success=True, hash="ab", size=10, attempts=3))
    stats.record(
        HashResult(
            path="/b",
            success=False,
            error="x",
            error_category=ErrorCategory.IO,
            attempts=1,
            race_condition_detected=True,
        )
    )

    assert stats.snapshot() == {
        "discovered": 0,
        "skipped": 0,
        "processed": 1,
        "failed": 1,
        "bytes_hashed": 10,
        "race_conditions": 1,
        "retries": 2,
        "rejected": 0,
    }


def test_run_statistics_increment_is_thread_safe() -> None:
    stats = RunStatistics()

    def worker() -> None:
        for _ in range(500):
            stats.increment("discovered")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert stats.discovered == 2000


@pytest.mark.parametrize("value", ["SHA256", "sha256", "Sha-256", "sha_256", HashAlgorithm.SHA256])
def test_algorithm_parse(value) -> None:
    assert HashAlgorithm.parse(value) is HashAlgorithm.SHA256


def test_algorithm_parse_rejects_unknown() -> None:
    with pytest.raises(ValidationError, match="Unsupported hash algorithm"):
        HashAlgorithm.parse("whirlpool")


def test_empty_digest() -> None:
    assert empty_digest("MD5") == "d41d8cd98f00b204e9800998ecf8427e"


@pytest.mark.parametrize(
    ("value", "algorithm", "expected"),
    [
        ("d41d8cd98f00b204e9800998ecf8427e", HashAlgorithm.MD5, True),
        ("D41D8CD98F00B204E9800998ECF8427E", None, True),
        ("d41d8cd98f00b204e9800998ecf8427e", HashAlgorithm.SHA256, False),
        ("0x12", None, False),
        ("abc", None, False),
        ("", None, False),
        ("ab_cd", None, False),
    ],
)
def test_is_hex_digest(value: str, algorithm, expected: bool) -> None:
    assert is_hex_digest(value, algorithm) is expected


def test_buffer_sizes_grow_with_file_size() -> None:
    small = buffer_size_for(HashAlgorithm.SHA256, 1024)
    large = buffer_size_for(HashAlgorithm.SHA256, 60 * 1024 * 1024)

    assert small < large
    assert buffer_size_for(HashAlgorithm.SHA512, 1024) <= small
