"""Unit tests for the file tree scanner.

Contract: discovery yields one FileDescriptor per regular file, with
absolute paths, in deterministic order, skipping symlinks by default.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from tests.helpers.tree import build_tree
from treehash.infrastructure.scanner import TreeScanner


def _names(descriptors, root: Path) -> list[str]:
    return [Path(d.path).relative_to(root).as_posix() for d in descriptors]


def test_iter_files_is_deterministic(tmp_path: Path) -> None:
    build_tree(tmp_path, {"b/2.txt": b"2", "a/1.txt": b"1", "c.txt": b"c", "a/0.txt": b"0"})
    scanner = TreeScanner([tmp_path])

    first = _names(scanner.collect(), tmp_path)
    second = _names(scanner.collect(), tmp_path)

    assert first == ["c.txt", "a/0.txt", "a/1.txt", "b/2.txt"]
    assert first == second


def test_descriptors_carry_metadata(tmp_path: Path) -> None:
    build_tree(tmp_path, {"data.bin": b"x" * 42})

    (descriptor,) = TreeScanner([tmp_path]).collect()

    assert os.path.isabs(descriptor.path)
    assert descriptor.size == 42
    assert descriptor.last_write_time.tzinfo is not None
    assert descriptor.is_symlink is False


def test_stats_are_counted(tmp_path: Path) -> None:
    build_tree(tmp_path, {"a/1.txt": b"1", "a/2.txt": b"22", "b/3.txt": b"333"})
    scanner = TreeScanner([tmp_path])

    scanner.collect()

    assert scanner.stats.files == 3
    assert scanner.stats.bytes == 6
    assert scanner.stats.directories == 3
    assert "3 files" in scanner.stats.describe()


def test_exclude_patterns_skip_files_and_directories(tmp_path: Path) -> None:
    build_tree(
        tmp_path,
        {"keep.txt": b"k", "skip.tmp": b"s", ".git/objects/x": b"x", "src/main.py": b"m"},
    )
    scanner = TreeScanner([tmp_path], exclude_patterns=["*.tmp", ".git"])

    names = _names(scanner.collect(), tmp_path)

    assert names == ["keep.txt", "src/main.py"]
    assert scanner.stats.excluded == 1


def test_single_file_root(tmp_path: Path) -> None:
    files = build_tree(tmp_path, {"only.txt": b"1"})

    descriptors = TreeScanner([files["only.txt"]]).collect()

    assert [d.path for d in descriptors] == [str(files["only.txt"])]


def test_missing_root_counts_error(tmp_path: Path) -> None:
    scanner = TreeScanner([tmp_path / "missing"])

    assert scanner.collect() == []
    assert scanner.stats.errors == 1


@pytest.mark.skipif(not hasattr(os, "symlink") or os.name == "nt", reason="needs POSIX symlinks")
def test_symlinks_are_skipped_unless_followed(tmp_path: Path) -> None:
    files = build_tree(tmp_path, {"real.txt": b"r"})
    (tmp_path / "link.txt").symlink_to(files["real.txt"])

    skipped = TreeScanner([tmp_path])
    followed = TreeScanner([tmp_path], follow_symlinks=True)

    assert _names(skipped.collect(), tmp_path) == ["real.txt"]
    assert skipped.stats.symlinks_skipped == 1
    assert _names(followed.collect(), tmp_path) == ["link.txt", "real.txt"]
