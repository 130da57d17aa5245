"""File tree discovery producing FileDescriptor values."""

from __future__ import annotations

import fnmatch
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from treehash.core.models import FileDescriptor

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryStats:
    """Counters describing the last walk."""

    files: int = 0
    directories: int = 0
    bytes: int = 0
    symlinks_skipped: int = 0
    excluded: int = 0
    errors: int = 0

    def describe(self) -> str:
        return (
            f"{self.files} files, {self.directories} directories, {self.bytes} bytes, "
            f"{self.symlinks_skipped} symlinks skipped, {self.excluded} excluded, "
            f"{self.errors} errors"
        )


class TreeScanner:
    """Walks roots and yields one descriptor per regular file.

    Symlink policy: do not follow symlinked directories and skip symlinked
    files unless ``follow_symlinks`` is set.
    """

    def __init__(
        self,
        roots: list[Path],
        exclude_patterns: list[str] | None = None,
        follow_symlinks: bool = False,
    ) -> None:
        """Initialize scanner.

        Args:
            roots: Directories (or single files) to scan
            exclude_patterns: fnmatch patterns matched against full paths and names
            follow_symlinks: Descend into and hash symlink targets
        """
        self.roots = roots
        self.exclude_patterns = exclude_patterns or []
        self.follow_symlinks = follow_symlinks
        self.stats = DiscoveryStats()

    def iter_files(self) -> Iterator[FileDescriptor]:
        """Iterate over all files below the roots in sorted order.

        Yields:
            FileDescriptor objects with absolute paths
        """
        self.stats = DiscoveryStats()
        for root in self.roots:
            root = Path(os.path.abspath(root))
            if root.is_file():
                descriptor = self._describe(root)
                if descriptor is not None:
                    yield descriptor
                continue
            if not root.is_dir():
                logger.warning("Scan root does not exist: %s", root)
                self.stats.errors += 1
                continue

            for dirpath, dirnames, filenames in os.walk(
                root, followlinks=self.follow_symlinks, onerror=self._on_walk_error
            ):
                self.stats.directories += 1
                dirnames[:] = sorted(
                    name for name in dirnames if not self._excluded(Path(dirpath) / name)
                )
                for name in sorted(filenames):
                    descriptor = self._describe(Path(dirpath) / name)
                    if descriptor is not None:
                        yield descriptor

    def collect(self) -> list[FileDescriptor]:
        return list(self.iter_files())

    def _describe(self, path: Path) -> FileDescriptor | None:
        if self._excluded(path):
            self.stats.excluded += 1
            return None
        is_symlink = path.is_symlink()
        if is_symlink and not self.follow_symlinks:
            self.stats.symlinks_skipped += 1
            return None
        try:
            st = path.stat()
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", path, exc)
            self.stats.errors += 1
            return None
        if not os.path.isfile(path):
            return None
        self.stats.files += 1
        self.stats.bytes += st.st_size
        return FileDescriptor.from_stat(str(path), st, is_symlink=is_symlink)

    def _excluded(self, path: Path) -> bool:
        text = str(path)
        for pattern in self.exclude_patterns:
            if fnmatch.fnmatch(text, pattern) or fnmatch.fnmatch(path.name, pattern):
                return True
        return False

    def _on_walk_error(self, exc: OSError) -> None:
        logger.warning("Cannot read directory %s: %s", exc.filename, exc)
        self.stats.errors += 1
