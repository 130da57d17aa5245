"""Deterministic composite hash over a set of per-file hashes.

Entries are sorted by a stable key before combination, so the composite does
not depend on discovery or completion order. Two combination modes produce
the same digest:

- ``concat``: join every hex digest without a separator and hash the UTF-8
  bytes of the joined string. Comparable with simple external checksum tools.
- ``streaming``: feed each digest's UTF-8 bytes into one incremental hash in
  sorted order. Peak memory does not grow with the number of files.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import logging
from pathlib import Path
import time
from typing import Any, Optional, Union

from treehash.core.algorithms import HashAlgorithm, is_hex_digest
from treehash.core.models import DirectoryIntegrityResult
from treehash.core.paths import filename_key, sort_key
from treehash.errors import AggregationError, ValidationError

logger = logging.getLogger(__name__)

SORT_MODES = ("path", "filename")
COMBINE_MODES = ("concat", "streaming")

EntryValue = Union[tuple[str, int], Any]


def combine(
    entries: Mapping[str, EntryValue],
    algorithm: HashAlgorithm | str,
    root: Optional[str] = None,
    sort_mode: str = "path",
    combine_mode: str = "concat",
    entry_algorithm: HashAlgorithm | str | None = None,
) -> Optional[DirectoryIntegrityResult]:
    """Combine ``path -> (hash, size)`` entries into one composite hash.

    Values may also be objects with ``hash`` and ``size`` attributes (such as
    log records). With ``entry_algorithm`` set, digests whose length does not
    match that algorithm are skipped as invalid.

    Returns:
        DirectoryIntegrityResult, or None when there is nothing to hash

    Raises:
        AggregationError: entries were supplied but none of them is usable
    """
    algorithm = HashAlgorithm.parse(algorithm)
    expected = HashAlgorithm.parse(entry_algorithm) if entry_algorithm is not None else None
    if sort_mode not in SORT_MODES:
        raise ValidationError(f"Unsupported sort mode: {sort_mode}")
    if combine_mode not in COMBINE_MODES:
        raise ValidationError(f"Unsupported combine mode: {combine_mode}")
    if not entries:
        logger.info("No file hashes to combine")
        return None

    started = time.perf_counter()
    valid: list[tuple[tuple[str, str], str, int]] = []
    skipped = 0
    for path, value in entries.items():
        digest, size = _unpack(value)
        if digest is None or not is_hex_digest(digest, expected):
            skipped += 1
            logger.warning("Skipping %s: invalid hash %r", path, digest)
            continue
        valid.append((_entry_key(path, root, sort_mode), digest.lower(), size))

    if not valid:
        raise AggregationError(
            f"None of the {len(entries)} entries carries a valid hash; cannot build composite"
        )

    valid.sort(key=lambda item: item[0])
    if sort_mode == "filename":
        _warn_on_collisions(valid)

    if combine_mode == "concat":
        joined = "".join(digest for _, digest, _ in valid)
        hasher = algorithm.new()
        hasher.update(joined.encode("utf-8"))
    else:
        hasher = algorithm.new()
        for _, digest, _ in valid:
            hasher.update(digest.encode("utf-8"))

    total_bytes = sum(size for _, _, size in valid)
    duration = time.perf_counter() - started
    per_second = 1.0 / duration if duration > 0 else 0.0
    return DirectoryIntegrityResult(
        composite_hash=hasher.hexdigest(),
        file_count=len(valid),
        total_bytes=total_bytes,
        algorithm=algorithm.value,
        sort_mode=sort_mode,
        combine_mode=combine_mode,
        duration_seconds=duration,
        files_per_second=len(valid) * per_second,
        bytes_per_second=total_bytes * per_second,
        generated_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        skipped_entries=skipped,
    )


def combine_log(
    log_path: Path,
    algorithm: HashAlgorithm | str,
    root: Optional[str] = None,
    sort_mode: str = "path",
    combine_mode: str = "concat",
    streaming_threshold: Optional[int] = None,
    entry_algorithm: HashAlgorithm | str | None = None,
) -> Optional[DirectoryIntegrityResult]:
    """Recompute the composite from the successful entries of a result log.

    Entry digests are checked against ``entry_algorithm``, defaulting to the
    algorithm named in the log header.
    """
    from treehash.infrastructure.result_log import load_existing

    kwargs = {} if streaming_threshold is None else {"streaming_threshold": streaming_threshold}
    state = load_existing(log_path, **kwargs)
    return combine(
        state.processed,
        algorithm,
        root=root,
        sort_mode=sort_mode,
        combine_mode=combine_mode,
        entry_algorithm=entry_algorithm or state.header.get("algorithm"),
    )


def _unpack(value: EntryValue) -> tuple[Optional[str], int]:
    if isinstance(value, tuple):
        digest, size = value
        return digest, int(size)
    return getattr(value, "hash", None), int(getattr(value, "size", 0))


def _entry_key(path: str, root: Optional[str], sort_mode: str) -> tuple[str, str]:
    primary = filename_key(path) if sort_mode == "filename" else sort_key(path, root)
    return (primary, path)


def _warn_on_collisions(valid: list[tuple[tuple[str, str], str, int]]) -> None:
    seen: set[str] = set()
    collisions = 0
    for (primary, _), _, _ in valid:
        if primary in seen:
            collisions += 1
        seen.add(primary)
    if collisions:
        logger.warning(
            "Filename sort key collides for %d entries; composite depends on full paths as tiebreaker",
            collisions,
        )
