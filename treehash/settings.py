"""Application settings consumed by the hashing core."""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import hashlib
import json
import os
from pathlib import Path
from typing import Any, Optional

from treehash.core.algorithms import MIB, HashAlgorithm
from treehash.errors import ValidationError


_ENV_PREFIX = "TREEHASH_"
_SORT_MODES = {"path", "filename"}
_COMBINE_MODES = {"concat", "streaming"}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _default_workers() -> int:
    return min(32, (os.cpu_count() or 1) + 4)


@dataclass(frozen=True)
class HashSettings:
    algorithm: HashAlgorithm = HashAlgorithm.SHA256
    retry_count: int = 3
    timeout_seconds: float = 30.0
    retry_base_delay: float = 0.5
    retry_max_delay: float = 10.0
    large_file_threshold: int = 64 * MIB
    chunk_size: int = 16 * MIB
    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 60.0
    strict_mode: bool = False
    verify_integrity: bool = False
    max_workers: int = _default_workers()
    batch_size: int = 100
    max_flush_entries: int = 1000
    flush_interval: float = 5.0
    lock_retries: int = 10
    log_streaming_threshold: int = 64 * MIB
    retry_failed: bool = False
    snapshot_from_discovery: bool = True
    sort_mode: str = "path"
    combine_mode: str = "concat"

    def __post_init__(self) -> None:
        object.__setattr__(self, "algorithm", HashAlgorithm.parse(self.algorithm))
        _validate(self)

    def with_overrides(self, **overrides: Any) -> HashSettings:
        """Return a validated copy; ``None`` values are ignored."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        unknown = set(changes) - {item.name for item in fields(self)}
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["algorithm"] = self.algorithm.value
        return data


def _validate(settings: HashSettings) -> None:
    if settings.retry_count < 1:
        raise ValidationError("retry_count must be >= 1")
    if settings.timeout_seconds <= 0:
        raise ValidationError("timeout_seconds must be > 0")
    if settings.retry_base_delay < 0 or settings.retry_max_delay < 0:
        raise ValidationError("retry delays must be >= 0")
    if settings.chunk_size <= 0 or settings.large_file_threshold < 0:
        raise ValidationError("chunk_size must be > 0 and large_file_threshold >= 0")
    if settings.circuit_failure_threshold < 1:
        raise ValidationError("circuit_failure_threshold must be >= 1")
    if settings.circuit_reset_timeout < 0:
        raise ValidationError("circuit_reset_timeout must be >= 0")
    if settings.max_workers < 1:
        raise ValidationError("max_workers must be >= 1")
    if settings.batch_size < 1 or settings.max_flush_entries < 1:
        raise ValidationError("batch_size and max_flush_entries must be >= 1")
    if settings.flush_interval <= 0:
        raise ValidationError("flush_interval must be > 0")
    if settings.lock_retries < 1:
        raise ValidationError("lock_retries must be >= 1")
    if settings.sort_mode not in _SORT_MODES:
        raise ValidationError(f"Unsupported sort mode: {settings.sort_mode}")
    if settings.combine_mode not in _COMBINE_MODES:
        raise ValidationError(f"Unsupported combine mode: {settings.combine_mode}")


def load_settings(path: Optional[Path]) -> HashSettings:
    """Load settings from JSON config file, with environment variable overrides.

    Priority order:
    1. Environment variables (``TREEHASH_<FIELD>``)
    2. JSON config file
    3. Defaults

    Args:
        path: Path to JSON config file, or None to use defaults only

    Returns:
        HashSettings object with resolved values
    """
    json_settings: dict[str, Any] = {}
    if path and path.exists():
        try:
            json_settings = json.loads(path.read_text())
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid settings file {path}: {exc}") from exc
        if not isinstance(json_settings, dict):
            raise ValidationError(f"Settings file {path} must contain a JSON object")

    known = {item.name: item for item in fields(HashSettings)}
    unknown = set(json_settings) - set(known)
    if unknown:
        raise ValidationError(f"Unknown settings in {path}: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = dict(json_settings)
    defaults = HashSettings()
    for name in known:
        raw = os.getenv(_ENV_PREFIX + name.upper())
        if raw is None or raw == "":
            continue
        values[name] = _coerce(name, raw, getattr(defaults, name))

    try:
        return HashSettings(**values)
    except TypeError as exc:
        raise ValidationError(f"Invalid settings: {exc}") from exc


def _coerce(name: str, raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValidationError(f"{_ENV_PREFIX}{name.upper()} must be a boolean, got {raw!r}")
    if isinstance(default, HashAlgorithm):
        return raw
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            raise ValidationError(f"{_ENV_PREFIX}{name.upper()} must be an integer") from None
    if isinstance(default, float):
        try:
            return float(raw)
        except ValueError:
            raise ValidationError(f"{_ENV_PREFIX}{name.upper()} must be a number") from None
    return raw


def default_config_path() -> Path:
    return Path.home() / ".config" / "treehash" / "settings.json"


def settings_hash(settings: HashSettings) -> str:
    """Fingerprint of the settings that change digests or outcomes."""
    relevance = ("algorithm", "strict_mode", "verify_integrity", "sort_mode", "combine_mode")
    payload = {key: settings.to_dict()[key] for key in relevance}
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
