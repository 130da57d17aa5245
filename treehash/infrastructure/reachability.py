"""Reachability probes for local and network-mounted roots."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
import socket
import threading
import time
from typing import Optional

from treehash.core.paths import unc_host

logger = logging.getLogger(__name__)

SMB_PORT = 445


@dataclass(frozen=True)
class ProbeResult:
    target: str
    reachable: bool
    latency_seconds: float
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "reachable": self.reachable,
            "latency_seconds": round(self.latency_seconds, 6),
            "error": self.error,
        }


def probe_path(path: str, timeout: float = 5.0) -> ProbeResult:
    """Stat ``path`` with a deadline.

    A stalled network mount can block ``stat`` indefinitely, so the call runs
    on a daemon thread that is abandoned after ``timeout`` seconds and never
    holds up interpreter exit.
    """
    started = time.perf_counter()
    outcome: dict = {}

    def _stat() -> None:
        try:
            outcome["stat"] = os.stat(path)
        except OSError as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_stat, name="treehash-probe", daemon=True)
    worker.start()
    worker.join(timeout)
    elapsed = time.perf_counter() - started
    if worker.is_alive():
        logger.warning("Probe of %s timed out after %.1fs", path, timeout)
        return ProbeResult(path, False, elapsed, f"timed out after {timeout}s")
    if "error" in outcome:
        return ProbeResult(path, False, elapsed, str(outcome["error"]))
    return ProbeResult(path, True, elapsed)


def probe_host(host: str, port: int = SMB_PORT, timeout: float = 5.0) -> ProbeResult:
    """TCP connect to ``host:port``."""
    target = f"{host}:{port}"
    started = time.perf_counter()
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as exc:
        return ProbeResult(target, False, time.perf_counter() - started, str(exc))
    return ProbeResult(target, True, time.perf_counter() - started)


def probe_root(path: str, timeout: float = 5.0) -> ProbeResult:
    """Probe the server of a UNC path first, then the path itself."""
    host = unc_host(path)
    if host:
        result = probe_host(host, timeout=timeout)
        if not result.reachable:
            logger.warning("Host %s for %s unreachable: %s", host, path, result.error)
            return result
    return probe_path(path, timeout=timeout)
