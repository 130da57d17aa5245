"""Test helper utilities."""

from .clock import FakeClock, SleepRecorder
from .tree import build_tree, describe, digest, log_lines

__all__ = [
    "FakeClock",
    "SleepRecorder",
    "build_tree",
    "describe",
    "digest",
    "log_lines",
]
