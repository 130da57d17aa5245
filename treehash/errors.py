"""Error taxonomy and exit code mapping for CLI."""

from __future__ import annotations


PARTIAL_FAILURE_EXIT_CODE = 4
CANCELLED_EXIT_CODE = 130


class TreeHashError(Exception):
    """Base error for deterministic CLI exit codes."""

    exit_code: int = 1


class ValidationError(TreeHashError):
    """Invalid user input, configuration or command usage."""

    exit_code = 2


class RuntimeFailure(TreeHashError):
    """Unexpected runtime failure."""

    exit_code = 1


class IOFailure(TreeHashError):
    """Filesystem or I/O failure."""

    exit_code = 3


class LogWriteError(IOFailure):
    """The result log could not be created, opened or appended to."""


class AggregationError(RuntimeFailure):
    """Aggregator input is structurally unusable."""


class IntegrityViolation(Exception):
    """File metadata or content changed underneath a hash computation."""


class HashCancelled(Exception):
    """A hash computation stopped at a cancellation checkpoint."""


def exit_code_for_exception(exc: BaseException) -> int:
    """Resolve a deterministic exit code for an exception."""
    if isinstance(exc, TreeHashError):
        return exc.exit_code
    if isinstance(exc, OSError):
        return IOFailure.exit_code
    return RuntimeFailure.exit_code
