"""CLI output: one compact JSON envelope per command, or prefixed text lines.

JSON output is a single line with sorted keys so runs can be diffed and
piped into ``jq``. Human lines are prefixed with the command name, which
keeps interleaved output of scripted runs attributable.
"""

from __future__ import annotations

import json
from typing import Callable, Iterable

from treehash import __version__
from treehash.errors import exit_code_for_exception

SCHEMA_VERSION = "v1"

OutputSink = Callable[[str], None]


def envelope(command: str, payload: dict) -> dict:
    return {
        "schema_version": SCHEMA_VERSION,
        "tool_version": __version__,
        "command": command,
        "data": payload,
    }


def emit_output(
    *,
    command: str,
    payload: dict,
    json_output: bool,
    output_sink: OutputSink = print,
    human_lines: Iterable[str] = (),
) -> None:
    """Write ``payload`` as a JSON envelope, or ``human_lines`` as ``command: line``."""
    if json_output:
        output_sink(
            json.dumps(
                envelope(command, payload),
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=True,
            )
        )
        return
    for line in human_lines:
        output_sink(f"{command}: {line}")


def error_payload(target: str, exc: BaseException) -> dict:
    return {
        "target": target,
        "status": "ERROR",
        "error_type": exc.__class__.__name__,
        "error_message": str(exc),
        "exit_code": exit_code_for_exception(exc),
    }


def emit_error(
    *,
    command: str,
    target: str,
    exc: BaseException,
    json_output: bool,
    output_sink: OutputSink = print,
) -> int:
    """Report a command-level failure and return its exit code."""
    emit_output(
        command=command,
        payload=error_payload(target, exc),
        json_output=json_output,
        output_sink=output_sink,
        human_lines=(f"error={exc}",),
    )
    return exit_code_for_exception(exc)
