"""Probe command - check that a root (or its file server) is reachable."""

from __future__ import annotations

from argparse import Namespace

from treehash.commands.output import emit_output
from treehash.errors import IOFailure
from treehash.infrastructure.reachability import probe_root


def run_probe(args: Namespace, *, output_sink=print) -> int:
    result = probe_root(str(args.path), timeout=getattr(args, "timeout", None) or 5.0)
    status = "reachable" if result.reachable else f"unreachable ({result.error})"
    emit_output(
        command="probe",
        payload=result.to_dict(),
        json_output=getattr(args, "json", False),
        output_sink=output_sink,
        human_lines=(
            f"{result.target} {status} latency={result.latency_seconds * 1000:.1f}ms",
        ),
    )
    return 0 if result.reachable else IOFailure.exit_code
