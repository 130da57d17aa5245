"""Summary command - recompute the composite hash from an existing log."""

from __future__ import annotations

from argparse import Namespace
from pathlib import Path

from treehash.commands.output import emit_error, emit_output
from treehash.core.aggregator import combine
from treehash.errors import IOFailure
from treehash.infrastructure.result_log import load_existing
from treehash.settings import load_settings


def run_summary(args: Namespace, *, output_sink=print) -> int:
    log_path = Path(args.log).resolve()
    json_output = getattr(args, "json", False)
    if not log_path.exists():
        return emit_error(
            command="summary",
            target=str(log_path),
            exc=IOFailure(f"Log does not exist: {log_path}"),
            json_output=json_output,
            output_sink=output_sink,
        )

    settings = load_settings(getattr(args, "config", None))
    state = load_existing(log_path, settings.log_streaming_threshold)
    algorithm = getattr(args, "algorithm", None) or state.header.get("algorithm") or settings.algorithm
    root = getattr(args, "root", None) or state.header.get("source") or None
    result = combine(
        state.processed,
        algorithm,
        root=str(root) if root else None,
        sort_mode=getattr(args, "sort_mode", None) or settings.sort_mode,
        combine_mode=getattr(args, "combine_mode", None) or settings.combine_mode,
        entry_algorithm=state.header.get("algorithm"),
    )

    payload = {
        "log_path": str(log_path),
        "status": "OK" if result is not None else "EMPTY",
        "replay": state.stats.to_dict(),
        "result": result.to_dict() if result else None,
    }
    lines = [
        f"log={log_path}",
        f"processed={state.stats.processed} failed={state.stats.failed} "
        f"malformed={state.stats.malformed}",
    ]
    if result is not None:
        lines.append(
            f"{result.algorithm} {result.composite_hash} "
            f"files={result.file_count} bytes={result.total_bytes}"
        )
    else:
        lines.append("nothing to hash")
    emit_output(
        command="summary",
        payload=payload,
        json_output=json_output,
        output_sink=output_sink,
        human_lines=lines,
    )
    return 0
