"""Hash command - hash a tree into a resumable log and print the composite."""

from __future__ import annotations

from argparse import Namespace
import logging
from pathlib import Path

from treehash.app import TreeHashApp
from treehash.commands.output import emit_error, emit_output
from treehash.core.orchestrator import RunReport, build_header
from treehash.errors import (
    CANCELLED_EXIT_CODE,
    PARTIAL_FAILURE_EXIT_CODE,
    IOFailure,
)
from treehash.infrastructure.reachability import probe_root
from treehash.infrastructure.scanner import TreeScanner

logger = logging.getLogger(__name__)


def settings_overrides(args: Namespace) -> dict:
    """Settings fields set explicitly on the command line."""
    return {
        "algorithm": getattr(args, "algorithm", None),
        "retry_count": getattr(args, "retries", None),
        "timeout_seconds": getattr(args, "timeout", None),
        "max_workers": getattr(args, "workers", None),
        "strict_mode": True if getattr(args, "strict", False) else None,
        "verify_integrity": True if getattr(args, "verify", False) else None,
        "retry_failed": True if getattr(args, "retry_failed", False) else None,
        "sort_mode": getattr(args, "sort_mode", None),
        "combine_mode": getattr(args, "combine_mode", None),
    }


def run_hash(
    args: Namespace,
    *,
    app: TreeHashApp | None = None,
    scanner: TreeScanner | None = None,
    output_sink=print,
) -> int:
    """Hash every file below ``args.root`` into ``args.log``."""
    root = Path(args.root).resolve()
    log_path = Path(args.log).resolve()
    json_output = getattr(args, "json", False)
    app = app or TreeHashApp.from_config(getattr(args, "config", None), **settings_overrides(args))

    probe = probe_root(str(root), timeout=getattr(args, "probe_timeout", None) or 5.0)
    if not probe.reachable:
        return emit_error(
            command="hash",
            target=str(root),
            exc=IOFailure(f"Source root is not reachable: {root} ({probe.error})"),
            json_output=json_output,
            output_sink=output_sink,
        )

    scanner = scanner or TreeScanner(
        [root],
        exclude_patterns=list(getattr(args, "exclude", None) or []),
        follow_symlinks=getattr(args, "follow_symlinks", False),
    )
    descriptors = scanner.collect()
    logger.info("Discovered %s under %s", scanner.stats.describe(), root)

    run = app.create_run(log_path)
    report = run.run(
        descriptors,
        root=str(root),
        header=build_header(app, str(root), discovery=scanner.stats.describe()),
    )
    _emit_report(report, root, json_output, output_sink)

    if report.cancelled:
        return CANCELLED_EXIT_CODE
    if report.has_failures:
        return PARTIAL_FAILURE_EXIT_CODE
    return 0


def _emit_report(report: RunReport, root: Path, json_output: bool, output_sink) -> None:
    stats = report.stats
    if report.cancelled:
        status = "CANCELLED"
    elif report.has_failures:
        status = "PARTIAL"
    else:
        status = "OK"
    payload = {"root": str(root), "status": status}
    payload.update(report.to_dict())

    lines = [
        f"root={root}",
        f"log={report.log_path}",
        f"processed={stats['processed']} failed={stats['failed']} "
        f"skipped={stats['skipped']} races={stats['race_conditions']} "
        f"retries={stats['retries']} rejected={stats.get('rejected', 0)}",
    ]
    if report.logged_failures:
        lines.append(f"earlier failures still in log={report.logged_failures}")
    for failure in report.failures:
        category = failure.error_category.value if failure.error_category else "Unknown"
        lines.append(f"failed {failure.path}: {category}: {failure.error}")
    if report.result is not None:
        lines.append(
            f"{report.result.algorithm} {report.result.composite_hash} "
            f"files={report.result.file_count} bytes={report.result.total_bytes}"
        )
    elif report.cancelled:
        lines.append("cancelled; rerun with the same log to resume")
    else:
        lines.append("nothing to hash")
    emit_output(
        command="hash",
        payload=payload,
        json_output=json_output,
        output_sink=output_sink,
        human_lines=lines,
    )
