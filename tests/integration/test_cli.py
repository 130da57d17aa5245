"""Integration tests for the treehash CLI."""

from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from tests.helpers.tree import build_tree
from treehash import __version__, cli
from treehash.commands.hash import run_hash
from treehash.errors import (
    CANCELLED_EXIT_CODE,
    PARTIAL_FAILURE_EXIT_CODE,
    IOFailure,
    RuntimeFailure,
    ValidationError,
)
from treehash.infrastructure.scanner import TreeScanner

REPO_ROOT = Path(__file__).resolve().parents[2]


def _last_json(capsys: pytest.CaptureFixture) -> dict:
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "root"
    build_tree(root, {"a.txt": b"alpha", "sub/b.txt": b"bravo", "sub/c.txt": b"charlie"})
    return root


@pytest.fixture
def config(tmp_path: Path) -> Path:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"max_workers": 2, "flush_interval": 0.05, "retry_base_delay": 0.0}))
    return path


def test_hash_then_summary_agree(tree: Path, config: Path, tmp_path: Path, capsys) -> None:
    log_path = tmp_path / "run.log"

    code = cli.main(["hash", str(tree), "--log", str(log_path), "--json", "--config", str(config)])
    hashed = _last_json(capsys)

    assert code == 0
    assert hashed["command"] == "hash"
    assert hashed["data"]["status"] == "OK"
    assert hashed["data"]["result"]["file_count"] == 3

    code = cli.main(["summary", "--log", str(log_path), "--json", "--config", str(config)])
    summary = _last_json(capsys)

    assert code == 0
    assert summary["data"]["result"]["composite_hash"] == hashed["data"]["result"]["composite_hash"]
    assert summary["data"]["result"]["algorithm"] == "SHA256"


def test_hash_human_output(tree: Path, config: Path, tmp_path: Path, capsys) -> None:
    code = cli.main(
        ["hash", str(tree), "--log", str(tmp_path / "run.log"), "--algorithm", "md5", "--config", str(config)]
    )
    out = capsys.readouterr().out

    assert code == 0
    assert "hash: processed=3 failed=0" in out
    assert "hash: MD5 " in out


def test_summary_of_missing_log(tmp_path: Path, config: Path, capsys) -> None:
    code = cli.main(["summary", "--log", str(tmp_path / "none.log"), "--json", "--config", str(config)])

    assert code == IOFailure.exit_code
    assert _last_json(capsys)["data"]["status"] == "ERROR"


def test_unreachable_root(tmp_path: Path, config: Path, capsys) -> None:
    code = cli.main(
        ["hash", str(tmp_path / "missing"), "--log", str(tmp_path / "run.log"), "--config", str(config)]
    )

    assert code == IOFailure.exit_code
    assert not (tmp_path / "run.log").exists()


def test_probe_command(tmp_path: Path, capsys) -> None:
    assert cli.main(["probe", str(tmp_path), "--json"]) == 0
    assert _last_json(capsys)["data"]["reachable"] is True


def test_partial_failure_exit_code(tree: Path, config: Path, tmp_path: Path) -> None:
    class VanishingScanner(TreeScanner):
        def collect(self):
            descriptors = super().collect()
            os.remove(descriptors[0].path)
            return descriptors

    args = cli.build_parser().parse_args(
        ["hash", str(tree), "--log", str(tmp_path / "run.log"), "--config", str(config)]
    )
    lines: list[str] = []

    code = run_hash(args, scanner=VanishingScanner([tree]), output_sink=lines.append)

    assert code == PARTIAL_FAILURE_EXIT_CODE
    assert any("FileNotFound" in line for line in lines)


def test_failures_left_in_log_keep_partial_exit_code(tree: Path, config: Path, tmp_path: Path) -> None:
    log_path = tmp_path / "run.log"
    log_path.write_text(
        "# algorithm: SHA256\n"
        f"{tree / 'a.txt'} = ERROR(AccessDenied): Permission denied, size: 5\n",
        encoding="utf-8",
    )
    args = cli.build_parser().parse_args(
        ["hash", str(tree), "--log", str(log_path), "--json", "--config", str(config)]
    )
    lines: list[str] = []

    code = run_hash(args, output_sink=lines.append)

    payload = json.loads(lines[-1])["data"]
    assert code == PARTIAL_FAILURE_EXIT_CODE
    assert payload["status"] == "PARTIAL"
    assert payload["failures"] == []
    assert payload["logged_failures"] == 1
    assert payload["result"]["file_count"] == 2


def test_json_envelope_carries_versions(tmp_path: Path, capsys) -> None:
    assert cli.main(["probe", str(tmp_path), "--json"]) == 0

    envelope = _last_json(capsys)

    assert envelope["schema_version"] == "v1"
    assert envelope["tool_version"] == __version__
    assert envelope["command"] == "probe"


def test_error_envelope_reports_exit_code(tmp_path: Path, config: Path, capsys) -> None:
    code = cli.main(["summary", "--log", str(tmp_path / "none.log"), "--json", "--config", str(config)])

    data = _last_json(capsys)["data"]
    assert data["error_type"] == "IOFailure"
    assert data["exit_code"] == code == IOFailure.exit_code


def test_human_lines_are_prefixed_with_command(tmp_path: Path, config: Path, capsys) -> None:
    cli.main(["summary", "--log", str(tmp_path / "none.log"), "--config", str(config)])
    cli.main(["probe", str(tmp_path)])

    lines = capsys.readouterr().out.strip().splitlines()
    assert lines[0].startswith("summary: error=Log does not exist")
    assert lines[-1].startswith(f"probe: {tmp_path} reachable")


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ValidationError("bad input"), ValidationError.exit_code),
        (OSError("disk error"), IOFailure.exit_code),
        (RuntimeFailure("boom"), RuntimeFailure.exit_code),
        (KeyboardInterrupt(), CANCELLED_EXIT_CODE),
    ],
)
def test_cli_maps_exceptions_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, exc: BaseException, expected: int
) -> None:
    def raise_exc(_args, **_kwargs):
        raise exc

    monkeypatch.setattr("treehash.commands.hash.run_hash", raise_exc)

    assert cli.main(["hash", str(tmp_path), "--log", str(tmp_path / "run.log")]) == expected


def test_no_command_prints_help(capsys) -> None:
    assert cli.main([]) == 1
    assert "usage:" in capsys.readouterr().out


def test_invalid_algorithm_is_validation_error(tree: Path, config: Path, tmp_path: Path) -> None:
    code = cli.main(
        ["hash", str(tree), "--log", str(tmp_path / "run.log"), "--algorithm", "crc32", "--config", str(config)]
    )

    assert code == ValidationError.exit_code


def test_dotenv_files_fill_missing_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("TREEHASH_ALGORITHM=MD5\nTREEHASH_RETRY_COUNT=9\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    # Register both keys with monkeypatch so values loaded from .env are undone.
    monkeypatch.setenv("TREEHASH_ALGORITHM", "unset")
    monkeypatch.delenv("TREEHASH_ALGORITHM")
    monkeypatch.setenv("TREEHASH_RETRY_COUNT", "2")

    cli._load_dotenv_files()

    assert os.environ["TREEHASH_ALGORITHM"] == "MD5"
    assert os.environ["TREEHASH_RETRY_COUNT"] == "2"


def test_module_help_smoke() -> None:
    completed = subprocess.run(
        [sys.executable, "-m", "treehash.cli", "--help"],
        cwd=REPO_ROOT,
        capture_output=True,
        text=True,
        check=False,
    )

    assert completed.returncode == 0
    assert "hash" in completed.stdout
    assert "summary" in completed.stdout
