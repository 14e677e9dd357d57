"""Unit tests for the mergeq argument router and in-process command handlers."""

from __future__ import annotations

import io
import json
from typing import TYPE_CHECKING

import pytest

from merge_coordinator.main import ExitCode, cli_entrypoint
from merge_coordinator.ui import CLIRenderer, build_parser, run_cli

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("NO_COLOR", "1")
    for name in ("MERGEQ_CONFIG", "MERGEQ_QUEUE_STATE_FILE", "MERGEQ_QUEUE_STALE_AFTER_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    (tmp_path / "mergeq.toml").write_text(
        '[projects.api]\nrepo_path = "repos/api"\n', encoding="utf-8"
    )
    return tmp_path


def test_parser_routes_every_subcommand() -> None:
    parser = build_parser()

    enqueue = parser.parse_args(
        ["enqueue", "api", "agent/a", "7", "--file", "a.py", "--file", "b.py", "--strategy", "merge"]
    )
    remove = parser.parse_args(["remove", "x", "-y", "--state-file", "q.json"])

    assert enqueue.files == ["a.py", "b.py"]
    assert enqueue.priority == "normal"
    assert enqueue.strategy == "merge"
    assert remove.yes
    assert remove.state_file == "q.json"
    for command in ("status", "process"):
        assert callable(parser.parse_args([command]).handler)


def test_enqueue_json_then_status_json(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["enqueue", "api", "agent/a", "7", "--id", "a", "--json"]) == 0
    entry = json.loads(capsys.readouterr().out)["entry"]

    assert run_cli(["status", "--json", "--completed"]) == 0
    status = json.loads(capsys.readouterr().out)

    assert entry["id"] == "a"
    assert [item["id"] for item in status["queued"]] == ["a"]
    assert status["completed"] == []
    assert (workdir / ".mergeq" / "queue.json").is_file()


def test_state_file_flag_overrides_config(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert run_cli(["enqueue", "api", "agent/a", "7", "--state-file", "alt.json"]) == 0

    assert (workdir / "alt.json").is_file()
    assert not (workdir / ".mergeq" / "queue.json").exists()
    assert "Queued api-" in capsys.readouterr().out


def test_enqueue_warns_about_overlaps(workdir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    run_cli(["enqueue", "api", "agent/a", "7", "--id", "a", "--file", "src/x.py"])
    capsys.readouterr()

    assert run_cli(["enqueue", "api", "agent/b", "8", "--id", "b", "--file", "src/x.py"]) == 0

    assert "overlaps with queued a on src/x.py" in capsys.readouterr().out


def test_remove_prompt_accepts_yes(
    workdir: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    run_cli(["enqueue", "api", "agent/a", "7", "--id", "a"])
    capsys.readouterr()
    monkeypatch.setattr("builtins.input", lambda _prompt: "y")

    code = run_cli(["remove", "a"])

    assert code == 3
    assert "only failed or blocked" in capsys.readouterr().err


def test_entrypoint_normalizes_argparse_exits(
    workdir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert cli_entrypoint(["enqueue"]) == ExitCode.CONFIG_ERROR
    assert cli_entrypoint(["retry", "missing"]) == ExitCode.STORE_ERROR
    assert "missing" in capsys.readouterr().err


def test_renderer_plain_text_layout() -> None:
    stream = io.StringIO()
    renderer = CLIRenderer(stream=stream)

    renderer.heading("Merge queue")
    renderer.kv("queued", 2)
    renderer.table(["ID", "BRANCH"], [["a", "agent/a"], ["bb", "agent/b"]], title="Queued:")
    renderer.table(["ID"], [], title="Empty:")
    renderer.warning("a and bb both touch x.py")
    renderer.next_steps(["mergeq process"])

    out = stream.getvalue()
    assert "\033[" not in out
    assert out.startswith("Merge queue\nqueued: 2\n")
    assert "Empty:" not in out
    assert "Warning: a and bb both touch x.py" in out
    assert "  $ mergeq process" in out
