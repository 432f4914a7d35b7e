from datetime import datetime
from pathlib import Path

import pytest
import structlog
from typer.testing import CliRunner

from cowcode_memory.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    structlog.reset_defaults()


def _write_config(tmp_path: Path, enabled: bool = True) -> Path:
    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    cfg = tmp_path / "cowcode.yaml"
    cfg.write_text(
        (
            "memory:\n"
            f"  enabled: {'true' if enabled else 'false'}\n"
            f"  workspace_path: {workspace}\n"
            f"  index_path: {tmp_path / 'index.db'}\n"
            "  embedding:\n"
            "    provider: local_hash\n"
        ),
        encoding="utf-8",
    )
    return cfg


def test_note_index_search_and_read_round_trip(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = _write_config(tmp_path)
    day = datetime.now().strftime("%Y-%m-%d")

    noted = runner.invoke(app, ["--config", str(cfg), "note", "Prefers oolong tea"])
    indexed = runner.invoke(app, ["--config", str(cfg), "index"])
    searched = runner.invoke(app, ["--config", str(cfg), "search", "Prefers oolong tea"])
    read = runner.invoke(app, ["--config", str(cfg), "read", f"memory/{day}.md"])

    assert noted.exit_code == 0, noted.output
    assert f"memory/{day}.md" in noted.output
    assert indexed.exit_code == 0, indexed.output
    assert "1 updated" in indexed.output
    assert searched.exit_code == 0, searched.output
    assert f"memory/{day}.md:1-1" in searched.output
    assert read.exit_code == 0, read.output
    assert "Prefers oolong tea" in read.output


def test_search_without_matches(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = _write_config(tmp_path)

    result = runner.invoke(app, ["--config", str(cfg), "search", "anything"])

    assert result.exit_code == 0, result.output
    assert "No matches." in result.output


def test_index_filesystem_source(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = _write_config(tmp_path)
    (tmp_path / "workspace" / "docs").mkdir()

    result = runner.invoke(app, ["--config", str(cfg), "index", "--source", "filesystem"])

    assert result.exit_code == 0, result.output
    assert "Filesystem: 2 directories indexed" in result.output


def test_read_rejects_paths_outside_workspace(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = _write_config(tmp_path)

    result = runner.invoke(app, ["--config", str(cfg), "read", "../secret.md"])

    assert result.exit_code == 1


def test_blank_note_is_refused(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = _write_config(tmp_path)

    result = runner.invoke(app, ["--config", str(cfg), "note", "   "])

    assert result.exit_code == 1
    assert not (tmp_path / "workspace" / "memory").exists()


def test_disabled_memory_exits_with_error(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = _write_config(tmp_path, enabled=False)

    result = runner.invoke(app, ["--config", str(cfg), "search", "anything"])

    assert result.exit_code == 1
    assert "disabled" in result.output


def test_index_without_source_covers_memory_and_filesystem(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = _write_config(tmp_path)
    (tmp_path / "workspace" / "MEMORY.md").write_text("Likes hiking\n", encoding="utf-8")

    result = runner.invoke(app, ["--config", str(cfg), "index"])

    assert result.exit_code == 0, result.output
    assert "Notes and chat logs: 1 updated" in result.output
    assert "Filesystem:" in result.output
