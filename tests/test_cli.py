"""Tests for the berth command line."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from berth.__main__ import main
from berth.config import load_config


def _run(monkeypatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["berth", *argv])
    try:
        main()
    except SystemExit as e:
        return e.code or 0
    return 0


@pytest.fixture
def project(tmp_path: Path, monkeypatch, fake_docker) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("berth.sandbox.runtime.SubprocessExecutor", lambda: fake_docker)
    for var in ("BERTH_STATE_DIR", "BERTH_LOG_LEVEL", "BERTH_SANDBOX_IMAGE"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


class TestInit:
    def test_writes_loadable_config(self, project: Path, monkeypatch):
        assert _run(monkeypatch, "init", "--root", str(project)) == 0

        config = load_config(project / ".berth" / "config.yaml")
        assert config.sandbox.docker.image == "berth-sandbox:latest"
        assert Path(config.sandbox.workspace_root).is_absolute()

    def test_refuses_to_overwrite(self, project: Path, monkeypatch):
        _run(monkeypatch, "init", "--root", str(project))
        assert _run(monkeypatch, "init", "--root", str(project)) == 1


class TestCommands:
    def test_missing_config_exits(self, project: Path, monkeypatch, capsys):
        assert _run(monkeypatch, "list") == 1
        assert "berth init" in capsys.readouterr().err

    def test_no_command_prints_help(self, project: Path, monkeypatch):
        assert _run(monkeypatch) == 1

    def test_ensure_list_remove(self, project: Path, monkeypatch, capsys, fake_docker):
        _run(monkeypatch, "init", "--root", str(project))
        capsys.readouterr()

        assert _run(monkeypatch, "ensure", "--session", "session1") == 0
        name = capsys.readouterr().out.strip()
        assert name.startswith("berth-sbx-session1-")
        assert fake_docker.containers[name] is True

        assert _run(monkeypatch, "list") == 0
        listing = capsys.readouterr().out
        assert f"{name}\trunning\tper-session\tsession1" in listing

        assert _run(monkeypatch, "remove", name) == 0
        assert name not in fake_docker.containers

    def test_runtime_failure_exits_2(self, project: Path, monkeypatch, fake_docker):
        _run(monkeypatch, "init", "--root", str(project))
        fake_docker.failures["create"] = (125, "Error: image not found\n")

        assert _run(monkeypatch, "ensure", "--session", "session1") == 2

    def test_prune_with_nothing_to_do(self, project: Path, monkeypatch):
        _run(monkeypatch, "init", "--root", str(project))
        assert _run(monkeypatch, "prune") == 0
