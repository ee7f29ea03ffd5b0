"""Tests for the ``codebox`` command line."""

from __future__ import annotations

import asyncio
import sys

import pytest
import yaml

from codebox.__main__ import main
from codebox.config import load_config
from codebox.models import ProjectStatus
from codebox.registry import ProjectRegistry


def _run_cli(monkeypatch, *argv: str) -> int:
    monkeypatch.setattr(sys, "argv", ["codebox", *argv])
    with pytest.raises(SystemExit) as exc_info:
        main()
    return exc_info.value.code


@pytest.fixture(autouse=True)
def _isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in ("CODEBOX_CONFIG", "CODEBOX_DATA_DIR", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(var, raising=False)


class TestInit:
    def test_writes_loadable_config(self, tmp_path, monkeypatch):
        assert _run_cli(monkeypatch, "init") == 0

        path = tmp_path / "codebox.yaml"
        raw = yaml.safe_load(path.read_text())
        assert raw["code_execution"]["container_name"] == "codebox-sandbox"
        assert load_config(path).code_execution.max_concurrent_tasks == 1

    def test_refuses_to_overwrite(self, tmp_path, monkeypatch, capsys):
        (tmp_path / "codebox.yaml").write_text("storage: {}\n")
        assert _run_cli(monkeypatch, "init") == 1
        assert "already exists" in capsys.readouterr().err
        assert _run_cli(monkeypatch, "init", "--force") == 0

    def test_explicit_config_path(self, tmp_path, monkeypatch):
        target = tmp_path / "conf" / "box.yaml"
        target.parent.mkdir()
        assert _run_cli(monkeypatch, "--config", str(target), "init") == 0
        assert target.exists()


class TestRecover:
    def test_no_database(self, monkeypatch, capsys):
        assert _run_cli(monkeypatch, "recover") == 0
        assert "nothing to recover" in capsys.readouterr().out

    def test_resets_stuck_projects(self, tmp_path, monkeypatch, capsys):
        async def _seed() -> None:
            db_path = tmp_path / "data" / "codebox.db"
            db_path.parent.mkdir()
            reg = ProjectRegistry(str(db_path))
            await reg.initialize()
            await reg.create_project("stuck", "u1")
            await reg.update_status("stuck", ProjectStatus.RUNNING)
            await reg.close()

        asyncio.run(_seed())
        assert _run_cli(monkeypatch, "recover") == 0
        assert "Reset 1 stuck project(s)" in capsys.readouterr().out


class TestUsage:
    def test_no_command_prints_help(self, monkeypatch, capsys):
        assert _run_cli(monkeypatch) == 1
        assert "usage: codebox" in capsys.readouterr().out
