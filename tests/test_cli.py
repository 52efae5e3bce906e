from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from crewlease import __version__
from crewlease.cli import main


@pytest.fixture(autouse=True)
def quiet_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CREWLEASE_LOG_LEVEL", "ERROR")


def _invoke(db_path: Path, *args: str):
    return CliRunner().invoke(main, [*args, "--db-path", str(db_path)])


class TestCli:
    def test_version(self) -> None:
        result = CliRunner().invoke(main, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init(self, tmp_path: Path) -> None:
        db_path = tmp_path / "cli.db"
        result = _invoke(db_path, "init")
        assert result.exit_code == 0, result.output
        assert db_path.exists()

    def test_create_and_list(self, tmp_path: Path) -> None:
        db_path = tmp_path / "cli.db"
        created = _invoke(db_path, "create", "story", "Login page", "--status", "ready")
        assert created.exit_code == 0, created.output
        item_id = created.output.split()[2].rstrip(":")

        listed = _invoke(db_path, "available")
        assert item_id in listed.output
        assert "Login page" in listed.output

        history = _invoke(db_path, "history", item_id)
        assert "status_change" in history.output

    def test_create_under_missing_parent(self, tmp_path: Path) -> None:
        result = _invoke(tmp_path / "cli.db", "create", "story", "Orphan", "--parent", "NOPE")
        assert result.exit_code != 0
        assert "does not exist" in result.output

    def test_maintenance_commands(self, tmp_path: Path) -> None:
        db_path = tmp_path / "cli.db"
        assert "Released 0 stale leases" in _invoke(db_path, "sweep").output
        assert "Deleted 0 dead letters" in _invoke(db_path, "cleanup-dead-letters").output
        assert _invoke(db_path, "dead-letters").output.strip() == "[]"

        missing = _invoke(db_path, "resurrect", "MSG-NOPE")
        assert missing.exit_code != 0
        assert "not a dead letter" in missing.output
