"""
Tests for the operator script (scripts/review_ops.py).

Covers: init-db, seed-templates (idempotent), issue, check-ledger, sweep,
and the missing database URL error.  Each test runs the real commands
against a fresh SQLite file.
"""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

import pytest

from scripts.review_ops import main


@pytest.fixture
def ops_url(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'ops.db'}"
    assert main(["--database-url", url, "init-db"]) == 0
    return url


class TestSeedTemplates:
    def test_registers_every_template(self, ops_url: str, capsys) -> None:
        assert main(["--database-url", ops_url, "seed-templates"]) == 0
        out = capsys.readouterr().out
        for name in ("journal_club", "quick_review", "thorough_review"):
            assert f"added {name} v1" in out

    def test_second_run_skips(self, ops_url: str, capsys) -> None:
        main(["--database-url", ops_url, "seed-templates"])
        capsys.readouterr()

        assert main(["--database-url", ops_url, "seed-templates"]) == 0
        out = capsys.readouterr().out
        assert "added" not in out
        assert out.count("already registered") == 3


class TestLedgerCommands:
    def test_issue_then_check(self, ops_url: str, capsys) -> None:
        user = uuid4()
        assert main(["--database-url", ops_url, "issue", "--user", str(user), "--amount", "25"]) == 0
        assert "balance 25" in capsys.readouterr().out

        assert main(["--database-url", ops_url, "check-ledger"]) == 0
        out = capsys.readouterr().out
        assert "ledger total: 0" in out
        assert "OK" in out

    def test_issue_rejects_zero(self, ops_url: str, capsys) -> None:
        code = main(["--database-url", ops_url, "issue", "--user", str(uuid4()), "--amount", "0"])
        assert code == 1
        assert "NON_POSITIVE_AMOUNT" in capsys.readouterr().err

    def test_empty_sweep(self, ops_url: str, capsys) -> None:
        assert main(["--database-url", ops_url, "sweep"]) == 0
        out = capsys.readouterr().out
        assert "expired memberships: 0" in out
        assert "activities advanced: 0" in out


class TestArguments:
    def test_missing_database_url(self, monkeypatch, capsys) -> None:
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert main(["init-db"]) == 2
        assert "no database URL" in capsys.readouterr().err

    def test_unknown_config_set(self, ops_url: str) -> None:
        with pytest.raises(FileNotFoundError):
            main(["--database-url", ops_url, "--config-set", "absent", "seed-templates"])
