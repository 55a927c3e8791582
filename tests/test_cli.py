"""Tests for CLI commands using click CliRunner. No network; uses fixture data."""

from __future__ import annotations

from pathlib import Path

import pytest
from click.testing import CliRunner

from tradeledger.cli import cli


@pytest.fixture
def tmp_config(tmp_path: Path, monkeypatch) -> Path:
    """Write a temp tradeledger.yaml pointing at a temp database."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CLI_TEST_TOKEN", raising=False)
    db_path = tmp_path / "ledger.db"
    config_path = tmp_path / "tradeledger.yaml"
    config_path.write_text(
        f"""
database_url: "sqlite:///{db_path}"
accounts:
  - account_id: U12345678
    token_env: CLI_TEST_TOKEN
    query_ids: {{historical: "111"}}
"""
    )
    return config_path


@pytest.fixture
def xml_file(tmp_path: Path, sample_xml) -> Path:
    path = tmp_path / "statement.xml"
    path.write_text(sample_xml, encoding="utf-8")
    return path


def test_cli_init_db(tmp_config: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["--config", str(tmp_config), "init-db"])
    assert result.exit_code == 0, result.output
    assert "Database ready" in result.output
    assert (tmp_config.parent / "ledger.db").exists()


def test_cli_import_then_match(tmp_config: Path, xml_file: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["--config", str(tmp_config), "import", str(xml_file), "--account", "U12345678"])
    assert result.exit_code == 0, result.output
    assert "synced 4 executions" in result.output

    result = runner.invoke(cli, ["--config", str(tmp_config), "match", "--account", "U12345678"])
    assert result.exit_code == 0, result.output
    assert "4 executions, 2 lot matches, 0 anomalies" in result.output

    result = runner.invoke(cli, ["--config", str(tmp_config), "match", "--account", "U12345678", "--symbol", "MSFT"])
    assert "1 executions, 0 lot matches" in result.output


def test_cli_match_unknown_account(tmp_config: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["--config", str(tmp_config), "match", "--account", "U0"])
    assert result.exit_code != 0
    assert "No stored executions" in result.output


def test_cli_sync_without_token_fails_cleanly(tmp_config: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["--config", str(tmp_config), "sync"])
    assert result.exit_code == 1
    assert "sync failed" in result.output
    assert "CLI_TEST_TOKEN" in result.output


def test_cli_sync_unknown_account(tmp_config: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["--config", str(tmp_config), "sync", "--account", "U0"])
    assert result.exit_code != 0
    assert "Unknown account" in result.output
