"""Tests for the stockwatch CLI commands."""

import pytest
from typer.testing import CliRunner

from stockwatch import cli
from stockwatch.app import build_app
from stockwatch.core.settings import get_settings

runner = CliRunner()

SYMBOLS = '[{"name": "Apple", "symbol": "AAPL"}, {"name": "Alphabet", "symbol": "GOOG"}]'


@pytest.fixture(autouse=True)
def sqlite_env(monkeypatch, tmp_path):
    monkeypatch.setenv("STOCKWATCH_TABLE_BACKEND", "sqlite")
    monkeypatch.setenv("STOCKWATCH_TABLE_PATH", str(tmp_path / "stockwatch.db"))
    monkeypatch.setenv("STOCKWATCH_SECRETS_DIR", str(tmp_path / "secrets"))
    monkeypatch.setenv("STOCKWATCH_STREAM_BATCHING_WINDOW_SECONDS", "0")
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)


@pytest.fixture
def fake_quotes(monkeypatch, gateway, credentials):
    monkeypatch.setattr(
        cli, "_build", lambda: build_app(get_settings(), gateway=gateway, credentials=credentials)
    )


class TestSeed:
    def test_seed_and_list(self):
        result = runner.invoke(cli.app, ["seed", "--symbols", SYMBOLS])
        assert result.exit_code == 0
        assert "created" in result.output

        result = runner.invoke(cli.app, ["symbols"])
        assert result.exit_code == 0
        assert "AAPL" in result.output
        assert "Alphabet" in result.output

    def test_seed_twice_reports_existing(self):
        runner.invoke(cli.app, ["seed", "--symbols", SYMBOLS])
        result = runner.invoke(cli.app, ["seed", "--symbols", SYMBOLS])
        assert result.exit_code == 0
        assert "exists" in result.output

    def test_invalid_symbol_list(self):
        result = runner.invoke(cli.app, ["seed", "--symbols", "not json"])
        assert result.exit_code == 1

    def test_invalid_entry_still_seeds_the_rest(self):
        raw = '[{"name": "Apple", "symbol": "AAPL"}, {"name": "Bad"}]'
        result = runner.invoke(cli.app, ["seed", "--symbols", raw])
        assert result.exit_code == 1
        assert "failed" in result.output

        assert "AAPL" in runner.invoke(cli.app, ["symbols"]).output

    def test_default_backend_persists_between_invocations(self, monkeypatch):
        monkeypatch.delenv("STOCKWATCH_TABLE_BACKEND")
        runner.invoke(cli.app, ["seed", "--symbols", SYMBOLS])

        result = runner.invoke(cli.app, ["symbols"])
        assert result.exit_code == 0
        assert "Alphabet" in result.output


class TestQueries:
    def test_empty_store(self):
        assert "No items." in runner.invoke(cli.app, ["symbols"]).output
        assert "No items." in runner.invoke(cli.app, ["prices"]).output

    def test_version(self):
        result = runner.invoke(cli.app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("stockwatch ")


class TestFetch:
    def test_missing_credential_exits_nonzero(self):
        runner.invoke(cli.app, ["seed", "--symbols", SYMBOLS])
        result = runner.invoke(cli.app, ["fetch"])
        assert result.exit_code == 1

    def test_fetch_writes_prices(self, fake_quotes, quote_source):
        quote_source.prices.update({"AAPL": 100, "GOOG": 200})
        runner.invoke(cli.app, ["seed", "--symbols", SYMBOLS])

        result = runner.invoke(cli.app, ["fetch"])
        assert result.exit_code == 0
        assert "2 processed, 0 failed" in result.output

        result = runner.invoke(cli.app, ["prices"])
        assert "AAPL" in result.output
        assert "200" in result.output

    def test_fetch_reports_failures(self, fake_quotes, quote_source):
        quote_source.prices["AAPL"] = 100
        quote_source.statuses["GOOG"] = 500
        runner.invoke(cli.app, ["seed", "--symbols", SYMBOLS])

        result = runner.invoke(cli.app, ["fetch", "--json"])

        assert result.exit_code == 0
        assert '"processed": 2' in result.output
        assert "QuoteServerError" in result.output
