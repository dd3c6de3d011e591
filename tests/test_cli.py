"""Tests for the Typer CLI."""

import json

from typer.testing import CliRunner

from chargur.cli import app

runner = CliRunner()


def test_logs_empty():
    result = runner.invoke(app, ["logs"])
    assert result.exit_code == 0
    assert "No log entries found" in result.output


def test_logs_entries_and_stats(isolated_logs):
    path = isolated_logs.stream_log_path
    path.parent.mkdir(parents=True, exist_ok=True)
    entries = [
        {"timestamp": "2026-01-01T00:00:01", "request_id": "r1", "attempt": 1, "outcome": "retry"},
        {"timestamp": "2026-01-01T00:00:02", "request_id": "r1", "attempt": 2, "outcome": "success"},
    ]
    path.write_text("".join(json.dumps(e) + "\n" for e in entries))

    listing = runner.invoke(app, ["logs", "--type", "stream"])
    assert listing.exit_code == 0
    assert "success" in listing.output

    stats = runner.invoke(app, ["logs", "--stats"])
    assert stats.exit_code == 0
    assert "Attempts:       2 (1 retries)" in stats.output


def test_logs_unknown_type():
    result = runner.invoke(app, ["logs", "--type", "metrics"])
    assert result.exit_code == 1


def test_status_without_endpoint(monkeypatch, tmp_path):
    monkeypatch.delenv("CHARGUR_ENDPOINT_URL", raising=False)
    monkeypatch.setattr("chargur.config.CONFIG_FILE", tmp_path / "missing.json")
    result = runner.invoke(app, ["status", "conv-1"])
    assert result.exit_code == 1
    assert "Configuration error" in result.output
