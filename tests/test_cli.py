from __future__ import annotations

from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

import codex_sessions.cli.main as cli_main
from codex_sessions.storage.models import OutboxStatus
from codex_sessions.storage.sqlite import SQLiteSessionRepository

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path: Path, sessions_root: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for name in ("CODEX_HOME", "CODEX_SCAN_BUDGET_BYTES", "CODEX_SCAN_BUDGET_MB"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CODEX_SESSIONS_DIR", str(sessions_root))
    monkeypatch.setenv("CODEX_SESSIONS_DB", str(tmp_path / "data" / "sessions.db"))
    monkeypatch.setenv("CODEX_SESSIONS_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.setenv("CODEX_STATUS_LOG", "0")
    monkeypatch.setattr(cli_main, "console", Console(width=200))
    return tmp_path / "data" / "sessions.db"


def _invoke(*args: str):
    return runner.invoke(cli_main.app, ["--config", "/nonexistent/config.yaml", *args])


def test_cli_help_import_sanity() -> None:
    result = runner.invoke(cli_main.app, ["--help"])
    assert result.exit_code == 0
    assert "scan" in result.output


def test_scan_imports_sessions(cli_env: Path, fixture_log) -> None:
    fixture_log("basic_session.jsonl")

    result = _invoke("scan")

    assert result.exit_code == 0, result.output
    assert "Scan Complete" in result.output
    assert "New sessions:      1" in result.output
    [session] = SQLiteSessionRepository(cli_env).fetch_sessions()
    assert session.id == "sess-basic-001"

    again = _invoke("scan")
    assert again.exit_code == 0
    assert "no changes" in again.output


def test_scan_force_and_clear_cache(cli_env: Path, fixture_log) -> None:
    fixture_log("basic_session.jsonl")
    assert _invoke("scan").exit_code == 0

    result = _invoke("scan", "--force", "--clear-cache")

    assert result.exit_code == 0, result.output
    assert "Removed 1 cache file(s)" in result.output
    assert "New sessions:      1" in result.output


def test_scan_budget_option(cli_env: Path, codex_log, records) -> None:
    log = codex_log("rollout-big.jsonl").write(
        records.meta("sess-big"),
        *[records.user("x" * 2000) for _ in range(1000)],
    )
    assert log.size > 1024 * 1024

    result = _invoke("scan", "--budget-mb", "1")

    assert result.exit_code == 0, result.output
    assert "Scan budget reached" in result.output


def test_invalid_config_exits(tmp_path: Path, cli_env: Path) -> None:
    bad = tmp_path / "bad.yaml"
    bad.write_text("- not a mapping\n")

    result = runner.invoke(cli_main.app, ["--config", str(bad), "status"])

    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_queue_uses_session_cwd_and_lists_outbox(cli_env: Path, fixture_log) -> None:
    fixture_log("basic_session.jsonl")
    assert _invoke("scan").exit_code == 0

    result = _invoke("queue", "sess-basic-001", "please continue")
    assert result.exit_code == 0, result.output
    assert "Queued" in result.output

    [entry] = SQLiteSessionRepository(cli_env).fetch_outbox()
    assert entry.cwd == "/work/uploader"
    assert entry.status is OutboxStatus.PENDING

    listing = _invoke("outbox")
    assert listing.exit_code == 0
    assert "please continue" in listing.output
    assert "pending" in listing.output


def test_queue_rejects_empty_text(cli_env: Path) -> None:
    result = _invoke("queue", "sess-1", "   ")

    assert result.exit_code == 1
    assert SQLiteSessionRepository(cli_env).fetch_outbox() == []


def test_outbox_drain_sends(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sent: list[tuple[str, str, str]] = []

    class FakeSender:
        def __init__(self, timeout: float = 300.0):
            self.timeout = timeout

        def send(self, session_id: str, text: str, working_directory: str = "") -> None:
            sent.append((session_id, text, working_directory))

    monkeypatch.setattr(cli_main, "CodexCliSender", FakeSender)
    assert _invoke("queue", "sess-1", "hello", "--cwd", "/repo").exit_code == 0

    result = _invoke("outbox", "--drain")

    assert result.exit_code == 0, result.output
    assert sent == [("sess-1", "hello", "/repo")]
    assert "sent" in result.output

    again = _invoke("outbox", "--drain")
    assert "No pending messages" in again.output


def test_empty_outbox(cli_env: Path) -> None:
    result = _invoke("outbox")

    assert result.exit_code == 0
    assert "Outbox is empty" in result.output


def test_status_reports_counts(cli_env: Path, fixture_log) -> None:
    fixture_log("basic_session.jsonl")
    assert _invoke("scan").exit_code == 0

    result = _invoke("status")

    assert result.exit_code == 0, result.output
    assert "Sessions: 1" in result.output
    assert "Messages: 2" in result.output
    assert "16.0 MB" in result.output
