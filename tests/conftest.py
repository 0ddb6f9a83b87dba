from __future__ import annotations

import json
import shutil
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from codex_sessions.ingest.codex import CodexSessionImporter
from codex_sessions.ingest.parse_cache import ParseStateCache
from codex_sessions.storage.models import MonitorConfig, ScanConfig
from codex_sessions.storage.sqlite import SQLiteSessionRepository

FIXTURES_DIR = Path(__file__).parent / "fixtures" / "codex"


class RecordFactory:
    """Build Codex JSONL records with increasing timestamps."""

    def __init__(self, start: datetime | None = None):
        self.clock = start or datetime(2025, 1, 10, 9, 0, tzinfo=UTC)

    def _tick(self) -> str:
        self.clock += timedelta(seconds=1)
        return self.clock.isoformat().replace("+00:00", "Z")

    def meta(self, session_id: str, cwd: str = "/work/project") -> dict[str, Any]:
        stamp = self._tick()
        return {
            "timestamp": stamp,
            "type": "session_meta",
            "payload": {"id": session_id, "timestamp": stamp, "cwd": cwd},
        }

    def message(self, role: str, text: str) -> dict[str, Any]:
        part_type = "output_text" if role == "assistant" else "input_text"
        return {
            "timestamp": self._tick(),
            "type": "response_item",
            "payload": {
                "type": "message",
                "role": role,
                "content": [{"type": part_type, "text": text}],
            },
        }

    def user(self, text: str) -> dict[str, Any]:
        return self.message("user", text)

    def assistant(self, text: str) -> dict[str, Any]:
        return self.message("assistant", text)

    def event(self, kind: str = "token_count") -> dict[str, Any]:
        return {"timestamp": self._tick(), "type": "event_msg", "payload": {"type": kind}}


def encode(records: list[dict[str, Any]] | tuple[dict[str, Any], ...]) -> str:
    return "".join(json.dumps(record) + "\n" for record in records)


class CodexLog:
    """A session log file under the test sessions root."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, *records: dict[str, Any]) -> CodexLog:
        self.path.write_text(encode(records))
        return self

    def append(self, *records: dict[str, Any]) -> CodexLog:
        return self.append_raw(encode(records))

    def append_raw(self, text: str) -> CodexLog:
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(text)
        return self

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    @property
    def mod_time(self) -> datetime:
        return datetime.fromtimestamp(self.path.stat().st_mtime, tz=UTC)

    @property
    def source_path(self) -> str:
        return str(self.path.absolute())


@pytest.fixture
def records() -> RecordFactory:
    return RecordFactory()


@pytest.fixture
def sessions_root(tmp_path: Path) -> Path:
    root = tmp_path / "sessions"
    root.mkdir()
    return root


@pytest.fixture
def codex_log(sessions_root: Path) -> Callable[..., CodexLog]:
    def _make(name: str = "rollout-2025-01-10T09-00-00-session.jsonl") -> CodexLog:
        return CodexLog(sessions_root / "2025" / "01" / "10" / name)

    return _make


@pytest.fixture
def fixture_log(codex_log: Callable[..., CodexLog]) -> Callable[[str], CodexLog]:
    """Copy a file from tests/fixtures/codex into the sessions root."""

    def _copy(name: str) -> CodexLog:
        log = codex_log(name)
        shutil.copy(FIXTURES_DIR / name, log.path)
        return log

    return _copy


@pytest.fixture
def cache(tmp_path: Path) -> ParseStateCache:
    return ParseStateCache(tmp_path / "cache")


@pytest.fixture
def scan_config() -> ScanConfig:
    return ScanConfig()


@pytest.fixture
def importer(scan_config: ScanConfig, cache: ParseStateCache) -> CodexSessionImporter:
    return CodexSessionImporter(scan_config, cache)


@pytest.fixture
def repository(tmp_path: Path) -> SQLiteSessionRepository:
    return SQLiteSessionRepository(tmp_path / "data" / "sessions.db")


@pytest.fixture
def monitor_config(tmp_path: Path, sessions_root: Path) -> MonitorConfig:
    return MonitorConfig(
        sessions_dir=sessions_root,
        cache_dir=tmp_path / "cache",
        db_path=tmp_path / "data" / "sessions.db",
        min_rescan_interval_seconds=0,
        debounce_seconds=0.01,
    )


class FakeWatcher:
    """Stand-in for DirectoryWatcher that fires on demand."""

    def __init__(self, root: Path, on_change: Callable[[], None], active: bool = True):
        self.root = root
        self.on_change = on_change
        self.active = active
        self.started = False
        self.stopped = False

    @property
    def is_active(self) -> bool:
        return self.started and self.active and not self.stopped

    def start(self) -> bool:
        self.started = True
        return self.active

    def stop(self) -> None:
        self.stopped = True

    def fire(self) -> None:
        self.on_change()


@pytest.fixture
def watchers() -> list[FakeWatcher]:
    return []


@pytest.fixture
def watcher_factory(watchers: list[FakeWatcher]) -> Callable[[Path, Callable[[], None]], FakeWatcher]:
    def _factory(root: Path, on_change: Callable[[], None]) -> FakeWatcher:
        watcher = FakeWatcher(root, on_change)
        watchers.append(watcher)
        return watcher

    return _factory


@pytest.fixture
def inactive_watcher_factory(
    watchers: list[FakeWatcher],
) -> Callable[[Path, Callable[[], None]], FakeWatcher]:
    def _factory(root: Path, on_change: Callable[[], None]) -> FakeWatcher:
        watcher = FakeWatcher(root, on_change, active=False)
        watchers.append(watcher)
        return watcher

    return _factory
