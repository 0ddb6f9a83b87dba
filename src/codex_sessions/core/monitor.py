"""Asyncio orchestration of rescans, filesystem events and the outbox.

The event loop owns the repository. Discovery and parsing run in a worker
thread and hand back an immutable batch which is merged on the loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from codex_sessions.core.reconcile import MergeResult, apply_parsed_sessions, collapse_duplicates
from codex_sessions.errors import MessageSendError
from codex_sessions.ingest.base import ParsedSession
from codex_sessions.ingest.codex import CodexSessionImporter
from codex_sessions.ingest.log_watcher import DirectoryWatcher
from codex_sessions.ingest.parse_cache import ParseStateCache
from codex_sessions.sender import MessageSender
from codex_sessions.storage.base import SessionRepository
from codex_sessions.storage.models import MonitorConfig, OutboxStatus, utcnow

logger = logging.getLogger(__name__)
status_logger = logging.getLogger("codex_sessions.status")

PROGRESS_INTERVAL_SECONDS = 1.0
SLOW_FILE_SECONDS = 0.2


class Watcher(Protocol):
    @property
    def is_active(self) -> bool: ...

    def start(self) -> bool: ...

    def stop(self) -> None: ...


WatcherFactory = Callable[[Path, Callable[[], None]], Watcher]


def format_bytes(count: int) -> str:
    value = float(count)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


@dataclass
class MonitorStats:
    """Diagnostics exposed by the monitor."""

    total_rescans: int = 0
    last_rescan_at: datetime | None = None
    last_rescan_duration: float | None = None
    last_file_count: int = 0
    last_parsed_count: int = 0
    last_skipped_count: int = 0
    last_budget_hit: bool = False
    watcher_active: bool = False
    polling_enabled: bool = False
    last_monitor_event_at: datetime | None = None
    last_poll_at: datetime | None = None
    last_outbox_run_at: datetime | None = None
    last_outbox_pending_count: int = 0


@dataclass(frozen=True)
class KnownFile:
    mod_time: datetime
    needs_refresh: bool
    last_parsed_offset: int
    file_size: int


@dataclass(frozen=True)
class ScanBatch:
    sessions: tuple[ParsedSession, ...]
    file_count: int
    skipped_count: int
    parsed_bytes: int
    did_hit_budget: bool


@dataclass
class RescanReport:
    forced: bool
    file_count: int = 0
    parsed_count: int = 0
    skipped_count: int = 0
    parsed_bytes: int = 0
    did_hit_budget: bool = False
    duration_seconds: float = 0.0
    discarded: bool = False
    merge: MergeResult = field(default_factory=MergeResult)


def _default_watcher_factory(root: Path, on_change: Callable[[], None]) -> Watcher:
    return DirectoryWatcher(root, on_change=on_change)


class SessionMonitor:
    """Keep the repository in sync with the Codex sessions directory."""

    def __init__(
        self,
        root: Path,
        config: MonitorConfig | None = None,
        importer: CodexSessionImporter | None = None,
        sender: MessageSender | None = None,
        watcher_factory: WatcherFactory | None = None,
        repository: SessionRepository | None = None,
    ):
        self.root = root
        self.config = config or MonitorConfig()
        self.importer = importer or CodexSessionImporter(
            self.config.scan, ParseStateCache(self.config.cache_dir)
        )
        self.sender = sender
        self.repository = repository
        self.stats = MonitorStats()
        self._watcher_factory = watcher_factory or _default_watcher_factory
        self._watcher: Watcher | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._started = False
        self._stopped = False
        self._generation = 0
        self._is_scanning = False
        self._last_rescan_started: float | None = None
        self._rescan_task: asyncio.Task[None] | None = None
        self._debounce_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._outbox_task: asyncio.Task[None] | None = None

    @property
    def is_scanning(self) -> bool:
        return self._is_scanning

    async def start(self, repository: SessionRepository) -> None:
        if self._started:
            return
        self._started = True
        self._stopped = False
        self.repository = repository
        self._loop = asyncio.get_running_loop()
        logger.debug("start: repository ready")

        self._watcher = self._watcher_factory(self.root, self._on_watcher_change)
        self.stats.watcher_active = self._watcher.start()

        if self.config.enable_polling:
            logger.debug("polling: forced on")
        elif not self.stats.watcher_active:
            logger.debug("polling: enabled (directory watcher inactive)")
        if self.config.enable_polling or not self.stats.watcher_active:
            self.stats.polling_enabled = True
            self._poll_task = self._loop.create_task(self._poll_loop())

        if self.sender is not None:
            self._outbox_task = self._loop.create_task(self._outbox_loop())

        self.rescan_now()

    async def stop(self) -> None:
        self._stopped = True
        self._generation += 1
        tasks = [
            task
            for task in (self._debounce_task, self._poll_task, self._outbox_task)
            if task is not None
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._debounce_task = None
        self._poll_task = None
        self._outbox_task = None

        if self._watcher is not None:
            await asyncio.to_thread(self._watcher.stop)
            self._watcher = None
        self.stats.watcher_active = False
        self.stats.polling_enabled = False
        self._started = False

    def _on_watcher_change(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._handle_watcher_event)
        except RuntimeError:
            logger.debug("watcher event after loop shutdown")

    def _handle_watcher_event(self) -> None:
        if self._stopped:
            return
        self.stats.last_monitor_event_at = utcnow()
        self.schedule_rescan()

    def schedule_rescan(self, delay: float | None = None) -> None:
        """Debounced rescan; repeated calls restart the timer."""
        if self._debounce_task is not None:
            self._debounce_task.cancel()
        wait = self.config.debounce_seconds if delay is None else delay
        self._debounce_task = asyncio.get_running_loop().create_task(self._debounced(wait))

    async def _debounced(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._debounce_task = None
        self.rescan_now()

    def _cooldown_remaining(self) -> float:
        if self._last_rescan_started is None:
            return 0.0
        elapsed = time.monotonic() - self._last_rescan_started
        return max(0.0, self.config.min_rescan_interval_seconds - elapsed)

    def _claim_rescan(self, force: bool) -> bool:
        if self.repository is None or self._is_scanning:
            return False
        if not force and self._cooldown_remaining() > 0:
            logger.debug("rescan: skipped (cooldown)")
            return False
        self._is_scanning = True
        self._last_rescan_started = time.monotonic()
        return True

    def rescan_now(self) -> bool:
        if self._stopped or not self._claim_rescan(force=False):
            return False
        self._rescan_task = asyncio.get_running_loop().create_task(self._background_rescan(False))
        return True

    def force_rebuild(self) -> bool:
        if self._stopped or not self._claim_rescan(force=True):
            return False
        self._rescan_task = asyncio.get_running_loop().create_task(self._background_rescan(True))
        return True

    async def rescan(self, force: bool = False) -> RescanReport | None:
        if not self._claim_rescan(force):
            return None
        return await self._perform_rescan(force)

    async def wait_for_rescan(self) -> None:
        task = self._rescan_task
        if task is not None:
            await asyncio.shield(task)

    async def _background_rescan(self, force: bool) -> None:
        try:
            await self._perform_rescan(force)
        except Exception:
            logger.exception("rescan failed")

    def _prepare_known_files(self, repository: SessionRepository, force: bool) -> dict[str, KnownFile]:
        kept, duplicates = collapse_duplicates(repository)
        if duplicates:
            logger.debug("rescan: removing %d duplicate sessions", len(duplicates))
        if force:
            logger.debug("rescan: force rebuild")
            for session in kept.values():
                repository.delete_session(session)
            kept = {}
        if duplicates or force:
            repository.save()

        return {
            path: KnownFile(
                mod_time=session.source_mod_time,
                needs_refresh=not session.preview,
                last_parsed_offset=session.last_parsed_offset,
                file_size=session.source_file_size,
            )
            for path, session in kept.items()
        }

    async def _perform_rescan(self, force: bool) -> RescanReport:
        generation = self._generation
        scan_start = time.monotonic()
        report = RescanReport(forced=force)
        try:
            repository = self.repository
            assert repository is not None
            status_logger.info("rescan: starting (force=%s)", force)
            self.stats.last_rescan_at = utcnow()
            self.stats.total_rescans += 1
            known = self._prepare_known_files(repository, force)

            batch = await asyncio.to_thread(self.collect, known)
            report.file_count = batch.file_count
            report.parsed_count = len(batch.sessions)
            report.skipped_count = batch.skipped_count
            report.parsed_bytes = batch.parsed_bytes
            report.did_hit_budget = batch.did_hit_budget

            if generation != self._generation:
                logger.debug("rescan: discarding results after stop")
                report.discarded = True
                return report

            report.merge = apply_parsed_sessions(repository, batch.sessions)
            report.duration_seconds = time.monotonic() - scan_start
            self.stats.last_file_count = batch.file_count
            self.stats.last_parsed_count = len(batch.sessions)
            self.stats.last_skipped_count = batch.skipped_count
            self.stats.last_budget_hit = batch.did_hit_budget
            self.stats.last_rescan_duration = report.duration_seconds
            status_logger.info(
                "rescan: completed (parsed %d, skipped %d, duration %.2fs)",
                len(batch.sessions),
                batch.skipped_count,
                report.duration_seconds,
            )
        finally:
            self._is_scanning = False

        if batch.did_hit_budget and self._started and not self._stopped:
            delay = max(self.config.debounce_seconds, self._cooldown_remaining())
            self.schedule_rescan(delay)
        return report

    def collect(self, known: dict[str, KnownFile]) -> ScanBatch:
        """Discover and parse changed files; runs off the event loop."""
        files = self.importer.discover_session_files(self.root)
        budget = self.config.scan.scan_budget_bytes
        remaining = budget
        sessions: list[ParsedSession] = []
        skipped = 0
        parsed_bytes = 0
        did_hit_budget = False
        processed = 0
        last_progress = float("-inf")

        if budget > 0:
            status_logger.info(
                "rescan: found %d files (budget %s)", len(files), format_bytes(budget)
            )
        else:
            status_logger.info("rescan: found %d files (budget unlimited)", len(files))

        for path in files:
            try:
                stat = path.stat()
            except OSError as exc:
                logger.debug("stat failed for %s: %s", path, exc)
                continue

            source_path = str(path.absolute())
            existing = known.get(source_path)
            # A budget-interrupted parse leaves last_parsed_offset short of the size.
            if (
                existing is not None
                and existing.file_size == stat.st_size
                and existing.last_parsed_offset >= stat.st_size
                and not existing.needs_refresh
            ):
                skipped += 1
                processed += 1
                continue

            if budget > 0 and remaining <= 0:
                did_hit_budget = True
                break

            mod_time = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
            file_start = time.monotonic()
            parsed = self.importer.parse_session(
                path,
                mod_time,
                byte_budget=remaining if budget > 0 else None,
            )
            if parsed is not None:
                sessions.append(parsed)
                parsed_bytes += parsed.parsed_bytes
                duration = time.monotonic() - file_start
                if duration >= SLOW_FILE_SECONDS:
                    status_logger.info(
                        "rescan: parsed %s +%s in %.2fs",
                        path.name,
                        format_bytes(parsed.parsed_bytes),
                        duration,
                    )
                if parsed.did_use_tail:
                    status_logger.info("rescan: tail-scan %s (partial history)", path.name)
                if budget > 0:
                    remaining = max(0, remaining - parsed.parsed_bytes)
                    if parsed.did_hit_budget:
                        did_hit_budget = True
                        break

            processed += 1
            now = time.monotonic()
            if now - last_progress >= PROGRESS_INTERVAL_SECONDS:
                status_logger.info(
                    "rescan: processed %d/%d files (parsed %d, skipped %d)",
                    processed,
                    len(files),
                    len(sessions),
                    skipped,
                )
                last_progress = now

        return ScanBatch(
            sessions=tuple(sessions),
            file_count=len(files),
            skipped_count=skipped,
            parsed_bytes=parsed_bytes,
            did_hit_budget=did_hit_budget,
        )

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.poll_interval_seconds)
            self.stats.last_poll_at = utcnow()
            self.rescan_now()

    async def _outbox_loop(self) -> None:
        delay = self.config.outbox_idle_interval_seconds
        while True:
            await asyncio.sleep(delay)
            try:
                had_pending = await self.drain_outbox()
            except Exception:
                logger.exception("outbox pass failed")
                had_pending = False
            delay = (
                self.config.outbox_active_interval_seconds
                if had_pending
                else self.config.outbox_idle_interval_seconds
            )

    async def drain_outbox(self) -> bool:
        """Send every pending outbox entry once; return whether any were pending."""
        repository = self.repository
        if repository is None:
            return False
        pending = repository.fetch_outbox(status=OutboxStatus.PENDING)
        self.stats.last_outbox_run_at = utcnow()
        self.stats.last_outbox_pending_count = len(pending)
        if not pending:
            return False
        if self.sender is None:
            logger.debug("outbox: %d pending but no sender configured", len(pending))
            return True

        for message in pending:
            message.status = OutboxStatus.SENDING
            repository.save()
            try:
                await asyncio.to_thread(
                    self.sender.send, message.session_id, message.text, message.cwd
                )
            except (MessageSendError, OSError) as exc:
                logger.debug("outbox: send %s failed: %s", message.id, exc)
                message.status = OutboxStatus.FAILED
                message.last_error = str(exc)
            else:
                message.status = OutboxStatus.SENT
                message.last_error = ""
            repository.save()
        return True
