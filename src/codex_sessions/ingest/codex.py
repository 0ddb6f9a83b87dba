from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from codex_sessions.ingest.base import DISTANT_PAST, ParsedMessage, ParsedSession
from codex_sessions.ingest.line_reader import SegmentedLineReader
from codex_sessions.ingest.parse_cache import CacheRecord, ParseStateCache
from codex_sessions.storage.models import ScanConfig

logger = logging.getLogger(__name__)

BOOTSTRAP_MARKERS = (
    "agents.md instructions",
    "<environment_context>",
    "<instructions>",
    "## skills",
)
TEXT_PART_TYPES = frozenset({"input_text", "output_text", "text"})
PREVIEW_LIMIT = 140


@dataclass
class _HeadMetadata:
    session_id: str | None = None
    started_at: datetime | None = None
    cwd: str | None = None
    last_activity_at: datetime | None = None


@dataclass
class _ParseState:
    session_id: str
    started_at: datetime
    cwd: str = ""
    messages: list[ParsedMessage] = field(default_factory=list)
    order: int = 0
    offset: int = 0
    line_count: int = 0
    last_activity_at: datetime = DISTANT_PAST
    using_cache: bool = False
    did_use_tail: bool = False
    saw_timestamp: bool = False


class CodexSessionImporter:
    """Incrementally parse Codex CLI session logs (``*.jsonl``)."""

    def __init__(
        self,
        config: ScanConfig | None = None,
        cache: ParseStateCache | None = None,
    ):
        self.config = config or ScanConfig()
        self.cache = cache

    def discover_session_files(self, root: Path) -> list[Path]:
        if not root.is_dir():
            return []
        discovered: list[Path] = []
        try:
            for path in root.rglob("*.jsonl"):
                relative = path.relative_to(root)
                if any(part.startswith(".") for part in relative.parts):
                    continue
                if path.is_file():
                    discovered.append(path)
        except OSError as exc:
            logger.debug("discovery under %s failed: %s", root, exc)
        return sorted(discovered)

    @staticmethod
    def _normalize_dt(value: datetime) -> datetime:
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)

    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime | None:
        if value is None:
            return None

        try:
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                timestamp = float(value)
                if timestamp > 1e12:
                    timestamp = timestamp / 1000
                return datetime.fromtimestamp(timestamp, tz=UTC)
            if isinstance(value, str) and value.strip():
                parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
                return cls._normalize_dt(parsed)
        except (OSError, OverflowError, TypeError, ValueError):
            return None

        return None

    @staticmethod
    def _decode_record(line: str) -> dict[str, Any] | None:
        # Cheap pre-filter; most lines are tool calls and reasoning events.
        if '"session_meta"' not in line and '"response_item"' not in line:
            return None
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            return None
        return record if isinstance(record, dict) else None

    @staticmethod
    def _extract_text(raw_content: Any) -> str:
        if isinstance(raw_content, str):
            return raw_content
        if not isinstance(raw_content, list):
            return ""
        parts: list[str] = []
        for block in raw_content:
            if not isinstance(block, dict):
                continue
            if block.get("type") not in TEXT_PART_TYPES:
                continue
            text = block.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    @staticmethod
    def _non_empty(value: Any) -> str | None:
        if isinstance(value, str) and value.strip():
            return value
        return None

    @staticmethod
    def is_bootstrap_text(text: str) -> bool:
        lowered = text.lower()
        return any(marker in lowered for marker in BOOTSTRAP_MARKERS)

    @classmethod
    def normalize_messages(cls, messages: list[ParsedMessage]) -> list[ParsedMessage]:
        """Drop the leading run of injected setup messages and renumber."""
        start = 0
        while start < len(messages):
            message = messages[start]
            if message.role == "user" and cls.is_bootstrap_text(message.content):
                start += 1
                continue
            break
        return [
            ParsedMessage(role=message.role, content=message.content, order=index)
            for index, message in enumerate(messages[start:])
        ]

    @staticmethod
    def make_preview(text: str) -> str:
        trimmed = text.strip()
        if not trimmed:
            return ""
        single_line = trimmed.replace("\n", " ")
        if len(single_line) <= PREVIEW_LIMIT:
            return single_line
        return f"{single_line[:PREVIEW_LIMIT]}…"

    def _cache_is_usable(self, cache: CacheRecord | None, mod_time: datetime, size: int) -> bool:
        if cache is None:
            return False
        return cache.source_mod_time <= mod_time and 0 < cache.last_parsed_offset <= size

    def _scan_head_metadata(self, path: Path) -> _HeadMetadata:
        head = _HeadMetadata()
        try:
            reader = SegmentedLineReader(
                path,
                max_line_bytes=self.config.max_line_bytes,
                read_limit=self.config.head_bytes,
            )
        except OSError:
            return head

        with reader:
            for record in reader:
                if record.was_truncated or not record.text:
                    continue
                try:
                    event = json.loads(record.text)
                except json.JSONDecodeError:
                    continue
                if not isinstance(event, dict):
                    continue
                event_time = self._parse_timestamp(event.get("timestamp"))
                if event_time and (head.last_activity_at is None or event_time > head.last_activity_at):
                    head.last_activity_at = event_time
                if event.get("type") != "session_meta":
                    continue
                payload = event.get("payload")
                if not isinstance(payload, dict):
                    continue
                # First non-empty value wins per field.
                if head.session_id is None:
                    head.session_id = self._non_empty(payload.get("id"))
                if head.started_at is None:
                    head.started_at = self._parse_timestamp(payload.get("timestamp"))
                if head.cwd is None:
                    head.cwd = self._non_empty(payload.get("cwd"))
        return head

    def _resolve_start(
        self,
        path: Path,
        mod_time: datetime,
        file_size: int,
        cache: CacheRecord | None,
    ) -> _ParseState:
        state = _ParseState(session_id=path.stem, started_at=mod_time)

        if cache is not None and self._cache_is_usable(cache, mod_time, file_size):
            state.session_id = cache.id
            state.started_at = cache.started_at
            state.cwd = cache.cwd
            state.messages = list(cache.messages)
            state.order = len(state.messages)
            state.offset = cache.last_parsed_offset
            state.line_count = cache.last_parsed_line_count
            state.last_activity_at = cache.last_activity_at
            state.using_cache = True

        if self.config.tail_enabled and file_size > self.config.tail_threshold_bytes:
            if cache is not None:
                if cache.id:
                    state.session_id = cache.id
                if cache.started_at != DISTANT_PAST:
                    state.started_at = cache.started_at
                if cache.cwd:
                    state.cwd = cache.cwd
                if cache.last_activity_at > state.last_activity_at:
                    state.last_activity_at = cache.last_activity_at
            else:
                head = self._scan_head_metadata(path)
                if head.session_id:
                    state.session_id = head.session_id
                if head.started_at:
                    state.started_at = head.started_at
                if head.cwd:
                    state.cwd = head.cwd
                if head.last_activity_at:
                    state.last_activity_at = head.last_activity_at
            state.offset = file_size - min(file_size, self.config.tail_bytes)
            state.line_count = 0
            state.messages = []
            state.order = 0
            state.using_cache = False
            state.did_use_tail = True

        if state.offset > file_size:
            return _ParseState(session_id=path.stem, started_at=mod_time)
        return state

    def _consume_record(self, event: dict[str, Any], state: _ParseState) -> None:
        event_type = event.get("type")
        payload = event.get("payload")
        if not isinstance(payload, dict):
            return
        if event_type == "response_item" and payload.get("type") != "message":
            return
        if event_type not in {"session_meta", "response_item"}:
            return

        event_time = self._parse_timestamp(event.get("timestamp"))
        if event_time and event_time > state.last_activity_at:
            state.last_activity_at = event_time
            state.saw_timestamp = True

        if event_type == "session_meta":
            session_id = self._non_empty(payload.get("id"))
            if session_id:
                state.session_id = session_id
            started_at = self._parse_timestamp(payload.get("timestamp"))
            if started_at:
                state.started_at = started_at
            cwd = self._non_empty(payload.get("cwd"))
            if cwd:
                state.cwd = cwd
            return

        role = payload.get("role")
        if role not in {"user", "assistant"}:
            return
        text = self._extract_text(payload.get("content"))
        if not text.strip():
            return
        state.messages.append(ParsedMessage(role=role, content=text, order=state.order))
        state.order += 1

    def parse_session(
        self,
        path: Path,
        mod_time: datetime,
        byte_budget: int | None = None,
    ) -> ParsedSession | None:
        """Parse new bytes of ``path`` and return the full session view.

        Returns None when the file cannot be read.
        """
        source_path = str(path.absolute())
        mod_time = self._normalize_dt(mod_time)
        try:
            file_size = path.stat().st_size
        except OSError as exc:
            logger.debug("stat failed for %s: %s", path, exc)
            return None

        cache = self.cache.read(source_path) if self.cache is not None else None
        state = self._resolve_start(path, mod_time, file_size, cache)
        start_offset = state.offset
        resumed_empty = state.using_cache and not state.messages

        try:
            reader = SegmentedLineReader(
                path,
                start_offset=start_offset,
                max_line_bytes=self.config.max_line_bytes,
            )
        except OSError as exc:
            logger.debug("open failed for %s: %s", path, exc)
            return None

        did_hit_budget = False
        new_lines = 0
        with reader:
            try:
                if start_offset > 0 and not reader.starts_at_line_boundary:
                    reader.skip_to_next_line()
                for record in reader:
                    new_lines += 1
                    state.offset = record.end_offset
                    if not record.was_truncated and record.text:
                        event = self._decode_record(record.text)
                        if event is not None:
                            self._consume_record(event, state)

                    if byte_budget is not None and byte_budget > 0:
                        if state.offset - start_offset >= byte_budget:
                            did_hit_budget = True
                            break
            except OSError as exc:
                logger.debug("read failed for %s: %s", path, exc)
                return None

        # The writer may have appended after stat(); report what was observed.
        file_size = max(file_size, state.offset)
        messages = state.messages
        if not state.using_cache or resumed_empty:
            messages = self.normalize_messages(messages)

        title = state.cwd or path.stem
        preview = self.make_preview(messages[-1].content if messages else "")
        last_activity_at = state.last_activity_at
        if not state.saw_timestamp or did_hit_budget or state.did_use_tail:
            if mod_time > last_activity_at:
                last_activity_at = mod_time

        parsed = ParsedSession(
            id=state.session_id,
            source_path=source_path,
            source_mod_time=mod_time,
            source_file_size=file_size,
            last_parsed_offset=state.offset,
            started_at=state.started_at,
            last_activity_at=last_activity_at,
            title=title,
            cwd=state.cwd,
            preview=preview,
            messages=messages,
            parsed_bytes=state.offset - start_offset,
            did_hit_budget=did_hit_budget,
            did_use_tail=state.did_use_tail,
        )

        if self.cache is not None:
            self.cache.write(
                parsed,
                last_parsed_offset=state.offset,
                last_parsed_line_count=state.line_count + new_lines,
                last_activity_at=state.last_activity_at,
            )
        return parsed
