from __future__ import annotations

from codex_sessions.ingest.base import DISTANT_PAST, ParsedMessage, ParsedSession
from codex_sessions.ingest.line_reader import LineRecord, SegmentedLineReader
from codex_sessions.ingest.log_watcher import DirectoryWatcher
from codex_sessions.ingest.parse_cache import CacheRecord, ParseStateCache

__all__ = [
    "DISTANT_PAST",
    "ParsedMessage",
    "ParsedSession",
    "LineRecord",
    "SegmentedLineReader",
    "DirectoryWatcher",
    "CacheRecord",
    "ParseStateCache",
]
