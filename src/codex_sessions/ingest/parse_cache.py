from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from codex_sessions.ingest.base import DISTANT_PAST, ParsedMessage, ParsedSession

logger = logging.getLogger(__name__)


class CacheRecord(BaseModel):
    """Resumable parse state persisted per source file."""

    id: str
    source_path: str
    source_mod_time: datetime
    started_at: datetime
    title: str = ""
    cwd: str = ""
    preview: str = ""
    messages: list[ParsedMessage] = Field(default_factory=list)
    last_parsed_offset: int = Field(default=0, ge=0)
    last_parsed_line_count: int = Field(default=0, ge=0)
    last_activity_at: datetime = DISTANT_PAST


def cache_key(source_path: str) -> str:
    return hashlib.sha256(source_path.encode("utf-8")).hexdigest()


class ParseStateCache:
    """Flat directory of ``<sha256(path)>.json`` parse-state records.

    Every failure is treated as a cache miss so callers fall back to a full
    reparse instead of erroring.
    """

    def __init__(self, cache_dir: Path):
        self.cache_dir = cache_dir

    def path_for(self, source_path: str) -> Path:
        return self.cache_dir / f"{cache_key(source_path)}.json"

    def read(self, source_path: str) -> CacheRecord | None:
        path = self.path_for(source_path)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("cache read failed for %s: %s", source_path, exc)
            return None
        try:
            record = CacheRecord.model_validate_json(raw)
        except ValidationError as exc:
            logger.debug("cache record for %s is corrupt: %s", source_path, exc)
            return None
        if record.source_path != source_path:
            return None
        return record

    def write(
        self,
        session: ParsedSession,
        last_parsed_offset: int,
        last_parsed_line_count: int,
        last_activity_at: datetime | None = None,
    ) -> None:
        """Persist resumable state; ``last_activity_at`` overrides the session's value."""
        record = CacheRecord(
            id=session.id,
            source_path=session.source_path,
            source_mod_time=session.source_mod_time,
            started_at=session.started_at,
            title=session.title,
            cwd=session.cwd,
            preview=session.preview,
            messages=list(session.messages),
            last_parsed_offset=last_parsed_offset,
            last_parsed_line_count=last_parsed_line_count,
            last_activity_at=last_activity_at or session.last_activity_at,
        )
        payload = json.dumps(record.model_dump(mode="json"), indent=2, sort_keys=True)
        target = self.path_for(session.source_path)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(payload)
                os.replace(tmp_name, target)
            except OSError:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.debug("cache write failed for %s: %s", session.source_path, exc)

    def clear(self) -> int:
        if not self.cache_dir.exists():
            return 0
        removed = 0
        for path in self.cache_dir.glob("*.json"):
            try:
                path.unlink()
                removed += 1
            except OSError:
                continue
        return removed
