from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DISTANT_PAST = datetime.min.replace(tzinfo=UTC)


class ParsedMessage(BaseModel):
    """Normalized conversation message from a Codex session log."""

    role: Literal["user", "assistant"]
    content: str
    order: int = Field(..., ge=0)

    model_config = ConfigDict(frozen=True)


class ParsedSession(BaseModel):
    """Result of parsing one session log, including resumable read state."""

    id: str
    source_path: str
    source_mod_time: datetime
    source_file_size: int = Field(..., ge=0)
    last_parsed_offset: int = Field(..., ge=0)
    started_at: datetime
    last_activity_at: datetime
    title: str
    cwd: str = ""
    preview: str = ""
    messages: list[ParsedMessage] = Field(default_factory=list)
    parsed_bytes: int = 0  # bytes consumed by this invocation only
    did_hit_budget: bool = False
    did_use_tail: bool = False

    model_config = ConfigDict(frozen=True)
