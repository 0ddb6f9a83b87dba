from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from uuid import uuid4

from platformdirs import user_cache_dir, user_data_dir
from pydantic import BaseModel, ConfigDict, Field, field_validator

from codex_sessions.ingest.base import DISTANT_PAST

APP_NAME = "codex-sessions"
MIB = 1024 * 1024
MIN_HEAD_BYTES = 64 * 1024


def utcnow() -> datetime:
    """UTC now with timezone info for stable serialization."""
    return datetime.now(UTC)


def _new_key() -> str:
    return uuid4().hex


class OutboxStatus(StrEnum):
    """Delivery state of a user-composed message."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class ChatMessage(BaseModel):
    role: str
    content: str
    order: int = Field(..., ge=0)


class ChatSession(BaseModel):
    """Reconciled view of one session log file.

    ``key`` is the storage identity; ``id`` is the Codex session id, which can
    change while the log is parsed and is therefore not used as a key.
    """

    key: str = Field(default_factory=_new_key)
    id: str
    source_path: str
    source_mod_time: datetime = DISTANT_PAST
    source_file_size: int = 0
    last_parsed_offset: int = 0
    sort_date: datetime = DISTANT_PAST
    title: str = ""
    cwd: str = ""
    preview: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)


class OutboxMessage(BaseModel):
    """Message queued for delivery to the Codex CLI."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    text: str
    created_at: datetime = Field(default_factory=utcnow)
    status: OutboxStatus = OutboxStatus.PENDING
    last_error: str = ""
    cwd: str = ""


class ScanConfig(BaseModel):
    """Byte budgets and limits for parsing session logs."""

    scan_budget_bytes: int = Field(
        default=16 * MIB,
        ge=0,
        description="Bytes parsed per rescan across all files (0 = unlimited)",
    )
    tail_threshold_bytes: int = Field(
        default=256 * MIB,
        ge=0,
        description="Files larger than this are only read at the tail",
    )
    tail_bytes: int = Field(default=8 * MIB, ge=0, description="Tail window size")
    head_bytes: int = Field(
        default=MIB // 4,
        ge=0,
        description="Head window probed for session metadata in tail mode",
    )
    max_line_bytes: int = Field(
        default=2 * MIB,
        gt=0,
        description="Lines longer than this are skipped",
    )

    @field_validator("head_bytes")
    @classmethod
    def _floor_head_bytes(cls, value: int) -> int:
        return max(MIN_HEAD_BYTES, value)

    @property
    def tail_enabled(self) -> bool:
        return self.tail_threshold_bytes > 0 and self.tail_bytes > 0


def _default_sessions_dir() -> Path:
    return Path.home() / ".codex" / "sessions"


def _default_cache_dir() -> Path:
    return Path(user_cache_dir(APP_NAME)) / "parsed"


def _default_db_path() -> Path:
    return Path(user_data_dir(APP_NAME)) / "sessions.db"


class MonitorConfig(BaseModel):
    """Root configuration for the session monitor."""

    extends: list[str] = Field(default_factory=list)
    sessions_dir: Path = Field(default_factory=_default_sessions_dir)
    cache_dir: Path = Field(default_factory=_default_cache_dir)
    db_path: Path = Field(default_factory=_default_db_path)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    enable_polling: bool = Field(
        default=False,
        description="Poll even when filesystem notifications are available",
    )
    poll_interval_seconds: float = Field(default=60.0, gt=0)
    min_rescan_interval_seconds: float = Field(default=3.0, ge=0)
    debounce_seconds: float = Field(default=0.4, ge=0)
    outbox_active_interval_seconds: float = Field(default=2.0, gt=0)
    outbox_idle_interval_seconds: float = Field(default=15.0, gt=0)
    sender_timeout_seconds: float = Field(default=300.0, gt=0)
    status_log: bool = True
    debug_log: bool = False

    model_config = ConfigDict(validate_assignment=True)
