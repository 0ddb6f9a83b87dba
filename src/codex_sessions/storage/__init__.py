from __future__ import annotations

from pathlib import Path

from codex_sessions.storage.base import SessionRepository


def create_repository(db_path: Path) -> SessionRepository:
    """
    Factory function to get the local session repository.
    """
    from codex_sessions.storage.sqlite import SQLiteSessionRepository

    return SQLiteSessionRepository(db_path)
