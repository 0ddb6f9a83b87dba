from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from codex_sessions.storage.base import SessionRepository
from codex_sessions.storage.models import ChatMessage, ChatSession, OutboxMessage, OutboxStatus

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    key TEXT PRIMARY KEY,
    id TEXT NOT NULL,
    source_path TEXT NOT NULL,
    source_mod_time TEXT NOT NULL,
    source_file_size INTEGER NOT NULL DEFAULT 0,
    last_parsed_offset INTEGER NOT NULL DEFAULT 0,
    sort_date TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    cwd TEXT NOT NULL DEFAULT '',
    preview TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS messages (
    session_key TEXT NOT NULL REFERENCES sessions(key) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    message_order INTEGER NOT NULL,
    PRIMARY KEY (session_key, position)
);

CREATE TABLE IF NOT EXISTS outbox (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    text TEXT NOT NULL,
    created_at TEXT NOT NULL,
    status TEXT NOT NULL,
    last_error TEXT NOT NULL DEFAULT '',
    cwd TEXT NOT NULL DEFAULT ''
);

CREATE INDEX IF NOT EXISTS idx_sessions_source_path ON sessions(source_path);
CREATE INDEX IF NOT EXISTS idx_outbox_session ON outbox(session_id);
CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox(status, created_at);
"""

_SessionRow = tuple[str, str, str, int, int, str, str, str, str]
_MessageRow = tuple[str, str, int]
_OutboxRow = tuple[str, str, str, str, str, str]


def _session_row(session: ChatSession) -> _SessionRow:
    return (
        session.id,
        session.source_path,
        session.source_mod_time.isoformat(),
        session.source_file_size,
        session.last_parsed_offset,
        session.sort_date.isoformat(),
        session.title,
        session.cwd,
        session.preview,
    )


def _message_rows(session: ChatSession) -> list[_MessageRow]:
    return [(message.role, message.content, message.order) for message in session.messages]


def _outbox_row(message: OutboxMessage) -> _OutboxRow:
    return (
        message.session_id,
        message.text,
        message.created_at.isoformat(),
        message.status.value,
        message.last_error,
        message.cwd,
    )


class SQLiteSessionRepository(SessionRepository):
    """Unit-of-work repository backed by a local SQLite database.

    State is loaded once into an identity map. ``save`` diffs every entity
    against the snapshot taken at load/last save and writes only the
    difference: appended messages are inserted, diverged histories are
    rewritten, changed scalars are updated.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.save_count = 0
        self._sessions: dict[str, ChatSession] | None = None
        self._outbox: dict[str, OutboxMessage] | None = None
        self._persisted_sessions: dict[str, _SessionRow] = {}
        self._persisted_messages: dict[str, list[_MessageRow]] = {}
        self._persisted_outbox: dict[str, _OutboxRow] = {}
        self._init_db()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _load(self) -> None:
        sessions: dict[str, ChatSession] = {}
        outbox: dict[str, OutboxMessage] = {}
        with self._connect() as conn:
            for row in conn.execute("SELECT * FROM sessions ORDER BY rowid").fetchall():
                sessions[row["key"]] = self._row_to_session(row)
            for row in conn.execute(
                "SELECT * FROM messages ORDER BY session_key, position"
            ).fetchall():
                session = sessions.get(row["session_key"])
                if session is None:
                    continue
                session.messages.append(
                    ChatMessage(
                        role=row["role"],
                        content=row["content"],
                        order=row["message_order"],
                    )
                )
            for row in conn.execute("SELECT * FROM outbox").fetchall():
                outbox[row["id"]] = self._row_to_outbox(row)

        self._sessions = sessions
        self._outbox = outbox
        self._snapshot(sessions, outbox)

    def _snapshot(
        self,
        sessions: dict[str, ChatSession],
        outbox: dict[str, OutboxMessage],
    ) -> None:
        self._persisted_sessions = {key: _session_row(s) for key, s in sessions.items()}
        self._persisted_messages = {key: _message_rows(s) for key, s in sessions.items()}
        self._persisted_outbox = {key: _outbox_row(m) for key, m in outbox.items()}

    def _session_map(self) -> dict[str, ChatSession]:
        if self._sessions is None:
            self._load()
        assert self._sessions is not None
        return self._sessions

    def _outbox_map(self) -> dict[str, OutboxMessage]:
        if self._outbox is None:
            self._load()
        assert self._outbox is not None
        return self._outbox

    def _row_to_session(self, row: sqlite3.Row) -> ChatSession:
        return ChatSession(
            key=row["key"],
            id=row["id"],
            source_path=row["source_path"],
            source_mod_time=datetime.fromisoformat(row["source_mod_time"]),
            source_file_size=row["source_file_size"],
            last_parsed_offset=row["last_parsed_offset"],
            sort_date=datetime.fromisoformat(row["sort_date"]),
            title=row["title"],
            cwd=row["cwd"],
            preview=row["preview"],
        )

    def _row_to_outbox(self, row: sqlite3.Row) -> OutboxMessage:
        return OutboxMessage(
            id=row["id"],
            session_id=row["session_id"],
            text=row["text"],
            created_at=datetime.fromisoformat(row["created_at"]),
            status=OutboxStatus(row["status"]),
            last_error=row["last_error"],
            cwd=row["cwd"],
        )

    def fetch_sessions(self) -> list[ChatSession]:
        return list(self._session_map().values())

    def insert_session(self, session: ChatSession) -> None:
        self._session_map()[session.key] = session

    def delete_session(self, session: ChatSession) -> None:
        self._session_map().pop(session.key, None)

    def delete_message(self, session: ChatSession, message: ChatMessage) -> None:
        session.messages = [m for m in session.messages if m is not message]

    def fetch_outbox(
        self,
        status: OutboxStatus | None = None,
        session_id: str | None = None,
    ) -> list[OutboxMessage]:
        entries = [
            message
            for message in self._outbox_map().values()
            if (status is None or message.status == status)
            and (session_id is None or message.session_id == session_id)
        ]
        return sorted(entries, key=lambda message: message.created_at)

    def insert_outbox(self, message: OutboxMessage) -> None:
        self._outbox_map()[message.id] = message

    def delete_outbox(self, message: OutboxMessage) -> None:
        self._outbox_map().pop(message.id, None)

    def save(self) -> None:
        sessions = self._session_map()
        outbox = self._outbox_map()
        self.save_count += 1
        with self._connect() as conn:
            for key in set(self._persisted_sessions) - set(sessions):
                conn.execute("DELETE FROM sessions WHERE key = ?", (key,))

            for key, session in sessions.items():
                row = _session_row(session)
                stored = self._persisted_sessions.get(key)
                if stored is None:
                    conn.execute(
                        """INSERT INTO sessions (
                               id, source_path, source_mod_time, source_file_size,
                               last_parsed_offset, sort_date, title, cwd, preview, key
                           )
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (*row, key),
                    )
                elif stored != row:
                    conn.execute(
                        """UPDATE sessions SET id=?, source_path=?, source_mod_time=?,
                               source_file_size=?, last_parsed_offset=?, sort_date=?,
                               title=?, cwd=?, preview=?
                           WHERE key=?""",
                        (*row, key),
                    )
                self._save_messages(conn, key, _message_rows(session))

            for message_id in set(self._persisted_outbox) - set(outbox):
                conn.execute("DELETE FROM outbox WHERE id = ?", (message_id,))

            for message_id, message in outbox.items():
                row = _outbox_row(message)
                stored_outbox = self._persisted_outbox.get(message_id)
                if stored_outbox is None:
                    conn.execute(
                        """INSERT INTO outbox
                               (session_id, text, created_at, status, last_error, cwd, id)
                           VALUES (?, ?, ?, ?, ?, ?, ?)""",
                        (*row, message_id),
                    )
                elif stored_outbox != row:
                    conn.execute(
                        """UPDATE outbox SET session_id=?, text=?, created_at=?, status=?,
                               last_error=?, cwd=?
                           WHERE id=?""",
                        (*row, message_id),
                    )

        self._snapshot(sessions, outbox)

    def _save_messages(
        self,
        conn: sqlite3.Connection,
        key: str,
        rows: list[_MessageRow],
    ) -> None:
        stored = self._persisted_messages.get(key, [])
        if rows == stored:
            return
        if rows[: len(stored)] == stored:
            first_new = len(stored)
        else:
            conn.execute("DELETE FROM messages WHERE session_key = ?", (key,))
            first_new = 0
        conn.executemany(
            """INSERT INTO messages (session_key, position, role, content, message_order)
               VALUES (?, ?, ?, ?, ?)""",
            [
                (key, position, role, content, order)
                for position, (role, content, order) in enumerate(rows)
                if position >= first_new
            ],
        )
