"""Merge freshly parsed sessions into the session repository.

Appended logs take the cheap path (only the new suffix is attached); any
divergence from the stored history replaces it wholesale. The repository is
saved at most once per call and only when something changed.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from codex_sessions.ingest.base import ParsedMessage, ParsedSession
from codex_sessions.storage.base import SessionRepository
from codex_sessions.storage.models import ChatMessage, ChatSession

logger = logging.getLogger(__name__)

_SCALAR_FIELDS = (
    ("id", "id"),
    ("source_mod_time", "source_mod_time"),
    ("source_file_size", "source_file_size"),
    ("last_parsed_offset", "last_parsed_offset"),
    ("sort_date", "last_activity_at"),
    ("title", "title"),
    ("cwd", "cwd"),
    ("preview", "preview"),
)


@dataclass
class MergeResult:
    changed: bool = False
    saved: bool = False
    inserted: int = 0
    appended: int = 0
    replaced: int = 0
    duplicates_removed: int = 0
    outbox_deleted: int = 0


def normalize_text(text: str) -> str:
    return text.strip()


def collapse_duplicates(
    repository: SessionRepository,
) -> tuple[dict[str, ChatSession], list[ChatSession]]:
    """Keep one session per source path (newest ``source_mod_time`` wins).

    Losers are deleted from the repository but not saved.
    """
    kept: dict[str, ChatSession] = {}
    duplicates: list[ChatSession] = []
    for session in repository.fetch_sessions():
        existing = kept.get(session.source_path)
        if existing is None:
            kept[session.source_path] = session
        elif session.source_mod_time >= existing.source_mod_time:
            duplicates.append(existing)
            kept[session.source_path] = session
        else:
            duplicates.append(session)

    for session in duplicates:
        repository.delete_session(session)
    return kept, duplicates


def messages_match_prefix(existing: Sequence[ChatMessage], parsed: Sequence[ParsedMessage]) -> bool:
    if len(existing) > len(parsed):
        return False
    return all(
        stored.role == fresh.role and stored.content == fresh.content and stored.order == fresh.order
        for stored, fresh in zip(existing, parsed)
    )


def _to_entities(messages: Iterable[ParsedMessage]) -> list[ChatMessage]:
    return [
        ChatMessage(role=message.role, content=message.content, order=message.order)
        for message in messages
    ]


def _user_texts(messages: Iterable[ParsedMessage | ChatMessage]) -> set[str]:
    return {normalize_text(message.content) for message in messages if message.role == "user"}


def _update_scalars(session: ChatSession, parsed: ParsedSession) -> bool:
    changed = False
    for entity_field, parsed_field in _SCALAR_FIELDS:
        value = getattr(parsed, parsed_field)
        if getattr(session, entity_field) != value:
            setattr(session, entity_field, value)
            changed = True
    return changed


def _merge_messages(
    repository: SessionRepository,
    session: ChatSession,
    parsed: ParsedSession,
    result: MergeResult,
) -> set[str]:
    """Attach parsed messages; return normalized texts of new user messages."""
    current = sorted(session.messages, key=lambda message: message.order)

    if not current:
        if not parsed.messages:
            return set()
        session.messages = _to_entities(parsed.messages)
        result.appended += 1
        return _user_texts(parsed.messages)

    if messages_match_prefix(current, parsed.messages):
        if len(current) == len(parsed.messages):
            return set()
        suffix = parsed.messages[len(current) :]
        session.messages = current + _to_entities(suffix)
        result.appended += 1
        return _user_texts(suffix)

    for message in current:
        repository.delete_message(session, message)
    session.messages = _to_entities(parsed.messages)
    result.replaced += 1
    return _user_texts(parsed.messages)


def apply_parsed_sessions(
    repository: SessionRepository,
    sessions: Sequence[ParsedSession],
) -> MergeResult:
    result = MergeResult()
    if not sessions:
        return result

    session_map, duplicates = collapse_duplicates(repository)
    if duplicates:
        logger.debug("apply: removing %d duplicate sessions", len(duplicates))
        result.duplicates_removed = len(duplicates)
        result.changed = True

    for parsed in sessions:
        existing = session_map.get(parsed.source_path)
        if existing is None:
            session = ChatSession(
                id=parsed.id,
                source_path=parsed.source_path,
                source_mod_time=parsed.source_mod_time,
                source_file_size=parsed.source_file_size,
                last_parsed_offset=parsed.last_parsed_offset,
                sort_date=parsed.last_activity_at,
                title=parsed.title,
                cwd=parsed.cwd,
                preview=parsed.preview,
                messages=_to_entities(parsed.messages),
            )
            repository.insert_session(session)
            session_map[parsed.source_path] = session
            result.inserted += 1
            result.changed = True
            new_user_texts = _user_texts(parsed.messages)
        else:
            if _update_scalars(existing, parsed):
                result.changed = True
            appended_before = result.appended + result.replaced
            new_user_texts = _merge_messages(repository, existing, parsed, result)
            if result.appended + result.replaced != appended_before:
                result.changed = True

        if not new_user_texts:
            continue
        for entry in repository.fetch_outbox(session_id=parsed.id):
            if normalize_text(entry.text) in new_user_texts:
                repository.delete_outbox(entry)
                result.outbox_deleted += 1

    if result.changed or result.outbox_deleted:
        repository.save()
        result.saved = True
        logger.debug("apply: saved %d sessions", len(sessions))
    return result
