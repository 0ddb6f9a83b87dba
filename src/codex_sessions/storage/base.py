from __future__ import annotations

from abc import ABC, abstractmethod

from codex_sessions.storage.models import ChatMessage, ChatSession, OutboxMessage, OutboxStatus


class SessionRepository(ABC):
    """
    Abstract Base Class defining the store for reconciled sessions and the outbox.

    Implementations behave as a unit of work: entities returned by the fetch
    methods are live objects, mutations on them and the insert/delete calls
    are staged, and nothing is durable until ``save`` is called. A repository
    is used from a single thread.
    """

    @abstractmethod
    def fetch_sessions(self) -> list[ChatSession]:
        """Return every session entity, duplicates included."""
        ...

    @abstractmethod
    def insert_session(self, session: ChatSession) -> None:
        """Stage a new session together with its messages."""
        ...

    @abstractmethod
    def delete_session(self, session: ChatSession) -> None:
        """Stage deletion of a session and all messages it owns."""
        ...

    @abstractmethod
    def delete_message(self, session: ChatSession, message: ChatMessage) -> None:
        """Stage deletion of one message owned by ``session``."""
        ...

    @abstractmethod
    def fetch_outbox(
        self,
        status: OutboxStatus | None = None,
        session_id: str | None = None,
    ) -> list[OutboxMessage]:
        """Return outbox entries ordered by creation time."""
        ...

    @abstractmethod
    def insert_outbox(self, message: OutboxMessage) -> None:
        """Stage a new outbox entry."""
        ...

    @abstractmethod
    def delete_outbox(self, message: OutboxMessage) -> None:
        """Stage deletion of an outbox entry. Deleting twice is a no-op."""
        ...

    @abstractmethod
    def save(self) -> None:
        """Persist all staged changes."""
        ...

    def count_sessions(self) -> int:
        return len(self.fetch_sessions())

    def count_messages(self) -> int:
        return sum(len(session.messages) for session in self.fetch_sessions())
