from __future__ import annotations


class CodexSessionsError(Exception):
    """Base class for codex-sessions errors."""


class ConfigError(CodexSessionsError):
    pass


class MessageSendError(CodexSessionsError):
    """Delivery of a queued message to the Codex CLI failed."""

    def __init__(self, reason: str, exit_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.exit_code = exit_code
