from __future__ import annotations

import io
import logging

from rich.console import Console

from codex_sessions.core.log import STATUS_LOGGER, configure_logging


def _console() -> tuple[Console, io.StringIO]:
    buffer = io.StringIO()
    return Console(file=buffer, width=200), buffer


def test_status_messages_are_shown_by_default() -> None:
    console, buffer = _console()
    configure_logging(console=console)

    logging.getLogger(STATUS_LOGGER).info("rescan: starting (force=False)")
    logging.getLogger("codex_sessions.ingest.codex").debug("hidden detail")

    output = buffer.getvalue()
    assert "rescan: starting" in output
    assert "hidden detail" not in output


def test_status_can_be_silenced_and_debug_enabled() -> None:
    console, buffer = _console()
    configure_logging(status=False, debug=True, console=console)

    logging.getLogger(STATUS_LOGGER).info("rescan: completed")
    logging.getLogger("codex_sessions.core.monitor").debug("polling: forced on")

    output = buffer.getvalue()
    assert "rescan: completed" not in output
    assert "polling: forced on" in output


def test_repeated_configuration_keeps_one_handler() -> None:
    console, _ = _console()
    configure_logging(console=console)
    root = configure_logging(console=console)

    owned = [h for h in root.handlers if getattr(h, "_codex_sessions", False)]
    assert len(owned) == 1
    assert root.propagate is False
