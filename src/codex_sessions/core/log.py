from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "codex_sessions"
STATUS_LOGGER = "codex_sessions.status"


def configure_logging(
    status: bool = True,
    debug: bool = False,
    console: Console | None = None,
) -> logging.Logger:
    """Attach a single rich handler to the ``codex_sessions`` logger tree.

    Status messages are INFO on ``codex_sessions.status``; everything else
    logs at DEBUG and is shown only when ``debug`` is set. Safe to call
    repeatedly.
    """
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        if getattr(handler, "_codex_sessions", False):
            root.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler._codex_sessions = True  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.propagate = False
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    logging.getLogger(STATUS_LOGGER).setLevel(logging.INFO if status else logging.WARNING)
    return root
