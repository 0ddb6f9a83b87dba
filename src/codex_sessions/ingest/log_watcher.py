"""Filesystem change notifications for the Codex sessions directory.

Uses ``watchfiles`` (Rust notify backend) in a daemon thread. When the
watch cannot be established ``is_active`` stays False and callers are
expected to fall back to polling.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from watchfiles import Change, watch

logger = logging.getLogger(__name__)

RELEVANT_CHANGES = frozenset({Change.added, Change.modified, Change.deleted})


class DirectoryWatcher:
    """Invoke ``on_change`` whenever something below ``root`` changes.

    The callback runs on the watcher thread and receives no arguments; it
    should only schedule work.
    """

    def __init__(
        self,
        root: Path,
        on_change: Callable[[], None] | None = None,
        debounce_ms: int = 50,
        rust_timeout_ms: int = 1_000,
    ) -> None:
        self.root = root
        self.on_change = on_change
        self.debounce_ms = debounce_ms
        self.rust_timeout_ms = rust_timeout_ms
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active and self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        self.stop()
        if not self.root.is_dir():
            logger.debug("watch root %s is not a directory", self.root)
            return False

        self._stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            name="codex-sessions-watch",
            daemon=True,
        )
        self._active = True
        try:
            thread.start()
        except RuntimeError as exc:
            logger.warning("could not start directory watcher: %s", exc)
            self._active = False
            return False
        self._thread = thread
        return True

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        self._active = False
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

    def _run(self, stop_event: threading.Event) -> None:
        try:
            for changes in watch(
                self.root,
                stop_event=stop_event,
                debounce=self.debounce_ms,
                rust_timeout=self.rust_timeout_ms,
                raise_interrupt=False,
            ):
                if stop_event.is_set():
                    break
                self.dispatch(changes)
        except (OSError, RuntimeError) as exc:
            logger.warning("directory watcher for %s stopped: %s", self.root, exc)
        finally:
            if stop_event is self._stop_event:
                self._active = False

    def dispatch(self, changes: set[tuple[Change, str]]) -> None:
        if not any(change in RELEVANT_CHANGES for change, _ in changes):
            return
        callback = self.on_change
        if callback is not None:
            callback()
