"""Background watcher that follows the open document across file switches."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .document import DocumentSnapshot, DocumentState
from .errors import MdGlanceError

logger = logging.getLogger(__name__)

SETTLE_DELAY_SECONDS = 0.05
WAIT_TIMEOUT_SECONDS = 0.1

# Queued by retarget()/stop() so a blocked wait returns immediately.
_WAKE = object()


def _same_path(raw: str | bytes, target: str) -> bool:
    if not raw:
        return False
    return os.path.normpath(os.fsdecode(raw)) == target


class _TargetEventHandler(FileSystemEventHandler):
    """Forward modify/create events for exactly one file into a queue.

    Observers watch directories, so everything else in the target's
    directory is filtered out here. A rename onto the target counts as a
    create, which is how many editors save.
    """

    def __init__(self, events: queue.Queue, target: str | None = None):
        super().__init__()
        self._events = events
        self.target = target

    def on_any_event(self, event: FileSystemEvent) -> None:
        target = self.target
        if target is None or event.is_directory:
            return
        if event.event_type in ("modified", "created") and _same_path(event.src_path, target):
            self._events.put(target)
        elif event.event_type == "moved" and _same_path(getattr(event, "dest_path", ""), target):
            self._events.put(target)


class WatchController:
    """Watch one file at a time and refresh `DocumentState` when it changes.

    The controller is `Idle` until the first `retarget()`, then `Watching` a
    single path. `retarget()` may be called from any thread: it overwrites a
    single-slot cell (the latest request wins) and wakes the loop, which
    applies the switch before its next wait.
    """

    def __init__(
        self,
        state: DocumentState,
        *,
        on_change: Callable[[DocumentSnapshot], None] | None = None,
        observer_factory: Callable[[], object] = Observer,
        settle_delay: float = SETTLE_DELAY_SECONDS,
        wait_timeout: float = WAIT_TIMEOUT_SECONDS,
    ):
        self.state = state
        self.on_change = on_change
        self.settle_delay = settle_delay
        self.wait_timeout = wait_timeout
        self._observer = observer_factory()
        self._events: queue.Queue = queue.Queue()
        self._handler = _TargetEventHandler(self._events)
        self._pending_lock = threading.Lock()
        self._pending_target: str | None = None
        # Owned by the watch thread.
        self._target: str | None = None
        self._watch = None
        self._watched_dir: str | None = None
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def target(self) -> str | None:
        return self._target

    @property
    def is_watching(self) -> bool:
        return self._target is not None

    def retarget(self, path: str | Path) -> None:
        with self._pending_lock:
            self._pending_target = os.path.normpath(str(path))
        self._events.put(_WAKE)

    def start(self, initial_target: str | Path | None = None) -> None:
        if initial_target:
            self.retarget(initial_target)
        self._observer.start()
        self._thread = threading.Thread(target=self._run, name="mdglance-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stopping.set()
        self._events.put(_WAKE)
        if self._thread is not None:
            self._thread.join(timeout)
        self._observer.stop()
        self._observer.join(timeout)

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Watch cycle failed; continuing")

    def poll_once(self) -> DocumentSnapshot | None:
        """Run one drain-then-wait cycle; return the refreshed snapshot, if any."""
        self._drain_retarget()
        try:
            item = self._events.get(timeout=self.wait_timeout)
        except queue.Empty:
            return None
        if item is _WAKE or item != self._target:
            return None

        time.sleep(self.settle_delay)
        self._discard_duplicates()
        try:
            refreshed = self.state.refresh_content(item)
        except MdGlanceError as exc:
            # Usually a save still in progress; the next event will retry.
            logger.debug("Skipping refresh of %s: %s", item, exc)
            return None
        if refreshed is None:
            return None
        if self.on_change is not None:
            self.on_change(refreshed)
        return refreshed

    def _discard_duplicates(self) -> None:
        # One save often fires several events; a single re-read covers them.
        # A dropped wake is harmless because the pending cell is still set.
        while True:
            try:
                self._events.get_nowait()
            except queue.Empty:
                return

    def _drain_retarget(self) -> None:
        with self._pending_lock:
            new_target = self._pending_target
            self._pending_target = None
        if new_target is None or new_target == self._target:
            return
        self._switch_target(new_target)

    def _switch_target(self, new_target: str) -> None:
        new_path = Path(new_target)
        if not new_path.exists():
            logger.warning("Cannot watch %s (not found); still watching %s", new_target, self._target)
            return
        new_dir = str(new_path.parent)

        if new_dir == self._watched_dir:
            self._handler.target = new_target
            self._target = new_target
            logger.debug("Watching %s", new_target)
            return

        try:
            new_watch = self._observer.schedule(self._handler, new_dir, recursive=False)
        except OSError as exc:
            logger.warning("Cannot watch %s: %s; still watching %s", new_target, exc, self._target)
            return

        old_watch = self._watch
        self._watch = new_watch
        self._watched_dir = new_dir
        self._handler.target = new_target
        self._target = new_target
        if old_watch is not None:
            try:
                self._observer.unschedule(old_watch)
            except (KeyError, OSError) as exc:
                # The old directory may already be gone.
                logger.debug("Unschedule of previous watch failed: %s", exc)
        logger.debug("Watching %s", new_target)
