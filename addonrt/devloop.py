"""Source watcher and the debounced rebuild/reload scheduler."""

from __future__ import annotations

import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .builder import Builder
from .errors import RebuildError

LOGGER = logging.getLogger("addonrt.devloop")

IDLE = "idle"
WINDOW_OPEN = "window-open"
RUNNING = "running"

DEFAULT_WINDOW = 0.5
DEFAULT_SCRIPT_SUFFIXES = (".ts", ".tsx")


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


_CHANGE_EVENTS = frozenset({"created", "modified", "deleted", "moved"})


class _SourceEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "SourceWatcher") -> None:
        super().__init__()
        self.watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in _CHANGE_EVENTS:
            return
        self.watcher.dispatch(os.fsdecode(event.src_path))
        dest = getattr(event, "dest_path", "")
        if dest:
            self.watcher.dispatch(os.fsdecode(dest))


class SourceWatcher:
    """Watch source trees and report changed, added and removed files.

    Paths with any component starting with a dot are ignored.
    """

    def __init__(self, roots: Iterable[Path], callback: Callable[[str], None]) -> None:
        self.roots = [Path(root) for root in roots]
        self.callback = callback
        self.handler = _SourceEventHandler(self)
        self._observer: Optional[BaseObserver] = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def is_ignored(self, path: str) -> bool:
        for root in self.roots:
            try:
                parts = Path(path).relative_to(root).parts
            except ValueError:
                continue
            return any(_is_hidden(part) for part in parts)
        return any(_is_hidden(part) for part in Path(path).parts)

    def dispatch(self, path: str) -> None:
        if self.is_ignored(path):
            return
        try:
            self.callback(path)
        except Exception:
            LOGGER.exception("watch callback failed for %s", path)

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        for root in self.roots:
            if not root.is_dir():
                LOGGER.warning("source directory %s does not exist; not watching it", root)
                continue
            observer.schedule(self.handler, str(root), recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        observer, self._observer = self._observer, None
        if observer is None:
            return
        observer.stop()
        if observer is not threading.current_thread():
            observer.join(timeout=2.0)


class DevLoopScheduler:
    """Coalesce change notifications into serialized rebuild+reload cycles.

    ``notify`` opens a quiet window or pushes its deadline out. When the
    window closes, one cycle runs for the most recent path. Notifications
    that arrive while a cycle runs open a new window that is only served
    after the current cycle returns.
    """

    def __init__(
        self,
        builder: Builder,
        reload: Callable[[], Any],
        *,
        window: float = DEFAULT_WINDOW,
        script_suffixes: Iterable[str] = DEFAULT_SCRIPT_SUFFIXES,
        on_change: Optional[Callable[[str], None]] = None,
        on_reloaded: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self.builder = builder
        self.reload = reload
        self.window = window
        self.script_suffixes = tuple(script_suffixes)
        self.on_change = on_change
        self.on_reloaded = on_reloaded
        self.cycles = 0
        self.failures = 0
        self.last_error: Optional[RebuildError] = None
        self._cond = threading.Condition()
        self._deadline: Optional[float] = None
        self._latest: Optional[str] = None
        self._running = False
        self._stopped = False
        self._worker: Optional[threading.Thread] = None

    @property
    def state(self) -> str:
        with self._cond:
            if self._running:
                return RUNNING
            if self._deadline is not None:
                return WINDOW_OPEN
            return IDLE

    def start(self) -> None:
        with self._cond:
            self._stopped = False
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="addonrt-devloop", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        with self._cond:
            self._stopped = True
            self._deadline = None
            self._latest = None
            self._cond.notify_all()
        worker = self._worker
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=5.0)
        self._worker = None

    def notify(self, path: str) -> None:
        with self._cond:
            if self._stopped:
                return
            self._latest = str(path)
            self._deadline = time.monotonic() + self.window
            self._cond.notify_all()

    def trigger(self, path: str) -> None:
        """Queue a cycle for ``path`` without waiting out the quiet window."""
        with self._cond:
            if self._stopped:
                return
            self._latest = str(path)
            self._deadline = time.monotonic()
            self._cond.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no window is open and no cycle is running."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._stopped or (not self._running and self._deadline is None),
                timeout,
            )

    def is_script(self, path: str) -> bool:
        return str(path).endswith(self.script_suffixes)

    def run_cycle(self, path: str) -> bool:
        """Rebuild and reload once; failures are logged, never raised."""
        try:
            if self.on_change is not None:
                self.on_change(path)
            if self.is_script(path):
                self.builder.bundle_scripts()
            else:
                self.builder.build()
            result = self.reload()
        except Exception as exc:
            error = RebuildError(f"rebuild after change to {path} failed: {exc}", path=path)
            error.__cause__ = exc
            self.failures += 1
            self.last_error = error
            LOGGER.error("%s", error)
            return False
        self.cycles += 1
        self.last_error = None
        if self.on_reloaded is not None:
            try:
                self.on_reloaded(result)
            except Exception:
                LOGGER.exception("reload callback failed")
        return True

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._stopped:
                    if self._deadline is None:
                        self._cond.wait()
                        continue
                    remaining = self._deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    self._cond.wait(remaining)
                if self._stopped:
                    self._cond.notify_all()
                    return
                path = self._latest or ""
                self._deadline = None
                self._latest = None
                self._running = True
            try:
                self.run_cycle(path)
            finally:
                with self._cond:
                    self._running = False
                    self._cond.notify_all()


__all__ = [
    "DevLoopScheduler",
    "SourceWatcher",
    "DEFAULT_SCRIPT_SUFFIXES",
    "DEFAULT_WINDOW",
    "IDLE",
    "RUNNING",
    "WINDOW_OPEN",
]
