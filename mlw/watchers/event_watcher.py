"""
Event driven Change Detector

Uses watchdog observers to learn when something moved inside the watch
targets. The stat based scan still decides what changed, but it only runs
after an event arrived, and the control loop is woken right away instead of
waiting for the next poll tick.
"""

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Any, Iterable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mlw.watchers.file_watcher import ChangeDetector, ScanResult, WatchTarget


class ChangeNotifier(FileSystemEventHandler):  # type: ignore[misc]
    """Forwards relevant watchdog events to the detector."""

    def __init__(self, detector: "EventDrivenDetector") -> None:
        super().__init__()
        self.detector = detector
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        # Listing changes of a directory are reported again as file events
        if event.is_directory and event.event_type == "modified":
            return

        paths = [event.src_path]
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            paths.append(dest_path)

        relevant = self.detector.is_relevant_directory if event.is_directory else self.detector.is_relevant
        for raw_path in paths:
            path = Path(os.fsdecode(raw_path))
            if relevant(path):
                kind = "Directory" if event.is_directory else "File"
                self.logger.debug(f"{kind} {event.event_type}: {path}")
                self.detector.mark_dirty()
                return


class EventDrivenDetector(ChangeDetector):
    """
    Change detector that rescans only after watchdog reported activity.

    Targets that cannot be observed (missing directory, inotify limits) make
    every tick fall back to a full scan.
    """

    def __init__(self, targets: Iterable[WatchTarget], **kwargs: Any) -> None:
        super().__init__(targets, **kwargs)
        self.observer = Observer()
        self.event_handler = ChangeNotifier(self)
        self.wake: asyncio.Event | None = None
        self.loop: asyncio.AbstractEventLoop | None = None

        self._lock = threading.Lock()
        self._dirty = False
        self._always_scan = False
        self.is_watching = False

    def is_relevant(self, file_path: Path) -> bool:
        """Check if an event path belongs to some target and passes the filters."""
        if self.is_ignored(file_path):
            return False
        return any(target.contains(file_path) and target.matches(file_path) for target in self.targets)

    def is_relevant_directory(self, directory: Path) -> bool:
        """Check if a created, deleted or moved directory may hold watched files."""
        if self.is_ignored(directory):
            return False
        return any(directory == target.directory or target.contains(directory) for target in self.targets)

    def mark_dirty(self) -> None:
        """Record activity; safe to call from the observer thread."""
        with self._lock:
            self._dirty = True
        if self.loop is not None and self.wake is not None:
            self.loop.call_soon_threadsafe(self.wake.set)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """
        Start the observer thread and schedule a watch for every target.

        The observer runs before any watch is scheduled, so watchdog starts each
        emitter inside ``schedule`` and a target that cannot be observed
        (missing, unreadable, inotify limits) fails on its own. Such targets
        are rescanned on every tick instead.
        """
        if self.is_watching:
            return

        self.loop = loop or asyncio.get_running_loop()
        self.wake = asyncio.Event()

        self.observer.start()
        self.is_watching = True

        for target in self.targets:
            try:
                self.observer.schedule(self.event_handler, str(target.directory), recursive=target.recursive)
            except OSError as e:
                logging.getLogger(__name__).warning(
                    f"Cannot observe {target.directory} ({e}), falling back to polling for it"
                )
                self._always_scan = True

    def stop(self) -> None:
        """Stop the observer thread."""
        if not self.is_watching:
            return
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=5.0)
        self.is_watching = False

    def scan(self, targets: Iterable[WatchTarget] | None = None) -> ScanResult:
        with self._lock:
            dirty = self._dirty
            self._dirty = False

        if self.primed and not dirty and not self._always_scan:
            return ScanResult(changed=False, snapshot=self.snapshot)

        return super().scan(targets)
