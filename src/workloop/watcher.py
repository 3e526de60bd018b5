from __future__ import annotations

import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from workloop.state.status import StatusSnapshot, load_status

StatusCallback = Callable[["StatusChangedEvent"], None]


@dataclass(slots=True, frozen=True)
class StatusDelta:
    completed_delta: int
    total_delta: int
    progress_changed: bool
    completion_status_changed: bool
    summary_changed: bool


@dataclass(slots=True, frozen=True)
class StatusChangedEvent:
    previous: StatusSnapshot | None
    current: StatusSnapshot
    delta: StatusDelta
    timestamp: datetime


def _counts(snapshot: StatusSnapshot) -> tuple[int, int]:
    if snapshot.progress is None:
        return 0, 0
    return snapshot.progress.completed, snapshot.progress.total


def compute_delta(previous: StatusSnapshot | None, current: StatusSnapshot) -> StatusDelta:
    completed, total = _counts(current)
    if previous is None:
        return StatusDelta(
            completed_delta=completed,
            total_delta=total,
            progress_changed=True,
            completion_status_changed=current.complete,
            summary_changed=True,
        )
    previous_completed, previous_total = _counts(previous)
    return StatusDelta(
        completed_delta=completed - previous_completed,
        total_delta=total - previous_total,
        progress_changed=(completed, total) != (previous_completed, previous_total),
        completion_status_changed=previous.complete != current.complete,
        summary_changed=previous.summary != current.summary,
    )


def is_meaningful(delta: StatusDelta) -> bool:
    return delta.progress_changed or delta.completion_status_changed or delta.summary_changed


class _StatusFileHandler(FileSystemEventHandler):
    def __init__(self, target: Path, on_change: Callable[[], None]) -> None:
        super().__init__()
        self._target = os.path.abspath(target)
        self._on_change = on_change

    def _matches(self, raw_path: str | bytes) -> bool:
        return os.path.abspath(os.fsdecode(raw_path)) == self._target

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._on_change()

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.src_path):
            self._on_change()

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._matches(event.dest_path):
            self._on_change()


class StatusWatcher:
    """Debounced change notifications for a single status file."""

    def __init__(
        self,
        path: Path,
        callback: StatusCallback | None = None,
        *,
        debounce_seconds: float = 2.0,
        meaningful_only: bool = True,
    ) -> None:
        self.path = path
        self.debounce_seconds = debounce_seconds
        self.meaningful_only = meaningful_only
        self.previous: StatusSnapshot | None = None
        self._callbacks: list[StatusCallback] = [callback] if callback is not None else []
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._observer: Observer | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def subscribe(self, callback: StatusCallback) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: StatusCallback) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self.previous = load_status(self.path)

        directory = self.path.parent
        if not directory.is_dir():
            return
        observer = Observer()
        observer.schedule(_StatusFileHandler(self.path, self.notify_change), str(directory))
        observer.daemon = True
        observer.start()
        with self._lock:
            if self._running:
                self._observer = observer
                return
        observer.stop()
        observer.join()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            if threading.current_thread() is not observer:
                observer.join()

    def notify_change(self) -> None:
        with self._lock:
            if not self._running:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = threading.Timer(self.debounce_seconds, self._fire, args=(self._generation,))
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if not self._running or generation != self._generation:
                return
            self._timer = None
            current = load_status(self.path)
            if current is None:
                return
            previous = self.previous
            delta = compute_delta(previous, current)
            self.previous = current
            if previous is not None and self.meaningful_only and not is_meaningful(delta):
                return
            event = StatusChangedEvent(
                previous=previous,
                current=current,
                delta=delta,
                timestamp=datetime.now(UTC),
            )
            for callback in list(self._callbacks):
                callback(event)

    def __enter__(self) -> StatusWatcher:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
