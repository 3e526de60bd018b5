import time
from collections.abc import Callable
from pathlib import Path

from workloop.state import Progress, StatusSnapshot, write_status
from workloop.watcher import StatusChangedEvent, StatusWatcher, compute_delta, is_meaningful

DEBOUNCE = 0.05


def _snapshot(completed: int, total: int = 5, **kwargs: object) -> StatusSnapshot:
    return StatusSnapshot(progress=Progress(completed=completed, total=total), **kwargs)


def _wait_for(condition: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def test_compute_delta_against_previous_snapshot() -> None:
    delta = compute_delta(_snapshot(1, summary="a"), _snapshot(3, total=6, summary="a"))

    assert delta.completed_delta == 2
    assert delta.total_delta == 1
    assert delta.progress_changed
    assert not delta.completion_status_changed
    assert not delta.summary_changed
    assert is_meaningful(delta)

    same = compute_delta(_snapshot(1, last_updated="x"), _snapshot(1, last_updated="y"))
    assert not is_meaningful(same)


def test_first_snapshot_counts_as_a_full_change() -> None:
    delta = compute_delta(None, _snapshot(2, complete=True))

    assert delta.completed_delta == 2
    assert delta.progress_changed
    assert delta.completion_status_changed
    assert delta.summary_changed


def test_burst_of_changes_is_delivered_once_with_latest_content(tmp_path: Path) -> None:
    path = tmp_path / ".status.json"
    events: list[StatusChangedEvent] = []
    watcher = StatusWatcher(path, events.append, debounce_seconds=DEBOUNCE)

    with watcher:
        for completed in (1, 2, 3):
            write_status(path, _snapshot(completed))
            watcher.notify_change()
        assert _wait_for(lambda: len(events) >= 1)
        time.sleep(DEBOUNCE * 6)

    assert len(events) == 1
    assert events[0].previous is None
    assert events[0].current.progress == Progress(completed=3, total=5)


def test_stop_cancels_pending_delivery(tmp_path: Path) -> None:
    path = tmp_path / ".status.json"
    events: list[StatusChangedEvent] = []
    watcher = StatusWatcher(path, events.append, debounce_seconds=0.2)

    watcher.start()
    write_status(path, _snapshot(1))
    watcher.notify_change()
    watcher.stop()
    time.sleep(0.5)

    assert events == []
    assert not watcher.is_running


def test_unreadable_file_keeps_previous_snapshot(tmp_path: Path) -> None:
    path = tmp_path / ".status.json"
    write_status(path, _snapshot(1))
    events: list[StatusChangedEvent] = []
    watcher = StatusWatcher(path, events.append, debounce_seconds=DEBOUNCE)

    with watcher:
        assert watcher.previous == _snapshot(1)
        path.write_text("{half written", encoding="utf-8")
        watcher.notify_change()
        time.sleep(DEBOUNCE * 6)
        assert events == []
        assert watcher.previous == _snapshot(1)

        write_status(path, _snapshot(2))
        watcher.notify_change()
        assert _wait_for(lambda: len(events) == 1)

    assert events[0].previous == _snapshot(1)
    assert events[0].delta.completed_delta == 1


def test_timestamp_only_rewrites_are_filtered(tmp_path: Path) -> None:
    path = tmp_path / ".status.json"
    write_status(path, _snapshot(2, last_updated="2026-01-01T00:00:00+00:00"))
    quiet: list[StatusChangedEvent] = []
    chatty: list[StatusChangedEvent] = []
    filtered = StatusWatcher(path, quiet.append, debounce_seconds=DEBOUNCE)
    unfiltered = StatusWatcher(
        path, chatty.append, debounce_seconds=DEBOUNCE, meaningful_only=False
    )

    with filtered, unfiltered:
        write_status(path, _snapshot(2, last_updated="2026-01-01T00:05:00+00:00"))
        filtered.notify_change()
        unfiltered.notify_change()
        assert _wait_for(lambda: len(chatty) >= 1)
        time.sleep(DEBOUNCE * 6)

    assert quiet == []
    assert chatty[0].current.last_updated == "2026-01-01T00:05:00+00:00"


def test_subscribers_can_be_added_and_removed(tmp_path: Path) -> None:
    path = tmp_path / ".status.json"
    first: list[StatusChangedEvent] = []
    second: list[StatusChangedEvent] = []
    watcher = StatusWatcher(path, debounce_seconds=DEBOUNCE)
    watcher.subscribe(first.append)
    watcher.subscribe(second.append)
    watcher.unsubscribe(second.append)

    with watcher:
        write_status(path, _snapshot(4))
        watcher.notify_change()
        assert _wait_for(lambda: len(first) == 1)

    assert second == []


def test_file_system_events_trigger_notifications(tmp_path: Path) -> None:
    path = tmp_path / ".status.json"
    events: list[StatusChangedEvent] = []

    with StatusWatcher(path, events.append, debounce_seconds=0.1):
        (tmp_path / "unrelated.txt").write_text("noise", encoding="utf-8")
        write_status(path, _snapshot(5, complete=True))
        assert _wait_for(lambda: len(events) >= 1)

    assert events[-1].current.complete is True
