import json
from pathlib import Path

from workloop.completion import (
    StagnationTracker,
    completion_status,
    count_checkboxes,
    is_complete,
    parse_remaining,
    remaining_count,
)


def _write(workspace: Path, todo: str | None = None, status: dict | None = None) -> None:
    if todo is not None:
        (workspace / "TODO.md").write_text(todo, encoding="utf-8")
    if status is not None:
        (workspace / ".status.json").write_text(json.dumps(status), encoding="utf-8")


def test_parse_remaining_accepts_markdown_variants() -> None:
    assert parse_remaining("Remaining: 4") == 4
    assert parse_remaining("**Remaining**: 0") == 0
    assert parse_remaining("Items Remaining: 12") == 12
    assert parse_remaining("tasks remaining: **3**") == 3
    assert parse_remaining("_Remaining_: 7") == 7
    assert parse_remaining("Nothing to see") is None


def test_count_checkboxes_ignores_prose() -> None:
    text = "- [x] one\n  * [X] two\n+ [ ] three\nnot a [ ] box\n- [] malformed\n"

    assert count_checkboxes(text) == (2, 1)


def test_loop_mode_completes_on_zero_remaining_or_marker(tmp_path: Path) -> None:
    _write(tmp_path, todo="# Tasks\n\nRemaining: 3\n")
    assert not is_complete(tmp_path, "loop")
    assert remaining_count(tmp_path, "loop") == 3

    _write(tmp_path, todo="# Tasks\n\n**Remaining**: 0\n")
    assert is_complete(tmp_path, "loop")

    _write(tmp_path, todo="Everything is done.\n\nTASK COMPLETE\n")
    assert is_complete(tmp_path, "loop")
    assert not is_complete(tmp_path, "loop", markers=["ALL DONE"])


def test_iterative_mode_needs_every_checkbox_ticked(tmp_path: Path) -> None:
    _write(tmp_path, todo="- [x] first\n- [ ] second\n")
    status = completion_status(tmp_path, "iterative")
    assert not status.is_complete
    assert status.remaining == 1
    assert status.source == "document"

    _write(tmp_path, todo="- [x] first\n- [x] second\n")
    assert is_complete(tmp_path, "iterative")

    _write(tmp_path, todo="No checklist yet.\n")
    assert not is_complete(tmp_path, "iterative")
    assert remaining_count(tmp_path, "iterative") is None


def test_missing_document_is_not_complete(tmp_path: Path) -> None:
    status = completion_status(tmp_path, "loop")

    assert not status.is_complete
    assert status.remaining is None
    assert not status.has_todo
    assert not status.has_instructions
    assert status.source == "none"


def test_complete_snapshot_wins_over_document(tmp_path: Path) -> None:
    _write(
        tmp_path,
        todo="- [ ] still open\nRemaining: 4\n",
        status={"complete": True, "progress": {"completed": 5, "total": 5}},
    )

    assert is_complete(tmp_path, "loop")
    assert is_complete(tmp_path, "iterative")
    assert completion_status(tmp_path, "loop").source == "status"


def test_incomplete_snapshot_is_authoritative_in_loop_mode_only(tmp_path: Path) -> None:
    _write(
        tmp_path,
        todo="- [x] done\nRemaining: 0\n",
        status={"complete": False, "progress": {"completed": 3, "total": 5}},
    )

    loop = completion_status(tmp_path, "loop")
    assert not loop.is_complete
    assert loop.source == "status"
    assert loop.remaining == 2

    iterative = completion_status(tmp_path, "iterative")
    assert iterative.is_complete
    assert iterative.source == "document"


def test_snapshot_progress_overrides_document_count(tmp_path: Path) -> None:
    _write(
        tmp_path,
        todo="Remaining: 9\n",
        status={"complete": False, "progress": {"completed": 7, "total": 5}},
    )

    assert remaining_count(tmp_path, "loop") == 0


def test_corrupt_snapshot_falls_back_to_document(tmp_path: Path) -> None:
    _write(tmp_path, todo="Remaining: 0\n")
    (tmp_path / ".status.json").write_text("{not json", encoding="utf-8")

    status = completion_status(tmp_path, "loop")

    assert status.is_complete
    assert status.source == "document"


def test_stagnation_trips_on_third_identical_count() -> None:
    tracker = StagnationTracker(threshold=2)

    assert tracker.observe(5) is False
    assert tracker.observe(5) is False
    assert tracker.observe(5) is True
    assert tracker.streak == 2


def test_stagnation_resets_on_progress() -> None:
    tracker = StagnationTracker(threshold=2)

    tracker.observe(5)
    tracker.observe(5)
    assert tracker.observe(4) is False
    assert tracker.streak == 0
    assert tracker.observe(4) is False
    assert tracker.observe(4) is True


def test_worked_false_counts_as_no_progress() -> None:
    tracker = StagnationTracker(threshold=2)

    assert tracker.observe(None, worked=False) is False
    assert tracker.observe(None, worked=False) is True


def test_unknown_observation_resets_and_zero_threshold_disables() -> None:
    tracker = StagnationTracker(threshold=2)
    tracker.observe(5)
    tracker.observe(5)
    tracker.observe(None)
    assert tracker.streak == 0
    assert tracker.observe(5) is False

    disabled = StagnationTracker(threshold=0)
    assert not any(disabled.observe(3) for _ in range(5))
