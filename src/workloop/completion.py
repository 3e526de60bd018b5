from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from workloop.config import DEFAULT_COMPLETION_MARKERS
from workloop.state.status import STATUS_FILENAME, StatusSnapshot, load_status

ExecutionMode = Literal["loop", "iterative"]
CompletionSource = Literal["status", "document", "none"]

TODO_FILENAME = "TODO.md"
INSTRUCTIONS_FILENAME = "INSTRUCTIONS.md"

REMAINING_PATTERN = re.compile(
    r"[*_]*(?:Items |Tasks )?Remaining[*_]*:\s*[*_]*(\d+)", re.IGNORECASE
)
CHECKBOX_PATTERN = re.compile(r"^\s*[-*+]\s+\[([ xX])\]", re.MULTILINE)


@dataclass(slots=True, frozen=True)
class CompletionStatus:
    is_complete: bool
    remaining: int | None
    has_todo: bool
    has_instructions: bool
    source: CompletionSource


def _read_document(workspace_path: Path) -> str | None:
    try:
        return (workspace_path / TODO_FILENAME).read_text(encoding="utf-8")
    except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
        return None


def _snapshot(workspace_path: Path) -> StatusSnapshot | None:
    return load_status(workspace_path / STATUS_FILENAME)


def parse_remaining(text: str) -> int | None:
    match = REMAINING_PATTERN.search(text)
    if match is None:
        return None
    return int(match.group(1))


def count_checkboxes(text: str) -> tuple[int, int]:
    """Return (checked, unchecked) checkbox counts."""
    checked = unchecked = 0
    for match in CHECKBOX_PATTERN.finditer(text):
        if match.group(1) == " ":
            unchecked += 1
        else:
            checked += 1
    return checked, unchecked


def _loop_document_complete(text: str, markers: Sequence[str]) -> bool:
    if parse_remaining(text) == 0:
        return True
    return any(marker and marker in text for marker in markers)


def _iterative_document_complete(text: str) -> bool:
    checked, unchecked = count_checkboxes(text)
    return checked + unchecked > 0 and unchecked == 0


def _document_remaining(text: str, mode: ExecutionMode) -> int | None:
    match mode:
        case "loop":
            return parse_remaining(text)
        case "iterative":
            checked, unchecked = count_checkboxes(text)
            if checked + unchecked == 0:
                return None
            return unchecked
    raise ValueError(f"Unsupported execution mode: {mode}")


def _decide(
    snapshot: StatusSnapshot | None,
    text: str | None,
    mode: ExecutionMode,
    markers: Sequence[str],
) -> tuple[bool, CompletionSource]:
    if snapshot is not None and snapshot.complete:
        return True, "status"
    if snapshot is not None and mode == "loop":
        return False, "status"
    if text is None:
        return False, "none"
    match mode:
        case "loop":
            return _loop_document_complete(text, markers), "document"
        case "iterative":
            return _iterative_document_complete(text), "document"
    raise ValueError(f"Unsupported execution mode: {mode}")


def _remaining(
    snapshot: StatusSnapshot | None, text: str | None, mode: ExecutionMode
) -> int | None:
    if snapshot is not None and snapshot.progress is not None:
        return snapshot.progress.remaining
    if text is None:
        return None
    return _document_remaining(text, mode)


def is_complete(
    workspace_path: Path,
    mode: ExecutionMode,
    markers: Sequence[str] = DEFAULT_COMPLETION_MARKERS,
) -> bool:
    complete, _ = _decide(_snapshot(workspace_path), _read_document(workspace_path), mode, markers)
    return complete


def remaining_count(workspace_path: Path, mode: ExecutionMode) -> int | None:
    return _remaining(_snapshot(workspace_path), _read_document(workspace_path), mode)


def completion_status(
    workspace_path: Path,
    mode: ExecutionMode,
    markers: Sequence[str] = DEFAULT_COMPLETION_MARKERS,
) -> CompletionStatus:
    snapshot = _snapshot(workspace_path)
    text = _read_document(workspace_path)
    complete, source = _decide(snapshot, text, mode, markers)
    return CompletionStatus(
        is_complete=complete,
        remaining=_remaining(snapshot, text, mode),
        has_todo=text is not None,
        has_instructions=(workspace_path / INSTRUCTIONS_FILENAME).is_file(),
        source=source,
    )


class StagnationTracker:
    """Counts consecutive iterations that made no progress."""

    def __init__(self, threshold: int) -> None:
        self.threshold = threshold
        self.streak = 0
        self._previous: int | None = None

    def reset(self) -> None:
        self.streak = 0
        self._previous = None

    def observe(self, remaining: int | None, worked: bool | None = None) -> bool:
        """Record one iteration; return True once the no-progress streak reaches the threshold."""
        if remaining is None and worked is None:
            self.reset()
            return False

        stalled = worked is False or (
            remaining is not None and remaining != 0 and remaining == self._previous
        )
        self.streak = self.streak + 1 if stalled else 0
        if remaining is not None:
            self._previous = remaining
        return self.threshold > 0 and self.streak >= self.threshold
