from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from workloop.state.files import read_json, utcnow_iso, write_json_atomic

STATUS_FILENAME = ".status.json"


def _non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
    return value


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


@dataclass(slots=True, frozen=True)
class Progress:
    completed: int
    total: int

    @property
    def remaining(self) -> int:
        return max(0, self.total - self.completed)

    @classmethod
    def from_dict(cls, payload: Any) -> Progress:
        if not isinstance(payload, dict):
            raise ValueError("progress must be an object")
        return cls(
            completed=_non_negative_int(payload.get("completed"), "progress.completed"),
            total=_non_negative_int(payload.get("total"), "progress.total"),
        )


@dataclass(slots=True)
class StatusSnapshot:
    """Machine-readable progress record written by the external tool."""

    complete: bool = False
    progress: Progress | None = None
    worked: bool | None = None
    summary: str | None = None
    phase: str | None = None
    blockers: list[str] = field(default_factory=list)
    notes: str | None = None
    last_updated: str | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> StatusSnapshot:
        if not isinstance(payload, dict):
            raise ValueError("status document must be a JSON object")
        complete = payload.get("complete")
        if not isinstance(complete, bool):
            raise ValueError("complete must be a boolean")

        progress = None
        if payload.get("progress") is not None:
            progress = Progress.from_dict(payload["progress"])

        worked = payload.get("worked")
        if worked is not None and not isinstance(worked, bool):
            raise ValueError("worked must be a boolean")

        blockers = payload.get("blockers") or []
        if not isinstance(blockers, list) or not all(isinstance(item, str) for item in blockers):
            raise ValueError("blockers must be a list of strings")

        return cls(
            complete=complete,
            progress=progress,
            worked=worked,
            summary=_optional_str(payload, "summary"),
            phase=_optional_str(payload, "phase"),
            blockers=list(blockers),
            notes=_optional_str(payload, "notes"),
            last_updated=_optional_str(payload, "lastUpdated"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"complete": self.complete}
        if self.progress is not None:
            payload["progress"] = {
                "completed": self.progress.completed,
                "total": self.progress.total,
            }
        if self.worked is not None:
            payload["worked"] = self.worked
        if self.summary is not None:
            payload["summary"] = self.summary
        if self.phase is not None:
            payload["phase"] = self.phase
        if self.blockers:
            payload["blockers"] = list(self.blockers)
        if self.notes is not None:
            payload["notes"] = self.notes
        if self.last_updated is not None:
            payload["lastUpdated"] = self.last_updated
        return payload


def default_status() -> StatusSnapshot:
    return StatusSnapshot(complete=False, progress=Progress(completed=0, total=0))


def load_status(path: Path) -> StatusSnapshot | None:
    payload = read_json(path)
    if payload is None:
        return None
    try:
        return StatusSnapshot.from_dict(payload)
    except ValueError:
        return None


def read_status(path: Path) -> StatusSnapshot:
    return load_status(path) or default_status()


def write_status(path: Path, snapshot: StatusSnapshot) -> None:
    write_json_atomic(path, snapshot.to_dict())


def initialize_status(path: Path, total: int) -> StatusSnapshot:
    snapshot = StatusSnapshot(
        complete=False,
        progress=Progress(completed=0, total=total),
        summary=f"Initialized with {total} items",
        last_updated=utcnow_iso(),
    )
    write_status(path, snapshot)
    return snapshot


def progress_summary(snapshot: StatusSnapshot) -> tuple[int, int, int]:
    if snapshot.progress is None:
        return 0, 0, 0
    completed = snapshot.progress.completed
    total = snapshot.progress.total
    percentage = round(completed / total * 100) if total > 0 else 0
    return completed, total, percentage


def validate_status(snapshot: StatusSnapshot) -> list[str]:
    warnings: list[str] = []
    progress = snapshot.progress
    if progress is not None:
        if progress.completed > progress.total:
            warnings.append(f"Completed ({progress.completed}) exceeds total ({progress.total})")
        if snapshot.complete and progress.completed != progress.total:
            warnings.append(
                f"Marked complete but progress is {progress.completed}/{progress.total}"
            )
    return warnings
