from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from workloop.config import DEFAULT_COMPLETION_MARKERS
from workloop.state.files import read_json, utcnow_iso, write_json_atomic
from workloop.state.status import STATUS_FILENAME

WorkspaceStatus = Literal["in_progress", "completed", "error"]
IterationKind = Literal["setup", "execution"]

METADATA_FILENAME = ".metadata.json"
INSTRUCTIONS_FILENAME = "INSTRUCTIONS.md"
TODO_FILENAME = "TODO.md"
WORKING_DIRNAME = "working"

WORKSPACE_STATUSES = ("in_progress", "completed", "error")
EXECUTION_MODES = ("loop", "iterative")
_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class WorkspaceError(RuntimeError):
    """Raised when a workspace cannot be created, found, or read."""

    def __init__(self, message: str, *, name: str | None = None) -> None:
        super().__init__(message)
        self.name = name


class WorkspaceNotFoundError(WorkspaceError):
    pass


class WorkspaceExistsError(WorkspaceError):
    pass


class InvalidMetadataError(WorkspaceError):
    pass


def is_valid_workspace_name(name: str) -> bool:
    return bool(_NAME_PATTERN.match(name))


@dataclass(slots=True)
class VerificationRecord:
    last_verification_status: str | None = None
    last_verification_time: str | None = None
    verification_attempts: int = 0
    verify_resume_cycles: int = 0


@dataclass(slots=True)
class WorkspaceMetadata:
    name: str
    created: str
    mode: str = "loop"
    status: str = "in_progress"
    last_run: str | None = None
    total_iterations: int = 0
    setup_iterations: int = 0
    execution_iterations: int = 0
    stagnation_threshold: int = 2
    completion_markers: list[str] = field(
        default_factory=lambda: list(DEFAULT_COMPLETION_MARKERS)
    )
    verification: VerificationRecord = field(default_factory=VerificationRecord)
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, name: str, **overrides: Any) -> WorkspaceMetadata:
        return cls(name=name, created=utcnow_iso(), **overrides)

    @classmethod
    def from_dict(cls, payload: Any) -> WorkspaceMetadata:
        if not isinstance(payload, dict):
            raise InvalidMetadataError("Metadata must be a JSON object.")
        name = payload.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidMetadataError("Metadata is missing a workspace name.")
        created = payload.get("created")
        if not isinstance(created, str):
            raise InvalidMetadataError("Metadata is missing a creation time.", name=name)

        mode = payload.get("mode", "loop")
        if mode not in EXECUTION_MODES:
            raise InvalidMetadataError(f"Unsupported execution mode: {mode!r}", name=name)
        status = payload.get("status", "in_progress")
        if status not in WORKSPACE_STATUSES:
            raise InvalidMetadataError(f"Unsupported workspace status: {status!r}", name=name)

        counters: dict[str, int] = {}
        for key in (
            "total_iterations",
            "setup_iterations",
            "execution_iterations",
            "stagnation_threshold",
        ):
            value = payload.get(key, 0 if key != "stagnation_threshold" else 2)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidMetadataError(
                    f"{key} must be a non-negative integer, got {value!r}", name=name
                )
            counters[key] = value

        markers = payload.get("completion_markers", list(DEFAULT_COMPLETION_MARKERS))
        if not isinstance(markers, list) or not all(isinstance(item, str) for item in markers):
            raise InvalidMetadataError("completion_markers must be a list of strings", name=name)

        raw_verification = payload.get("verification") or {}
        if not isinstance(raw_verification, dict):
            raise InvalidMetadataError("verification must be an object", name=name)
        known = {item.name for item in fields(VerificationRecord)}
        verification = VerificationRecord(
            **{key: value for key, value in raw_verification.items() if key in known}
        )

        config = payload.get("config") or {}
        if not isinstance(config, dict):
            raise InvalidMetadataError("config must be an object", name=name)

        last_run = payload.get("last_run")
        return cls(
            name=name,
            created=created,
            mode=mode,
            status=status,
            last_run=last_run if isinstance(last_run, str) else None,
            completion_markers=list(markers),
            verification=verification,
            config=dict(config),
            **counters,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created": self.created,
            "last_run": self.last_run,
            "mode": self.mode,
            "status": self.status,
            "total_iterations": self.total_iterations,
            "setup_iterations": self.setup_iterations,
            "execution_iterations": self.execution_iterations,
            "stagnation_threshold": self.stagnation_threshold,
            "completion_markers": list(self.completion_markers),
            "verification": {
                "last_verification_status": self.verification.last_verification_status,
                "last_verification_time": self.verification.last_verification_time,
                "verification_attempts": self.verification.verification_attempts,
                "verify_resume_cycles": self.verification.verify_resume_cycles,
            },
            "config": dict(self.config),
        }


class Workspace:
    """A named directory holding instructions, TODO, status and run metadata."""

    def __init__(self, name: str, path: Path) -> None:
        self.name = name
        self.path = path

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_FILENAME

    @property
    def instructions_path(self) -> Path:
        return self.path / INSTRUCTIONS_FILENAME

    @property
    def todo_path(self) -> Path:
        return self.path / TODO_FILENAME

    @property
    def status_path(self) -> Path:
        return self.path / STATUS_FILENAME

    @property
    def working_dir(self) -> Path:
        return self.path / WORKING_DIRNAME

    def report_path(self, filename: str = "verification-report.md") -> Path:
        return self.path / filename

    @classmethod
    def init(
        cls,
        root: Path,
        name: str,
        *,
        mode: str = "loop",
        stagnation_threshold: int = 2,
        completion_markers: list[str] | None = None,
        instructions: str | None = None,
    ) -> Workspace:
        if not is_valid_workspace_name(name):
            raise WorkspaceError(
                f"Invalid workspace name {name!r}: use letters, digits, '-' and '_' only.",
                name=name,
            )
        if mode not in EXECUTION_MODES:
            raise WorkspaceError(f"Unsupported execution mode: {mode!r}", name=name)
        path = root / name
        if path.exists():
            raise WorkspaceExistsError(f"Workspace already exists: {name}", name=name)

        path.mkdir(parents=True)
        (path / WORKING_DIRNAME).mkdir()
        workspace = cls(name, path)
        metadata = WorkspaceMetadata.create(
            name,
            mode=mode,
            stagnation_threshold=stagnation_threshold,
        )
        if completion_markers is not None:
            metadata.completion_markers = list(completion_markers)
        workspace.save_metadata(metadata)
        workspace.todo_path.write_text(
            f"# TODO - {name}\n\n*Instructions not yet created.*\n", encoding="utf-8"
        )
        if instructions is not None:
            workspace.write_instructions(instructions)
        return workspace

    @classmethod
    def load(cls, root: Path, name: str) -> Workspace:
        path = root / name
        if not path.is_dir():
            raise WorkspaceNotFoundError(f"Workspace not found: {name}", name=name)
        workspace = cls(name, path)
        if not workspace.metadata_path.exists():
            raise WorkspaceNotFoundError(
                f"Workspace not found: {name} (missing metadata file)", name=name
            )
        return workspace

    def read_metadata(self) -> WorkspaceMetadata:
        payload = read_json(self.metadata_path)
        if payload is None:
            raise InvalidMetadataError(
                f"Could not read {self.metadata_path}", name=self.name
            )
        return WorkspaceMetadata.from_dict(payload)

    def save_metadata(self, metadata: WorkspaceMetadata) -> None:
        write_json_atomic(self.metadata_path, metadata.to_dict())

    def update_metadata(self, **changes: Any) -> WorkspaceMetadata:
        metadata = self.read_metadata()
        for key, value in changes.items():
            if not hasattr(metadata, key):
                raise InvalidMetadataError(f"Unknown metadata field: {key}", name=self.name)
            setattr(metadata, key, value)
        self.save_metadata(metadata)
        return metadata

    def increment_iterations(self, kind: IterationKind = "execution") -> WorkspaceMetadata:
        metadata = self.read_metadata()
        metadata.total_iterations += 1
        if kind == "setup":
            metadata.setup_iterations += 1
        else:
            metadata.execution_iterations += 1
        metadata.last_run = utcnow_iso()
        self.save_metadata(metadata)
        return metadata

    def mark_completed(self) -> WorkspaceMetadata:
        return self.update_metadata(status="completed")

    def mark_error(self) -> WorkspaceMetadata:
        return self.update_metadata(status="error")

    def mark_in_progress(self) -> WorkspaceMetadata:
        return self.update_metadata(status="in_progress")

    def reset_iterations(self) -> WorkspaceMetadata:
        metadata = self.read_metadata()
        metadata.total_iterations = 0
        metadata.setup_iterations = 0
        metadata.execution_iterations = 0
        metadata.status = "in_progress"
        metadata.verification = VerificationRecord()
        self.save_metadata(metadata)
        return metadata

    def record_verification(self, status: str) -> WorkspaceMetadata:
        metadata = self.read_metadata()
        metadata.verification.verification_attempts += 1
        metadata.verification.last_verification_status = status
        metadata.verification.last_verification_time = utcnow_iso()
        self.save_metadata(metadata)
        return metadata

    def record_resume_cycle(self) -> WorkspaceMetadata:
        metadata = self.read_metadata()
        metadata.verification.verify_resume_cycles += 1
        metadata.status = "in_progress"
        self.save_metadata(metadata)
        return metadata

    def has_instructions(self) -> bool:
        return self.instructions_path.is_file()

    def read_instructions(self) -> str:
        if not self.has_instructions():
            raise WorkspaceError(
                f"{INSTRUCTIONS_FILENAME} not found in workspace {self.name}", name=self.name
            )
        return self.instructions_path.read_text(encoding="utf-8")

    def write_instructions(self, content: str) -> None:
        self.instructions_path.write_text(content, encoding="utf-8")

    def config_layer(self) -> dict[str, Any]:
        return self.read_metadata().config

    def save_config_layer(self, config: dict[str, Any]) -> WorkspaceMetadata:
        return self.update_metadata(config=config)

    def delete(self) -> None:
        if not self.metadata_path.exists():
            raise WorkspaceNotFoundError(f"Workspace not found: {self.name}", name=self.name)
        shutil.rmtree(self.path)


def list_workspaces(root: Path) -> list[Workspace]:
    if not root.is_dir():
        return []
    return [
        Workspace(entry.name, entry)
        for entry in sorted(root.iterdir())
        if entry.is_dir() and (entry / METADATA_FILENAME).exists()
    ]
