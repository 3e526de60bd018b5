from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from workloop.config import OutputLevel

ERROR_EVENTS = {
    "iteration_failed",
    "process_spawn_failed",
    "process_kill_unconfirmed",
    "verification_report_missing",
}


def event_log_path(workspace_path: Path, started: datetime | None = None) -> Path:
    started = started or datetime.now(UTC)
    return workspace_path / f"events-{started.strftime('%Y%m%dT%H%M%SZ')}.jsonl"


def format_event(event: dict[str, Any]) -> str | None:
    """Console line for an event, or None when the event is not shown at progress level."""
    name = event.get("event")
    if name == "iteration_start":
        return f"Running iteration {event.get('iteration')}..."
    if name == "iteration_complete":
        remaining = event.get("remaining")
        suffix = f" ({remaining} items remaining)" if remaining is not None else ""
        return f"✓ Iteration {event.get('iteration')} complete{suffix}"
    if name == "iteration_failed":
        return f"Iteration {event.get('iteration')} failed: {event.get('error')}"
    if name == "status_changed":
        progress = f"{event.get('completed')}/{event.get('total')}"
        return f"  status: {progress} {event.get('summary') or ''}".rstrip()
    if name == "stagnation_detected":
        streak = event.get("streak")
        return f"⚠️  Stagnation detected: {streak} iterations without progress"
    if name == "verification_start":
        return f"Running {event.get('depth')} verification..."
    if name == "verification_complete":
        return f"Verification: {event.get('status')} ({event.get('issue_count')} issues)"
    if name == "verification_resume":
        return f"Resuming to address {event.get('issue_count')} verification issue(s)"
    if name == "verification_report_missing":
        return f"Verification report missing: {event.get('report_path')}"
    if name == "supervisor_shutdown" and event.get("had_process"):
        return "Stopping the running session..."
    if name == "process_grace_expired":
        return f"Process {event.get('pid')} ignored SIGTERM; sending SIGKILL"
    if name == "process_spawn_failed":
        return f"Could not start {event.get('command')}: {event.get('error')}"
    if name == "process_kill_unconfirmed":
        return f"Process {event.get('pid')} did not confirm exit after SIGKILL"
    return None


class EventLog:
    """Appends run events to a JSON lines file and echoes a subset to the console."""

    def __init__(self, path: Path | None, *, output_level: OutputLevel = "progress") -> None:
        self.path = path
        self.output_level = output_level

    def __call__(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload["at"] = datetime.now(UTC).replace(microsecond=0).isoformat()
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        self.echo(event)

    def echo(self, event: dict[str, Any]) -> None:
        name = event.get("event")
        if self.output_level == "quiet" and name not in ERROR_EVENTS:
            return
        line = format_event(event)
        if line is None:
            if self.output_level != "verbose":
                return
            details = {key: value for key, value in event.items() if key != "event"}
            line = f"[{name}] {json.dumps(details, ensure_ascii=False, default=str)}"
        click.echo(line, err=name in ERROR_EVENTS)

    def stream(self, text: str) -> None:
        if self.output_level == "verbose":
            click.echo(text, nl=False)
