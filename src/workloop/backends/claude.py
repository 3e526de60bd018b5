from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from workloop.backends.process import EventHook, OutputCallback, ProcessSupervisor
from workloop.config import WorkloopSettings

SKIP_PERMISSIONS_FLAG = "--dangerously-skip-permissions"


class ClaudeSupervisor(ProcessSupervisor):
    def __init__(
        self,
        command: str = "claude",
        args: Sequence[str] = (),
        *,
        stream_json: bool = False,
        grace_seconds: float = 5.0,
        kill_backstop_seconds: float = 1.0,
        event_hook: EventHook | None = None,
    ) -> None:
        super().__init__(
            command,
            args,
            grace_seconds=grace_seconds,
            kill_backstop_seconds=kill_backstop_seconds,
            event_hook=event_hook,
        )
        self.stream_json = stream_json

    def build_command(self, prompt: str, system_prompt: str | None = None) -> list[str]:
        command = [self.command, *self.args, "--print"]
        if self.stream_json:
            command.extend(["--output-format", "stream-json", "--verbose"])
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        command.append(prompt)
        return command


def extract_stream_text(event: dict[str, Any]) -> str:
    message = event.get("message")
    if isinstance(message, dict):
        event = message
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if not isinstance(item, dict):
                continue
            text = item.get("text")
            if isinstance(text, str):
                parts.append(text)
            elif item.get("type") == "tool_use":
                parts.append(f"[tool] {item.get('name') or 'unknown'}\n")
        return "".join(parts)
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    return ""


def _appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


class StreamJsonTap:
    """Turns `--output-format stream-json` lines into readable text for a callback."""

    def __init__(self, callback: OutputCallback | None = None) -> None:
        self.callback = callback
        self.final_result: str | None = None
        self._buffer = ""

    def __call__(self, raw_line: str) -> None:
        text = self.feed(raw_line)
        if text and self.callback is not None:
            self.callback(text)

    def feed(self, raw_line: str) -> str:
        line = raw_line.strip()
        if not line:
            return ""
        candidate = f"{self._buffer}{line}" if self._buffer else line
        try:
            event = json.loads(candidate)
            self._buffer = ""
        except json.JSONDecodeError:
            if _appears_partial_json(candidate):
                self._buffer = candidate
                return ""
            self._buffer = ""
            return f"{line}\n"

        if not isinstance(event, dict):
            return ""
        if event.get("type") == "result":
            result = event.get("result")
            if isinstance(result, str):
                self.final_result = result
            return ""
        return extract_stream_text(event)

    def flush(self) -> str:
        pending, self._buffer = self._buffer, ""
        return pending


def build_supervisor(
    settings: WorkloopSettings,
    *,
    skip_permissions: bool = False,
    stream_json: bool = False,
    event_hook: EventHook | None = None,
) -> ClaudeSupervisor:
    args = list(settings.claude.args)
    if skip_permissions and SKIP_PERMISSIONS_FLAG not in args:
        args.append(SKIP_PERMISSIONS_FLAG)
    return ClaudeSupervisor(
        settings.claude.command,
        args,
        stream_json=stream_json,
        grace_seconds=settings.claude.shutdown_grace_seconds,
        kill_backstop_seconds=settings.claude.kill_backstop_seconds,
        event_hook=event_hook,
    )
