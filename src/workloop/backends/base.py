from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Disposition = Literal["normal", "error", "killed"]
SupervisorState = Literal["idle", "spawning", "running", "closed"]


class ProcessError(RuntimeError):
    """Raised when a supervised process cannot run or does not finish cleanly."""

    def __init__(
        self,
        message: str,
        *,
        command: str | None = None,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.exit_code = exit_code
        self.output = output


class ProcessSpawnError(ProcessError):
    """Raised when the executable could not be started at all."""


class ProcessExitError(ProcessError):
    """Raised when the process exited on its own with a non-zero code."""


class ProcessKilledError(ProcessError):
    """Raised when the supervisor terminated the process."""

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        command: str | None = None,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message, command=command, exit_code=exit_code, output=output)
        self.reason = reason


class ProcessBusyError(ProcessError):
    """Raised when a second process is started while one is still tracked."""


class SupervisorClosedError(ProcessError):
    """Raised by run() once shutdown() has been requested."""


@dataclass(slots=True)
class SessionResult:
    command: list[str]
    exit_code: int | None
    disposition: Disposition
    stdout_tail: str = ""
    stderr_tail: str = ""
    reason: str | None = None
    duration_seconds: float = 0.0
    pid: int | None = None
    metadata: dict[str, object] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.disposition == "normal"

    def raise_for_status(self) -> SessionResult:
        executable = self.command[0] if self.command else None
        output = "\n".join(part for part in (self.stdout_tail, self.stderr_tail) if part)
        if self.disposition == "killed":
            raise ProcessKilledError(
                f"{executable} was terminated by the supervisor ({self.reason or 'signal'}).",
                reason=self.reason,
                command=executable,
                exit_code=self.exit_code,
                output=output,
            )
        if self.disposition == "error":
            stderr = self.stderr_tail.strip()
            detail = f": {stderr[-400:]}" if stderr else ""
            raise ProcessExitError(
                f"{executable} exited with code {self.exit_code}{detail}",
                command=executable,
                exit_code=self.exit_code,
                output=output,
            )
        return self
