from __future__ import annotations

import asyncio
import signal
import time
from collections import deque
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from workloop.backends.base import (
    ProcessBusyError,
    ProcessSpawnError,
    SessionResult,
    SupervisorClosedError,
    SupervisorState,
)

OutputCallback = Callable[[str], None]
EventHook = Callable[[dict[str, Any]], None]

TAIL_LINES = 200
STREAM_LIMIT_BYTES = 16 * 1024 * 1024


class ProcessSupervisor:
    """Runs one external process at a time and owns its termination."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        grace_seconds: float = 5.0,
        kill_backstop_seconds: float = 1.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.grace_seconds = grace_seconds
        self.kill_backstop_seconds = kill_backstop_seconds
        self.event_hook = event_hook
        self._process: asyncio.subprocess.Process | None = None
        self._exit_waiter: asyncio.Future[int] | None = None
        self._termination_reason: str | None = None
        self._state: SupervisorState = "idle"
        self._closed = False
        self._shutdown_grace = grace_seconds

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._closed

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(self, prompt: str, system_prompt: str | None = None) -> list[str]:
        command = [self.command, *self.args]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        command.append(prompt)
        return command

    def has_running_process(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def run(
        self,
        prompt: str,
        working_directory: Path,
        *,
        system_prompt: str | None = None,
        timeout_seconds: float | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> SessionResult:
        if self._closed:
            raise SupervisorClosedError(
                "Supervisor is shutting down; refusing to start a new process.",
                command=self.command,
            )
        if self._process is not None:
            raise ProcessBusyError(
                f"A process is already running (PID {self._process.pid}).",
                command=self.command,
            )

        command = self.build_command(prompt, system_prompt)
        self._state = "spawning"
        self._termination_reason = None
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(working_directory),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as exc:
            self._state = "closed" if self._closed else "idle"
            self._emit(
                {"event": "process_spawn_failed", "command": self.command, "error": str(exc)}
            )
            raise ProcessSpawnError(
                f"Failed to spawn {self.command}: {exc}",
                command=self.command,
            ) from exc

        self._process = process
        self._exit_waiter = asyncio.ensure_future(process.wait())
        self._state = "running"
        self._emit(
            {
                "event": "process_start",
                "pid": process.pid,
                "command": self.command,
                "cwd": str(working_directory),
            }
        )

        # shutdown() ran while the child was being spawned.
        late_shutdown: asyncio.Future[None] | None = None
        if self._closed:
            late_shutdown = asyncio.ensure_future(
                self._terminate(process, self._shutdown_grace, reason="shutdown")
            )

        stdout_tail: deque[str] = deque(maxlen=TAIL_LINES)
        stderr_tail: deque[str] = deque(maxlen=TAIL_LINES)
        readers = asyncio.gather(
            self._drain(process.stdout, stdout_tail, on_stdout),
            self._drain(process.stderr, stderr_tail, on_stderr),
        )
        try:
            if timeout_seconds and timeout_seconds > 0:
                try:
                    await asyncio.wait_for(asyncio.shield(readers), timeout=timeout_seconds)
                except TimeoutError:
                    self._emit(
                        {
                            "event": "process_timeout",
                            "pid": process.pid,
                            "timeout_seconds": timeout_seconds,
                        }
                    )
                    await self._terminate(process, self.grace_seconds, reason="timeout")
                    _, pending = await asyncio.wait({readers}, timeout=self.kill_backstop_seconds)
                    if pending:
                        readers.cancel()
            else:
                await readers
            exit_code = await self._exit_waiter
            if late_shutdown is not None:
                await late_shutdown
        except BaseException as exc:
            readers.cancel()
            if late_shutdown is not None:
                late_shutdown.cancel()
            self._send_signal(process, signal.SIGKILL)
            waiter = self._exit_waiter
            if not isinstance(exc, asyncio.CancelledError) and waiter is not None:
                await asyncio.wait({waiter}, timeout=self.kill_backstop_seconds)
            raise
        finally:
            self._process = None
            self._exit_waiter = None
            self._state = "closed" if self._closed else "idle"

        reason = self._termination_reason
        if reason is not None:
            disposition = "killed"
        elif exit_code == 0:
            disposition = "normal"
        else:
            disposition = "error"
            if exit_code < 0:
                reason = "signal"

        result = SessionResult(
            command=command,
            exit_code=exit_code,
            disposition=disposition,
            stdout_tail="".join(stdout_tail),
            stderr_tail="".join(stderr_tail),
            reason=reason,
            duration_seconds=round(time.monotonic() - started, 3),
            pid=process.pid,
        )
        self._emit(
            {
                "event": "process_exit",
                "pid": process.pid,
                "exit_code": exit_code,
                "disposition": disposition,
                "reason": reason,
                "duration_seconds": result.duration_seconds,
            }
        )
        return result

    @staticmethod
    async def _drain(
        stream: asyncio.StreamReader | None,
        tail: deque[str],
        callback: OutputCallback | None,
    ) -> None:
        if stream is None:
            return
        async for raw_line in stream:
            line = raw_line.decode("utf-8", errors="replace")
            tail.append(line)
            if callback is not None:
                callback(line)

    def _send_signal(self, process: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
        if process.returncode is not None:
            return False
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            return False
        self._emit({"event": "process_signal", "pid": process.pid, "signal": sig.name})
        return True

    async def _terminate(
        self,
        process: asyncio.subprocess.Process,
        grace_seconds: float,
        *,
        reason: str,
    ) -> None:
        waiter = self._exit_waiter
        if waiter is None or waiter.done():
            return
        if self._termination_reason is None:
            self._termination_reason = reason
        self._send_signal(process, signal.SIGTERM)

        # Exactly one of: exit future settles, or the grace window elapses.
        done, _ = await asyncio.wait({waiter}, timeout=max(0.0, grace_seconds))
        if done:
            return

        self._emit(
            {"event": "process_grace_expired", "pid": process.pid, "grace_seconds": grace_seconds}
        )
        self._send_signal(process, signal.SIGKILL)
        done, _ = await asyncio.wait({waiter}, timeout=self.kill_backstop_seconds)
        if not done:
            self._emit({"event": "process_kill_unconfirmed", "pid": process.pid})

    def kill(self, sig: signal.Signals = signal.SIGTERM) -> bool:
        process = self._process
        if process is None:
            return False
        sent = self._send_signal(process, sig)
        if sent and self._termination_reason is None:
            self._termination_reason = "signal"
        return sent

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        self._closed = True
        self._shutdown_grace = grace_seconds
        process = self._process
        if process is None or process.returncode is not None:
            self._state = "closed"
            self._emit({"event": "supervisor_shutdown", "had_process": False})
            return

        self._emit({"event": "supervisor_shutdown", "had_process": True, "pid": process.pid})
        await self._terminate(process, grace_seconds, reason="shutdown")
        if self._process is None:
            self._state = "closed"

    async def is_available(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        return await process.wait() == 0
