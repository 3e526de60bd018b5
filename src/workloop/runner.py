from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from workloop.backends.base import ProcessError, ProcessKilledError, SupervisorClosedError
from workloop.backends.process import OutputCallback, ProcessSupervisor
from workloop.completion import ExecutionMode, StagnationTracker, completion_status
from workloop.config import ResolvedConfig
from workloop.prompts import iteration_prompt, system_prompt
from workloop.state.status import load_status
from workloop.state.workspace import Workspace, WorkspaceMetadata
from workloop.verification import (
    VerificationResult,
    VerificationService,
    apply_resume,
    decide_resume,
)
from workloop.watcher import StatusChangedEvent, StatusWatcher

RunStatus = Literal[
    "completed",
    "verified",
    "verification_failed",
    "stagnated",
    "max_iterations",
    "shutdown",
]
EventHook = Callable[[dict[str, Any]], None]
Sleep = Callable[[float], Awaitable[Any]]

_WORKSPACE_SOURCES = {"workspace", "cli"}


@dataclass(slots=True)
class RunOutcome:
    status: RunStatus
    iterations: int
    remaining: int | None = None
    verification: VerificationResult | None = None
    message: str = ""

    @property
    def exit_code(self) -> int:
        if self.status in ("completed", "verified"):
            return 0
        if self.status == "stagnated":
            return 2
        return 1


class IterationRunner:
    """Drives the external tool against one workspace until it is done, stuck, or stopped."""

    def __init__(
        self,
        workspace: Workspace,
        config: ResolvedConfig,
        supervisor: ProcessSupervisor,
        *,
        verifier: VerificationService | None = None,
        event_hook: EventHook | None = None,
        on_output: OutputCallback | None = None,
        project_root: Path | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.workspace = workspace
        self.config = config
        self.supervisor = supervisor
        self.project_root = project_root or Path.cwd()
        self.event_hook = event_hook
        self.on_output = on_output
        self.verifier = verifier or VerificationService(
            config.settings,
            supervisor,
            project_root=self.project_root,
            event_hook=event_hook,
        )
        self._sleep = sleep
        self._stop_requested = False

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def request_stop(self) -> None:
        self._stop_requested = True

    def _workspace_setting(self, key: str, metadata_value: Any) -> Any:
        if self.config.source_of(key) in _WORKSPACE_SOURCES:
            return self.config.get(key)
        return metadata_value

    def _on_status_changed(self, event: StatusChangedEvent) -> None:
        progress = event.current.progress
        self._emit(
            {
                "event": "status_changed",
                "completed": progress.completed if progress else None,
                "total": progress.total if progress else None,
                "complete": event.current.complete,
                "summary": event.current.summary,
                "completed_delta": event.delta.completed_delta,
            }
        )

    def _start_watcher(self) -> StatusWatcher | None:
        watch = self.config.settings.status_watch
        if not watch.enabled:
            return None
        watcher = StatusWatcher(
            self.workspace.status_path,
            self._on_status_changed,
            debounce_seconds=watch.debounce_seconds,
            meaningful_only=watch.notify_only_meaningful,
        )
        watcher.start()
        return watcher

    async def run(self, max_iterations: int | None = None) -> RunOutcome:
        watcher = self._start_watcher()
        try:
            return await self._run(max_iterations)
        finally:
            if watcher is not None:
                watcher.stop()

    async def _run(self, max_iterations: int | None) -> RunOutcome:
        settings = self.config.settings
        metadata = self.workspace.read_metadata()
        mode: ExecutionMode = metadata.mode  # type: ignore[assignment]
        limit = max_iterations or settings.max_iterations
        threshold = int(
            self._workspace_setting("stagnation_threshold", metadata.stagnation_threshold)
        )
        markers = list(self._workspace_setting("completion_markers", metadata.completion_markers))
        instructions = self.workspace.read_instructions()
        workspace_path = self.workspace.path.resolve()
        system = system_prompt(workspace_path, mode, self.project_root)
        tracker = StagnationTracker(threshold)
        timeout = settings.claude.timeout_seconds or None

        self.workspace.mark_in_progress()
        self._emit(
            {
                "event": "run_start",
                "workspace": self.workspace.name,
                "mode": mode,
                "max_iterations": limit,
                "stagnation_threshold": threshold,
            }
        )

        iterations = 0
        remaining: int | None = None
        while iterations < limit:
            if self._stop_requested:
                return self._finish("shutdown", iterations, remaining, "Stopped by request.")
            iterations += 1
            self._emit({"event": "iteration_start", "iteration": iterations})
            prompt = iteration_prompt(instructions, iterations, mode, workspace_path)
            try:
                session = await self.supervisor.run(
                    prompt,
                    self.project_root,
                    system_prompt=system,
                    timeout_seconds=timeout,
                    on_stdout=self.on_output,
                    on_stderr=self.on_output,
                )
            except SupervisorClosedError:
                return self._finish("shutdown", iterations - 1, remaining, "Supervisor closed.")
            except ProcessError as exc:
                self._fail(iterations, exc)
                raise

            if session.disposition == "killed" and session.reason == "shutdown":
                return self._finish("shutdown", iterations, remaining, "Session stopped.")
            try:
                session.raise_for_status()
            except ProcessError as exc:
                self._fail(iterations, exc)
                raise

            self.workspace.increment_iterations("execution")
            status = completion_status(self.workspace.path, mode, markers)
            remaining = status.remaining
            self._emit(
                {
                    "event": "iteration_complete",
                    "iteration": iterations,
                    "remaining": remaining,
                    "complete": status.is_complete,
                    "duration_seconds": session.duration_seconds,
                }
            )

            if status.is_complete:
                self.workspace.mark_completed()
                if not settings.verification.auto_verify:
                    return self._finish("completed", iterations, remaining, "Work complete.")
                try:
                    result = await self.verifier.verify(self.workspace)
                except (ProcessKilledError, SupervisorClosedError) as exc:
                    if isinstance(exc, ProcessKilledError) and exc.reason != "shutdown":
                        self._fail(iterations, exc)
                        raise
                    return self._finish(
                        "shutdown", iterations, remaining, "Stopped during verification."
                    )
                except RuntimeError as exc:
                    self._fail(iterations, exc)
                    raise
                resumed = self._after_verification(self.workspace.read_metadata(), result)
                if isinstance(resumed, RunOutcome):
                    resumed.iterations = iterations
                    resumed.remaining = remaining
                    return resumed
                instructions = resumed
                tracker.reset()
                continue

            snapshot = load_status(self.workspace.status_path)
            worked = snapshot.worked if snapshot is not None else None
            if tracker.observe(remaining, worked):
                self._emit(
                    {
                        "event": "stagnation_detected",
                        "iteration": iterations,
                        "streak": tracker.streak,
                        "remaining": remaining,
                    }
                )
                return self._finish(
                    "stagnated",
                    iterations,
                    remaining,
                    f"No progress for {tracker.streak} consecutive iterations.",
                )

            if iterations < limit and settings.delay_seconds > 0:
                await self._sleep(settings.delay_seconds)

        return self._finish(
            "max_iterations", iterations, remaining, f"Reached {limit} iterations."
        )

    def _after_verification(
        self, metadata: WorkspaceMetadata, result: VerificationResult
    ) -> RunOutcome | str:
        verification = self.config.settings.verification
        decision = decide_resume(
            metadata,
            result,
            max_attempts=verification.max_attempts,
            resume_enabled=verification.resume_on_fail,
        )
        match decision.action:
            case "pass":
                return self._outcome("verified", result, "Work complete and verified.")
            case "resume":
                instructions = apply_resume(self.workspace, result)
                self._emit(
                    {
                        "event": "verification_resume",
                        "cycle": decision.cycles_used + 1,
                        "issue_count": result.issue_count,
                    }
                )
                return instructions
            case "review":
                message = "Verification needs manual review."
            case "disabled":
                message = "Verification failed and auto-resume is disabled."
            case _:
                message = (
                    f"Verification failed after {decision.cycles_used} resume cycle(s)."
                )
        return self._outcome("verification_failed", result, message)

    def _outcome(self, status: RunStatus, result: VerificationResult, message: str) -> RunOutcome:
        self._emit({"event": "run_finished", "status": status, "message": message})
        return RunOutcome(status=status, iterations=0, verification=result, message=message)

    def _finish(
        self, status: RunStatus, iterations: int, remaining: int | None, message: str
    ) -> RunOutcome:
        self._emit(
            {
                "event": "run_finished",
                "status": status,
                "iterations": iterations,
                "remaining": remaining,
                "message": message,
            }
        )
        return RunOutcome(
            status=status, iterations=iterations, remaining=remaining, message=message
        )

    def _fail(self, iteration: int, exc: Exception) -> None:
        self.workspace.mark_error()
        self._emit({"event": "iteration_failed", "iteration": iteration, "error": str(exc)})
