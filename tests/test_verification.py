import asyncio
from pathlib import Path
from typing import Any

import pytest

from workloop.backends import ProcessExitError, SessionResult
from workloop.config import resolve_config
from workloop.state import Workspace
from workloop.verification import (
    SUMMARY_FALLBACK,
    VerificationReportMissingError,
    VerificationResult,
    VerificationService,
    apply_resume,
    decide_resume,
    parse_verification_report,
    prepare_resume_instructions,
)

FAILING_REPORT = """# Verification Report

❌ INCOMPLETE

## Summary

Two of five endpoints are missing and the docs are stale.

### Incomplete Requirements

1. **Pagination endpoint**: not implemented
2. **Rate limiting**: only stubbed
3. Update the README examples
   1. nested detail that is not an issue

### Verified

1. Authentication works

**Confidence Level**: High
**Recommended Action**: Resume and finish the endpoints
"""

PASSING_REPORT = """# Verification Report

✅ VERIFIED COMPLETE

## Summary

Everything in INSTRUCTIONS.md is present.

**Confidence Level**: medium
"""


class FakeSupervisor:
    def __init__(self, report: str | bytes | None = None, exit_code: int = 0) -> None:
        self.report = report
        self.exit_code = exit_code
        self.calls: list[dict[str, Any]] = []

    async def run(self, prompt: str, working_directory: Path, **kwargs: Any) -> SessionResult:
        self.calls.append({"prompt": prompt, "cwd": working_directory, **kwargs})
        if self.report is not None:
            target = prompt.split("Write a markdown report to ", 1)[1].split(" with", 1)[0]
            data = self.report if isinstance(self.report, bytes) else self.report.encode()
            Path(target).write_bytes(data)
        return SessionResult(
            command=["claude", prompt],
            exit_code=self.exit_code,
            disposition="normal" if self.exit_code == 0 else "error",
            stdout_tail="thinking...\n",
            stderr_tail="" if self.exit_code == 0 else "auth failed\n",
        )


def _workspace(tmp_path: Path, instructions: str = "# Goal\n\nShip the API.\n") -> Workspace:
    return Workspace.init(tmp_path / "workspaces", "api", instructions=instructions)


def _service(supervisor: FakeSupervisor, tmp_path: Path, events: list[dict[str, Any]]) -> Any:
    settings = resolve_config().settings
    return VerificationService(
        settings, supervisor, project_root=tmp_path, event_hook=events.append
    )


def test_failing_report_is_parsed() -> None:
    result = parse_verification_report(FAILING_REPORT, "/tmp/report.md")

    assert result.status == "fail"
    assert result.summary == "Two of five endpoints are missing and the docs are stale."
    assert result.issues == [
        "Pagination endpoint",
        "Rate limiting",
        "Update the README examples",
    ]
    assert result.issue_count == 3
    assert result.confidence == "high"
    assert result.recommended_action == "Resume and finish the endpoints"
    assert result.report_path == "/tmp/report.md"


def test_passing_report_is_parsed() -> None:
    result = parse_verification_report(PASSING_REPORT)

    assert result.status == "pass"
    assert result.issues == []
    assert result.confidence == "medium"
    assert result.recommended_action == ""


def test_report_without_markers_needs_review() -> None:
    result = parse_verification_report("# Notes\n\n### Summary\n\nNot a level two heading.\n")

    assert result.status == "needs_review"
    assert result.summary == SUMMARY_FALLBACK
    assert result.confidence is None


def test_earliest_marker_decides_status() -> None:
    text = "❌ INCOMPLETE\n\nPreviously this was ✅ VERIFIED but regressions appeared.\n"

    assert parse_verification_report(text).status == "fail"
    assert parse_verification_report("✅ VERIFIED\n\nno ❌ INCOMPLETE items\n").status == "pass"


def test_resume_instructions_put_findings_before_original(tmp_path: Path) -> None:
    original = "# Goal\n\nShip the API.\n"
    workspace = _workspace(tmp_path, original)
    result = VerificationResult(
        status="fail",
        summary="gaps",
        issues=["Pagination endpoint", "Rate limiting"],
        report_path="/reports/api.md",
    )

    instructions = prepare_resume_instructions(workspace, result)

    assert instructions.startswith("---\n**VERIFICATION FINDINGS**")
    assert "found 2 issue(s)" in instructions
    assert "1. Pagination endpoint\n2. Rate limiting" in instructions
    assert "- Rework items that were verified complete" in instructions
    assert instructions.endswith(original)


def test_decide_resume_actions(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    metadata = workspace.read_metadata()
    failed = VerificationResult(status="fail", summary="", issues=["x"])

    assert decide_resume(metadata, failed, max_attempts=2, resume_enabled=True).should_resume
    assert (
        decide_resume(metadata, failed, max_attempts=2, resume_enabled=False).action
        == "disabled"
    )
    passed = VerificationResult(status="pass", summary="")
    assert decide_resume(metadata, passed, max_attempts=2, resume_enabled=True).action == "pass"
    review = VerificationResult(status="needs_review", summary="")
    assert decide_resume(metadata, review, max_attempts=2, resume_enabled=True).action == "review"

    metadata.verification.verify_resume_cycles = 2
    exhausted = decide_resume(metadata, failed, max_attempts=2, resume_enabled=True)
    assert exhausted.action == "exhausted"
    assert exhausted.cycles_used == 2


def test_apply_resume_counts_cycles(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    workspace.mark_completed()
    result = VerificationResult(status="fail", summary="", issues=["x"], report_path="r.md")

    instructions = apply_resume(workspace, result)

    metadata = workspace.read_metadata()
    assert metadata.verification.verify_resume_cycles == 1
    assert metadata.status == "in_progress"
    assert "1. x" in instructions
    assert workspace.read_instructions() == "# Goal\n\nShip the API.\n"


def test_service_runs_tool_and_records_attempt(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    supervisor = FakeSupervisor(FAILING_REPORT)
    events: list[dict[str, Any]] = []
    service = _service(supervisor, tmp_path, events)

    result = asyncio.run(service.verify(workspace, depth="deep"))

    assert result.status == "fail"
    assert result.issue_count == 3
    assert Path(result.report_path) == workspace.report_path().resolve()
    assert supervisor.calls[0]["cwd"] == tmp_path
    assert "Verification Depth: Deep" in supervisor.calls[0]["prompt"]
    metadata = workspace.read_metadata()
    assert metadata.verification.verification_attempts == 1
    assert metadata.verification.last_verification_status == "fail"
    assert [event["event"] for event in events] == ["verification_start", "verification_complete"]


def test_relative_report_path_is_inside_workspace(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    service = _service(FakeSupervisor(PASSING_REPORT), tmp_path, [])

    result = asyncio.run(service.verify(workspace, report_path="reports/final.md"))

    assert result.status == "pass"
    assert Path(result.report_path) == (workspace.path / "reports" / "final.md").resolve()


def test_missing_report_raises_with_hint(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    events: list[dict[str, Any]] = []
    service = _service(FakeSupervisor(None), tmp_path, events)

    with pytest.raises(VerificationReportMissingError) as excinfo:
        asyncio.run(service.verify(workspace))

    message = str(excinfo.value)
    assert "Verification report not generated" in message
    assert "--dangerously-skip-permissions" in message
    assert "thinking..." in excinfo.value.output
    assert events[-1]["event"] == "verification_report_missing"
    assert workspace.read_metadata().verification.verification_attempts == 0


def test_stale_report_is_not_accepted(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    workspace.report_path().write_text(PASSING_REPORT, encoding="utf-8")
    service = _service(FakeSupervisor(None), tmp_path, [])

    with pytest.raises(VerificationReportMissingError):
        asyncio.run(service.verify(workspace))

    assert workspace.report_path().exists()


def test_failed_tool_run_propagates(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    service = _service(FakeSupervisor(FAILING_REPORT, exit_code=1), tmp_path, [])

    with pytest.raises(ProcessExitError):
        asyncio.run(service.verify(workspace))


def test_undecodable_report_needs_review(tmp_path: Path) -> None:
    workspace = _workspace(tmp_path)
    service = _service(FakeSupervisor(b"\xff\xfe bad \x80 report"), tmp_path, [])

    result = asyncio.run(service.verify(workspace))

    assert result.status == "needs_review"
    assert result.summary == SUMMARY_FALLBACK
    assert "bad" in result.full_report
    assert workspace.read_metadata().verification.last_verification_status == "needs_review"


def test_summary_keeps_every_paragraph_before_subsections() -> None:
    text = (
        "❌ INCOMPLETE\n\n## Summary\n\nFirst finding.\nStill first.\n\nSecond finding.\n\n"
        "### Incomplete Requirements\n\n1. Docs\n\n## Details\n\nIgnored.\n"
    )

    result = parse_verification_report(text)

    assert result.summary == "First finding.\nStill first.\n\nSecond finding."
    assert result.issues == ["Docs"]
