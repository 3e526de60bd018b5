from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from workloop.backends.claude import SKIP_PERMISSIONS_FLAG, build_supervisor
from workloop.backends.process import ProcessSupervisor
from workloop.completion import ExecutionMode
from workloop.config import WorkloopSettings
from workloop.prompts import system_prompt, verification_prompt
from workloop.state.workspace import Workspace, WorkspaceMetadata

VerificationStatus = Literal["pass", "fail", "needs_review"]
Confidence = Literal["high", "medium", "low"]
ResumeAction = Literal["resume", "pass", "exhausted", "disabled", "review"]
EventHook = Callable[[dict[str, Any]], None]

SUMMARY_FALLBACK = "See report for details"
PASS_MARKERS = ("✅ VERIFIED COMPLETE", "✅ VERIFIED")
FAIL_MARKERS = ("❌ INCOMPLETE",)

_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_ISSUES_HEADING = re.compile(r"^(?:Incomplete Requirements|Requirements Not Met)\b", re.IGNORECASE)
_NUMBERED_ITEM = re.compile(r"^\d+\.\s+(.*\S)")
_BOLD_LEAD = re.compile(r"^\*\*(.+?)\*\*")
_CONFIDENCE = re.compile(r"\*\*Confidence Level\*\*:\s*([A-Za-z]+)")
_RECOMMENDED_ACTION = re.compile(r"\*\*Recommended Action\*\*:[ \t]*(.*)")


class VerificationError(RuntimeError):
    """Raised when a verification attempt cannot produce a result."""


class VerificationReportMissingError(VerificationError):
    def __init__(self, message: str, *, report_path: Path, output: str = "") -> None:
        super().__init__(message)
        self.report_path = report_path
        self.output = output


@dataclass(slots=True)
class VerificationResult:
    status: VerificationStatus
    summary: str
    issues: list[str] = field(default_factory=list)
    confidence: Confidence | None = None
    recommended_action: str = ""
    report_path: str = ""
    full_report: str = ""

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "summary": self.summary,
            "issues": list(self.issues),
            "issue_count": self.issue_count,
            "confidence": self.confidence,
            "recommended_action": self.recommended_action,
            "report_path": self.report_path,
        }


def _first_position(text: str, markers: tuple[str, ...]) -> int | None:
    positions = [index for index in (text.find(marker) for marker in markers) if index >= 0]
    return min(positions) if positions else None


def _report_status(text: str) -> VerificationStatus:
    passed = _first_position(text, PASS_MARKERS)
    failed = _first_position(text, FAIL_MARKERS)
    if passed is None and failed is None:
        return "needs_review"
    if failed is None or (passed is not None and passed < failed):
        return "pass"
    return "fail"


def _section(
    lines: list[str], matches: Callable[[int, str], bool]
) -> tuple[int, list[str]] | None:
    """Body of the first matching heading, up to the next heading at the same level or above."""
    for index, line in enumerate(lines):
        heading = _HEADING.match(line)
        level = len(heading.group(1)) if heading else 0
        if heading is None or not matches(level, heading.group(2)):
            continue
        body: list[str] = []
        for following in lines[index + 1 :]:
            nested = _HEADING.match(following)
            if nested is not None and len(nested.group(1)) <= level:
                break
            body.append(following)
        return level, body
    return None


def _summary(lines: list[str]) -> str:
    section = _section(lines, lambda level, title: level == 2 and title.lower() == "summary")
    if section is None:
        return SUMMARY_FALLBACK
    # Prose of the section itself; nested subsections such as the issue list are left out.
    paragraphs: list[list[str]] = [[]]
    for line in section[1]:
        if _HEADING.match(line):
            break
        if line.strip():
            paragraphs[-1].append(line.strip())
        elif paragraphs[-1]:
            paragraphs.append([])
    text = "\n\n".join("\n".join(lines) for lines in paragraphs if lines)
    return text or SUMMARY_FALLBACK


def _issues(lines: list[str]) -> list[str]:
    section = _section(lines, lambda _, title: bool(_ISSUES_HEADING.match(title)))
    if section is None:
        return []
    issues: list[str] = []
    for line in section[1]:
        item = _NUMBERED_ITEM.match(line)
        if item is None:
            continue
        text = item.group(1)
        bold = _BOLD_LEAD.match(text)
        if bold is not None:
            text = bold.group(1).strip().rstrip(":").strip()
        issues.append(text)
    return issues


def _confidence(text: str) -> Confidence | None:
    match = _CONFIDENCE.search(text)
    if match is None:
        return None
    value = match.group(1).lower()
    if value in ("high", "medium", "low"):
        return value  # type: ignore[return-value]
    return None


def parse_verification_report(text: str, report_path: Path | str = "") -> VerificationResult:
    lines = text.splitlines()
    action = _RECOMMENDED_ACTION.search(text)
    return VerificationResult(
        status=_report_status(text),
        summary=_summary(lines),
        issues=_issues(lines),
        confidence=_confidence(text),
        recommended_action=action.group(1).strip() if action else "",
        report_path=str(report_path),
        full_report=text,
    )


def prepare_resume_instructions(workspace: Workspace, result: VerificationResult) -> str:
    original = workspace.read_instructions()
    issues = "\n".join(f"{number}. {issue}" for number, issue in enumerate(result.issues, 1))
    return f"""---
**VERIFICATION FINDINGS** (Previous Run)

The previous run claimed completion but verification found {result.issue_count} issue(s).

**Verification Report**: {result.report_path}

**Issues to Address**:
{issues or SUMMARY_FALLBACK}

**Your Job This Iteration**:
1. Read the full verification report at: {result.report_path}
2. Focus ONLY on the gaps identified above
3. Complete the missing or partial work
4. Update .status.json accurately when done

**Do NOT**:
- Rework items that were verified complete
- Ignore the verification findings
- Mark complete until ALL gaps are addressed

---

{original}"""


@dataclass(slots=True, frozen=True)
class ResumeDecision:
    action: ResumeAction
    cycles_used: int
    max_attempts: int

    @property
    def should_resume(self) -> bool:
        return self.action == "resume"


def decide_resume(
    metadata: WorkspaceMetadata,
    result: VerificationResult,
    *,
    max_attempts: int,
    resume_enabled: bool,
) -> ResumeDecision:
    cycles = metadata.verification.verify_resume_cycles
    match result.status:
        case "pass":
            action: ResumeAction = "pass"
        case "needs_review":
            action = "review"
        case _ if not resume_enabled:
            action = "disabled"
        case _ if cycles >= max_attempts:
            action = "exhausted"
        case _:
            action = "resume"
    return ResumeDecision(action=action, cycles_used=cycles, max_attempts=max_attempts)


def apply_resume(workspace: Workspace, result: VerificationResult) -> str:
    instructions = prepare_resume_instructions(workspace, result)
    workspace.record_resume_cycle()
    return instructions


def _report_signature(path: Path) -> tuple[int, int, int] | None:
    try:
        stat = path.stat()
    except FileNotFoundError:
        return None
    return stat.st_mtime_ns, stat.st_size, stat.st_ino


class VerificationService:
    """Asks the external tool for a verification report and parses it."""

    def __init__(
        self,
        settings: WorkloopSettings,
        supervisor: ProcessSupervisor | None = None,
        *,
        project_root: Path | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.settings = settings
        self.supervisor = supervisor or build_supervisor(settings, event_hook=event_hook)
        self.project_root = project_root or Path.cwd()
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def resolve_report_path(
        self, workspace: Workspace, report_path: Path | str | None = None
    ) -> Path:
        if report_path is None:
            return workspace.report_path(self.settings.verification.report_filename).resolve()
        candidate = Path(report_path).expanduser()
        if not candidate.is_absolute():
            candidate = workspace.path / candidate
        return candidate.resolve()

    async def verify(
        self,
        workspace: Workspace,
        depth: str | None = None,
        report_path: Path | str | None = None,
    ) -> VerificationResult:
        metadata = workspace.read_metadata()
        depth = depth or self.settings.verification.depth
        target = self.resolve_report_path(workspace, report_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        previous = _report_signature(target)

        mode: ExecutionMode = metadata.mode  # type: ignore[assignment]
        workspace_path = workspace.path.resolve()
        self._emit(
            {
                "event": "verification_start",
                "workspace": workspace.name,
                "depth": depth,
                "report_path": str(target),
            }
        )
        session = await self.supervisor.run(
            verification_prompt(workspace.name, workspace_path, target, mode, depth),
            self.project_root,
            system_prompt=system_prompt(workspace_path, mode, self.project_root),
            timeout_seconds=self.settings.claude.timeout_seconds or None,
        )
        session.raise_for_status()

        current = _report_signature(target)
        if current is None or current == previous:
            captured = "\n".join(
                part for part in (session.stdout_tail.strip(), session.stderr_tail.strip()) if part
            )
            message = "\n".join(
                [
                    "Verification report not generated",
                    f"Expected location: {target}",
                    "",
                    "This may indicate:",
                    "  1. Permission prompts blocked execution",
                    f"     Try: {SKIP_PERMISSIONS_FLAG}",
                    "  2. The tool did not follow the report instructions",
                    "  3. Path or permission issues prevented the file write",
                    "",
                    "Captured output:",
                    captured or "(no output captured)",
                ]
            )
            self._emit(
                {"event": "verification_report_missing", "report_path": str(target)}
            )
            raise VerificationReportMissingError(message, report_path=target, output=captured)

        try:
            raw = target.read_bytes()
        except OSError as exc:
            raise VerificationError(f"Could not read verification report {target}: {exc}") from exc
        text = raw.decode("utf-8", errors="replace")
        result = parse_verification_report(text, target)
        workspace.record_verification(result.status)
        self._emit(
            {
                "event": "verification_complete",
                "workspace": workspace.name,
                "status": result.status,
                "issue_count": result.issue_count,
                "confidence": result.confidence,
            }
        )
        return result
