from __future__ import annotations

from pathlib import Path

from workloop.completion import ExecutionMode

DEPTH_NOTES = {
    "quick": (
        "**Verification Depth: Quick**\n"
        "Focus on file existence and basic count verification. Skip detailed quality checks."
    ),
    "standard": (
        "**Verification Depth: Standard**\n"
        "Balanced verification of key deliverables and basic quality checks."
    ),
    "deep": (
        "**Verification Depth: Deep**\n"
        "Perform a comprehensive review including code quality, edge cases, "
        "and thorough testing analysis."
    ),
}

_TRACKING = {
    "loop": """
Track progress in TODO.md inside the workspace. Keep a line of the form
`**Remaining**: N` up to date, where N is the number of items still to do.
Write `Remaining: 0` once every item is finished.
""".strip(),
    "iterative": """
Track progress in TODO.md inside the workspace as a markdown checklist.
Use `- [ ] item` for open work and `- [x] item` for finished work.
Only tick an item once it is fully done.
""".strip(),
}

_STATUS_FIELDS = {
    "loop": '"progress": {"completed": <int>, "total": <int>}',
    "iterative": '"worked": <true if you changed anything this session>',
}


def system_prompt(workspace_path: Path, mode: ExecutionMode, project_root: Path) -> str:
    return f"""
You are working inside the workspace at {workspace_path}.
The project root is {project_root}.
Work in short sessions: make real progress, record it, then stop.

{_TRACKING[mode]}
""".strip()


def status_instructions(workspace_path: Path, mode: ExecutionMode) -> str:
    status_path = workspace_path / ".status.json"
    return f"""
Before you finish, rewrite {status_path} as JSON:

{{
  "complete": <true only when all work is done>,
  {_STATUS_FIELDS[mode]},
  "summary": "<one line describing the current state>",
  "lastUpdated": "<ISO 8601 timestamp>"
}}
""".strip()


def iteration_prompt(
    instructions: str,
    iteration: int,
    mode: ExecutionMode,
    workspace_path: Path | None = None,
) -> str:
    match mode:
        case "loop":
            goal = "Complete the next batch of remaining items and update the remaining count."
        case "iterative":
            goal = "Work through the open checklist items and tick off what you finish."
        case _:
            raise ValueError(f"Unsupported execution mode: {mode}")
    prompt = f"""
Iteration {iteration}.

{goal}

## Instructions

{instructions}
""".strip()
    if workspace_path is not None:
        prompt = f"{prompt}\n\n---\n\n{status_instructions(workspace_path, mode)}"
    return prompt


def setup_prompt(
    workspace_name: str, workspace_path: Path, mode: ExecutionMode, goal: str
) -> str:
    instructions_path = workspace_path / "INSTRUCTIONS.md"
    if mode == "loop":
        shape = "Break the work into countable items so progress can be tracked as a number."
    else:
        shape = "Break the work into checklist items that can each be ticked off on their own."
    return f"""
Prepare workspace "{workspace_name}" ({workspace_path}) for unattended runs.

## Goal

{goal}

Write the instructions to {instructions_path} as markdown.
Describe the desired outcome, the inputs to use, and what counts as done.
{shape}
Do not start the work itself.
""".strip()


def verification_prompt(
    workspace_name: str,
    workspace_path: Path,
    report_path: Path,
    mode: ExecutionMode,
    depth: str = "standard",
) -> str:
    tracked = "remaining count in TODO.md" if mode == "loop" else "checklist in TODO.md"
    base = f"""
Verify that the work in workspace "{workspace_name}" ({workspace_path}) is really complete.
Compare INSTRUCTIONS.md against what was produced and against the {tracked}.

Write a markdown report to {report_path} with this structure:

# Verification Report

✅ VERIFIED COMPLETE  (or ❌ INCOMPLETE)

## Summary

<short paragraph>

### Incomplete Requirements

1. **<requirement>**: <what is missing>

**Confidence Level**: High | Medium | Low
**Recommended Action**: <next step>
""".strip()
    return f"{base}\n\n{DEPTH_NOTES.get(depth, DEPTH_NOTES['standard'])}"
