from __future__ import annotations

import asyncio
import json
import signal
from pathlib import Path
from typing import Any

import click

from workloop import __version__
from workloop.backends import build_supervisor
from workloop.backends.claude import SKIP_PERMISSIONS_FLAG, StreamJsonTap
from workloop.completion import ExecutionMode, completion_status
from workloop.config import (
    OUTPUT_LEVELS,
    VERIFICATION_DEPTHS,
    ResolvedConfig,
    known_keys,
    load_config,
    load_layer_file,
    parse_cli_value,
    project_config_path,
    save_layer_file,
    set_layer_value,
    unset_layer_value,
    user_config_path,
    validate_layer,
)
from workloop.events import EventLog, event_log_path
from workloop.prompts import setup_prompt, system_prompt
from workloop.runner import IterationRunner
from workloop.state.status import load_status, progress_summary, validate_status
from workloop.state.workspace import Workspace, list_workspaces
from workloop.verification import VerificationService


def _workspaces_root(config: ResolvedConfig) -> Path:
    root = Path(config.settings.workspaces_dir).expanduser()
    if not root.is_absolute():
        root = Path.cwd() / root
    return root.resolve()


def _load_workspace(
    name: str, cli_values: dict[str, Any] | None = None
) -> tuple[Workspace, ResolvedConfig]:
    """Find a workspace with the base layers, then resolve again including its own layer."""
    base = load_config(cli=cli_values)
    workspace = Workspace.load(_workspaces_root(base), name)
    config = load_config(workspace_layer=workspace.config_layer(), cli=cli_values)
    return workspace, config


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple, dict, bool)) or value is None:
        return json.dumps(value, ensure_ascii=False)
    return str(value)


@click.group()
@click.version_option(__version__, prog_name="workloop")
def cli() -> None:
    """Run an agent CLI in iterations until a workspace's work is done."""


@cli.command("init")
@click.argument("name")
@click.option("--mode", type=click.Choice(["loop", "iterative"]), default="loop", show_default=True)
@click.option("--stagnation-threshold", type=click.IntRange(min=0), default=None)
@click.option(
    "--instructions",
    "instructions_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Copy this file into the workspace as INSTRUCTIONS.md.",
)
def init_command(
    name: str, mode: str, stagnation_threshold: int | None, instructions_file: Path | None
) -> None:
    try:
        config = load_config()
        threshold = (
            stagnation_threshold
            if stagnation_threshold is not None
            else config.settings.stagnation_threshold
        )
        workspace = Workspace.init(
            _workspaces_root(config),
            name,
            mode=mode,
            stagnation_threshold=threshold,
            completion_markers=list(config.settings.completion_markers),
            instructions=(
                instructions_file.read_text(encoding="utf-8") if instructions_file else None
            ),
        )
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Initialized workspace {name} in {workspace.path}")
    click.echo(f"Mode: {mode}")
    click.echo(f"Stagnation threshold: {threshold}")
    if not workspace.has_instructions():
        click.echo(f"Next: write {workspace.instructions_path}")


@cli.command("run")
@click.argument("name")
@click.option("-m", "--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("-d", "--delay", type=click.FloatRange(min=0), default=None)
@click.option("--no-delay", is_flag=True, default=False)
@click.option("--stagnation-threshold", type=click.IntRange(min=0), default=None)
@click.option("-v", "--verbose", is_flag=True, default=False)
@click.option("-q", "--quiet", is_flag=True, default=False)
@click.option("--output", type=click.Choice(OUTPUT_LEVELS), default=None)
@click.option("--no-verify", is_flag=True, default=False, help="Skip automatic verification.")
@click.option(
    "--dangerously-skip-permissions",
    "skip_permissions",
    is_flag=True,
    default=False,
    help="Pass --dangerously-skip-permissions to the agent for this run only.",
)
@click.pass_context
def run_command(
    ctx: click.Context,
    name: str,
    max_iterations: int | None,
    delay: float | None,
    no_delay: bool,
    stagnation_threshold: int | None,
    verbose: bool,
    quiet: bool,
    output: str | None,
    no_verify: bool,
    skip_permissions: bool,
) -> None:
    cli_values: dict[str, Any] = {
        "max_iterations": max_iterations,
        "delay_seconds": 0.0 if no_delay else delay,
        "stagnation_threshold": stagnation_threshold,
        "verbose": verbose,
        "quiet": quiet,
        "output": output,
    }
    if no_verify:
        cli_values["verification"] = {"auto_verify": False}
    try:
        workspace, config = _load_workspace(name, cli_values)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if not workspace.has_instructions():
        raise click.ClickException(
            f"{workspace.instructions_path} does not exist; write the instructions first."
        )

    settings = config.settings
    events = EventLog(event_log_path(workspace.path), output_level=settings.output_level)
    verbose_output = settings.output_level == "verbose"
    supervisor = build_supervisor(
        settings,
        skip_permissions=skip_permissions,
        stream_json=verbose_output,
        event_hook=events,
    )
    runner = IterationRunner(
        workspace,
        config,
        supervisor,
        verifier=VerificationService(settings, supervisor, event_hook=events),
        event_hook=events,
        on_output=StreamJsonTap(events.stream) if verbose_output else None,
    )
    grace = settings.claude.shutdown_grace_seconds

    async def _run() -> Any:
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Task[None]] = set()

        def _request_shutdown() -> None:
            runner.request_stop()
            task = loop.create_task(supervisor.shutdown(grace))
            pending.add(task)
            task.add_done_callback(pending.discard)

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
        try:
            return await runner.run()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            if pending:
                await asyncio.gather(*pending)

    try:
        outcome = asyncio.run(_run())
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Result: {outcome.status}")
    click.echo(f"Iterations: {outcome.iterations}")
    if outcome.remaining is not None:
        click.echo(f"Remaining: {outcome.remaining}")
    if outcome.message:
        click.echo(outcome.message)
    if outcome.verification is not None and outcome.verification.issues:
        click.echo(f"Report: {outcome.verification.report_path}")
        for number, issue in enumerate(outcome.verification.issues, 1):
            click.echo(f"  {number}. {issue}")
    ctx.exit(outcome.exit_code)


@cli.command("verify")
@click.argument("name")
@click.option("--depth", type=click.Choice(VERIFICATION_DEPTHS), default=None)
@click.option("--report-path", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--dangerously-skip-permissions", "skip_permissions", is_flag=True, default=False)
@click.pass_context
def verify_command(
    ctx: click.Context,
    name: str,
    depth: str | None,
    report_path: str | None,
    as_json: bool,
    skip_permissions: bool,
) -> None:
    try:
        workspace, config = _load_workspace(name)
        events = EventLog(
            event_log_path(workspace.path),
            output_level="quiet" if as_json else config.settings.output_level,
        )
        supervisor = build_supervisor(
            config.settings, skip_permissions=skip_permissions, event_hook=events
        )
        service = VerificationService(config.settings, supervisor, event_hook=events)
        result = asyncio.run(service.verify(workspace, depth=depth, report_path=report_path))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        _echo_json(result.to_dict())
    else:
        click.echo(result.summary)
        if result.status == "pass":
            click.echo("✅ VERIFICATION PASSED")
        elif result.status == "fail":
            click.echo("❌ VERIFICATION FAILED")
            click.echo(f"Issues found: {result.issue_count}")
            for number, issue in enumerate(result.issues, 1):
                click.echo(f"  {number}. {issue}")
        else:
            click.echo("⚠️  NEEDS REVIEW")
        if result.confidence:
            click.echo(f"Confidence: {result.confidence}")
        if result.recommended_action:
            click.echo(f"Recommended action: {result.recommended_action}")
        click.echo(f"Report: {result.report_path}")
    ctx.exit(0 if result.status == "pass" else 1)


@cli.command("status")
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, default=False)
def status_command(name: str, as_json: bool) -> None:
    try:
        workspace, _ = _load_workspace(name)
        metadata = workspace.read_metadata()
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    completion = completion_status(
        workspace.path,
        metadata.mode,  # type: ignore[arg-type]
        metadata.completion_markers,
    )
    snapshot = load_status(workspace.status_path)
    payload = {
        "workspace": metadata.to_dict(),
        "completion": {
            "is_complete": completion.is_complete,
            "remaining": completion.remaining,
            "has_todo": completion.has_todo,
            "has_instructions": completion.has_instructions,
            "source": completion.source,
        },
        "status": snapshot.to_dict() if snapshot is not None else None,
        "warnings": validate_status(snapshot) if snapshot is not None else [],
    }
    if as_json:
        _echo_json(payload)
        return

    click.echo(f"Workspace: {metadata.name} ({metadata.mode})")
    click.echo(f"Status: {metadata.status}")
    click.echo(
        f"Iterations: {metadata.total_iterations} "
        f"(setup {metadata.setup_iterations}, execution {metadata.execution_iterations})"
    )
    click.echo(f"Complete: {'yes' if completion.is_complete else 'no'}")
    if completion.remaining is not None:
        click.echo(f"Remaining: {completion.remaining}")
    if snapshot is not None:
        completed, total, percentage = progress_summary(snapshot)
        if total:
            click.echo(f"Progress: {completed}/{total} ({percentage}%)")
        if snapshot.summary:
            click.echo(f"Summary: {snapshot.summary}")
        for warning in payload["warnings"]:
            click.echo(f"Warning: {warning}")
    record = metadata.verification
    if record.last_verification_status:
        click.echo(
            f"Last verification: {record.last_verification_status} "
            f"(attempts {record.verification_attempts}, "
            f"resume cycles {record.verify_resume_cycles})"
        )


@cli.command("list")
def list_command() -> None:
    try:
        config = load_config()
        workspaces = list_workspaces(_workspaces_root(config))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if not workspaces:
        click.echo("No workspaces found.")
        return
    for workspace in workspaces:
        try:
            metadata = workspace.read_metadata()
        except RuntimeError as exc:
            click.echo(f"{workspace.name:<24} (unreadable: {exc})")
            continue
        click.echo(
            f"{metadata.name:<24} {metadata.mode:<9} {metadata.status:<11} "
            f"{metadata.total_iterations} iterations"
        )


@cli.command("reset")
@click.argument("name")
def reset_command(name: str) -> None:
    try:
        workspace, _ = _load_workspace(name)
        workspace.reset_iterations()
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Reset iteration counters for {name}.")


@cli.command("setup")
@click.argument("name")
@click.argument("goal")
@click.option("--dangerously-skip-permissions", "skip_permissions", is_flag=True, default=False)
def setup_command(name: str, goal: str, skip_permissions: bool) -> None:
    """Ask the agent to write INSTRUCTIONS.md for GOAL."""
    try:
        workspace, config = _load_workspace(name)
        metadata = workspace.read_metadata()
        settings = config.settings
        events = EventLog(event_log_path(workspace.path), output_level=settings.output_level)
        supervisor = build_supervisor(
            settings, skip_permissions=skip_permissions, event_hook=events
        )
        workspace_path = workspace.path.resolve()
        mode: ExecutionMode = metadata.mode  # type: ignore[assignment]
        project_root = Path.cwd()
        session = asyncio.run(
            supervisor.run(
                setup_prompt(name, workspace_path, mode, goal),
                project_root,
                system_prompt=system_prompt(workspace_path, mode, project_root),
                timeout_seconds=settings.claude.timeout_seconds or None,
            )
        )
        session.raise_for_status()
        metadata = workspace.increment_iterations("setup")
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    if not workspace.has_instructions():
        raise click.ClickException(
            f"The agent finished without writing {workspace.instructions_path}; run setup again."
        )
    click.echo(f"Instructions written to {workspace.instructions_path}")
    click.echo(f"Setup iterations: {metadata.setup_iterations}")
    click.echo(f"Next: workloop run {name}")


@cli.command("show")
@click.argument("name")
def show_command(name: str) -> None:
    """Print a workspace's files, counters, settings and timestamps."""
    try:
        workspace, config = _load_workspace(name)
        metadata = workspace.read_metadata()
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    completion = completion_status(
        workspace.path,
        metadata.mode,  # type: ignore[arg-type]
        metadata.completion_markers,
    )
    settings = config.settings

    click.echo(f"Workspace: {name}")
    click.echo(f"Status: {metadata.status}{' (complete)' if completion.is_complete else ''}")
    click.echo("Progress:")
    click.echo(f"  Total iterations: {metadata.total_iterations}")
    click.echo(f"  Setup iterations: {metadata.setup_iterations}")
    click.echo(f"  Execution iterations: {metadata.execution_iterations}")
    if completion.remaining is not None:
        click.echo(f"  Remaining items: {completion.remaining}")
    click.echo("Files:")
    click.echo(f"  Path: {workspace.path}")
    click.echo(f"  Instructions: {'yes' if completion.has_instructions else 'no'}")
    click.echo(f"  TODO.md: {'yes' if completion.has_todo else 'no'}")
    click.echo("Settings:")
    click.echo(f"  Mode: {metadata.mode}")
    click.echo(f"  Max iterations: {settings.max_iterations}")
    click.echo(f"  Delay: {settings.delay_seconds}s")
    click.echo(f"  Stagnation threshold: {metadata.stagnation_threshold}")
    click.echo(f"  Agent: {' '.join([settings.claude.command, *settings.claude.args])}")
    if SKIP_PERMISSIONS_FLAG in settings.claude.args:
        click.echo("  Warning: permission prompts are disabled for the agent.")
    click.echo("Timestamps:")
    click.echo(f"  Created: {metadata.created}")
    if metadata.last_run:
        click.echo(f"  Last run: {metadata.last_run}")

    if not completion.has_instructions:
        click.echo(f"Next: workloop setup {name} GOAL")
    elif not completion.is_complete:
        click.echo(f"Next: workloop run {name}")


@cli.command("clean")
@click.argument("name")
@click.option("-f", "--force", is_flag=True, default=False, help="Skip the confirmation prompt.")
def clean_command(name: str, force: bool) -> None:
    """Delete a workspace directory."""
    try:
        workspace, _ = _load_workspace(name)
        metadata = workspace.read_metadata()
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if not force:
        click.echo(f"Path: {workspace.path}")
        click.echo(f"Status: {metadata.status}, {metadata.total_iterations} iterations")
        click.confirm(f"Delete workspace {name}? This cannot be undone", abort=True)
    try:
        workspace.delete()
    except (RuntimeError, OSError) as exc:
        raise click.ClickException(f"Could not delete {workspace.path}: {exc}") from exc
    click.echo(f"Deleted workspace {name}.")


@cli.group("config")
def config_group() -> None:
    """Inspect and edit layered configuration."""


def _target_layer(global_: bool, workspace_name: str | None) -> tuple[str, Any]:
    if global_ and workspace_name:
        raise click.UsageError("--global and --workspace are mutually exclusive.")
    if workspace_name:
        workspace, _ = _load_workspace(workspace_name)
        return "workspace", workspace
    if global_:
        return "user", user_config_path()
    return "project", project_config_path()


def _read_target(target: Any) -> dict[str, Any]:
    if isinstance(target, Workspace):
        return target.config_layer()
    return load_layer_file(target)


def _write_target(target: Any, data: dict[str, Any]) -> None:
    if isinstance(target, Workspace):
        target.save_config_layer(data)
    else:
        save_layer_file(target, data)


@config_group.command("list")
@click.option("--workspace", "workspace_name", default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
def config_list_command(workspace_name: str | None, as_json: bool) -> None:
    try:
        config = _load_workspace(workspace_name)[1] if workspace_name else load_config()
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        _echo_json(config.to_dict())
        return
    for item in config:
        click.echo(f"{item.key} = {_format_value(item.value)}  ({item.source})")


@config_group.command("get")
@click.argument("key")
@click.option("--workspace", "workspace_name", default=None)
def config_get_command(key: str, workspace_name: str | None) -> None:
    try:
        config = _load_workspace(workspace_name)[1] if workspace_name else load_config()
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    item = config.effective.get(key)
    if item is None:
        raise click.ClickException(f"Unknown configuration key: {key}")
    click.echo(_format_value(item.value))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.option("--global", "global_", is_flag=True, default=False, help="Write the user config.")
@click.option("--workspace", "workspace_name", default=None)
def config_set_command(key: str, value: str, global_: bool, workspace_name: str | None) -> None:
    try:
        layer_name, target = _target_layer(global_, workspace_name)
        parsed = parse_cli_value(key, value)
        data = set_layer_value(_read_target(target), key, parsed)
        validate_layer(data, layer_name)
        _write_target(target, data)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if key not in known_keys():
        click.echo(f"Note: {key} is not a built-in setting; stored as-is.", err=True)
    click.echo(f"Set {key} = {_format_value(parsed)} ({layer_name})")


@config_group.command("unset")
@click.argument("key")
@click.option("--global", "global_", is_flag=True, default=False)
@click.option("--workspace", "workspace_name", default=None)
def config_unset_command(key: str, global_: bool, workspace_name: str | None) -> None:
    try:
        layer_name, target = _target_layer(global_, workspace_name)
        data = unset_layer_value(_read_target(target), key)
        _write_target(target, data)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Unset {key} ({layer_name})")

