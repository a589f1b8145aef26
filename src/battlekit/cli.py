"""battlekit CLI.

Main entry point for the battlekit command.
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import load_config
from .models import FeedbackResult, Iteration, Task
from .preflight import (
    PreflightContext,
    PreflightService,
    to_preflight_report_dto,
    validate_preflight_token,
)
from .recovery import (
    AgentError,
    BattleContext,
    CancellationFailure,
    Checkpoint,
    CheckpointRetentionPolicy,
    CrashFailure,
    FeedbackLoopFailure,
    IterationTimeoutFailure,
    SystemFailure,
    classify_failure,
    cleanup_checkpoints,
    create_checkpoint,
    create_initial_checkpoint,
    get_all_recovery_suggestions,
    get_failure_message,
    get_failure_severity,
    plan_recovery,
    rollback_to_iteration,
)
from .utils.errors import BattlekitError, handle_exception, set_debug_mode

console = Console()

_CHECKPOINT_LIST = TypeAdapter(list[Checkpoint])

_STATUS_ICONS = {
    "pass": "[green]✓[/green]",
    "warning": "[yellow]![/yellow]",
    "error": "[red]✗[/red]",
    "info": "[blue]i[/blue]",
}


def _working_dir(ctx: click.Context) -> Path:
    return ctx.obj["working_dir"]


def _load_store(path: Path) -> list[Checkpoint]:
    if not path.exists():
        return []
    return _CHECKPOINT_LIST.validate_json(path.read_bytes())


def _save_store(path: Path, checkpoints: list[Checkpoint]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(_CHECKPOINT_LIST.dump_json(checkpoints, indent=2))


@click.group()
@click.version_option(__version__, "--version", "-v", prog_name="battlekit")
@click.option("--debug", "-d", is_flag=True, help="Enable debug mode with verbose error output")
@click.option("--verbose", is_flag=True, help="Log progress to stderr")
@click.option(
    "--dir",
    "working_dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Repository to operate on",
)
@click.pass_context
def main(ctx: click.Context, debug: bool, verbose: bool, working_dir: Path) -> None:
    """battlekit - recovery and checkpoint tooling for coding-agent battles.

    Use --debug for verbose error output with stack traces.
    """
    if debug:
        set_debug_mode(True)

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ctx.ensure_object(dict)
    ctx.obj["working_dir"] = working_dir.resolve()


# =============================================================================
# Preflight
# =============================================================================


@main.command()
@click.argument("task_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--fix", "fixes", multiple=True, help="Apply a check's auto-fix first (repeatable)")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def preflight(ctx: click.Context, task_json: Path, fixes: tuple[str, ...], as_json: bool) -> None:
    """Run preflight checks for the task in TASK_JSON.

    Exits with status 1 when a blocking check fails.

    \b
    Examples:
        battlekit preflight task.json
        battlekit preflight task.json --fix repo_status
    """
    working_dir = _working_dir(ctx)
    try:
        task = Task.model_validate_json(task_json.read_bytes())
    except ValidationError as e:
        console.print(f"[red]Invalid task file:[/red] {e}")
        sys.exit(2)

    config = load_config(working_dir)
    service = PreflightService(working_dir)
    context = PreflightContext(
        task_id=task.id, task=task, config=config.battle, working_dir=working_dir
    )

    for check_id in fixes:
        outcome = service.apply_fix(check_id, context)
        style = "green" if outcome.result.success else "red"
        console.print(f"[{style}]{check_id}:[/{style}] {outcome.result.message}")

    report = service.run_preflight(context)

    if as_json:
        click.echo(to_preflight_report_dto(report).model_dump_json(indent=2))
    else:
        table = Table(title=f"Preflight: {task.title}")
        table.add_column("", width=2)
        table.add_column("Check")
        table.add_column("Result")
        for r in report.results:
            if r.result.passed:
                icon = _STATUS_ICONS["pass"]
            else:
                icon = _STATUS_ICONS[r.check.severity]
            table.add_row(icon, r.check.name, r.result.message)
        console.print(table)

        s = report.summary
        console.print(
            f"{s.passed}/{s.total} passed, {s.warnings} warnings, {s.errors} errors"
        )
        if report.stash_ref:
            console.print(f"[dim]Changes stashed as {report.stash_ref}[/dim]")
        if report.can_start:
            console.print("[green]Ready to start battle[/green]")
            console.print(f"[dim]Token: {report.preflight_token}[/dim]")
        else:
            console.print("[red]Battle cannot start[/red]")

    if not report.can_start:
        sys.exit(1)


# =============================================================================
# Checkpoints
# =============================================================================


store_option = click.option(
    "--store",
    type=click.Path(dir_okay=False, path_type=Path),
    required=True,
    help="JSON file holding the battle's checkpoints",
)


@main.group()
def checkpoint() -> None:
    """Create, restore and prune checkpoints."""


@checkpoint.command("baseline")
@click.argument("battle_id")
@store_option
@click.option("--token", help="Preflight token authorizing the start")
@click.option("--task-id", help="Task the token was issued for (defaults to BATTLE_ID)")
@click.pass_context
def checkpoint_baseline(
    ctx: click.Context, battle_id: str, store: Path, token: str | None, task_id: str | None
) -> None:
    """Snapshot the repository before a battle starts."""
    working_dir = _working_dir(ctx)
    config = load_config(working_dir)
    try:
        checkpoints = _load_store(store)
        baseline = create_initial_checkpoint(
            battle_id, working_dir, config.battle, preflight_token=token, task_id=task_id
        )
        _save_store(store, [*checkpoints, baseline])
    except (BattlekitError, ValidationError, OSError) as e:
        handle_exception(console, e, "Create baseline checkpoint")
        return

    console.print(f"[green]✓[/green] Baseline {baseline.id} ({baseline.storage_type})")


@checkpoint.command("create")
@click.argument("battle_id")
@click.argument("iteration", type=int)
@store_option
@click.option("--commit", "commit_hash", help="Commit the iteration already made")
@click.option("--passed", "passed_loops", multiple=True, help="Feedback loop that passed")
@click.option("--failed", "failed_loops", multiple=True, help="Feedback loop that failed")
@click.pass_context
def checkpoint_create(
    ctx: click.Context,
    battle_id: str,
    iteration: int,
    store: Path,
    commit_hash: str | None,
    passed_loops: tuple[str, ...],
    failed_loops: tuple[str, ...],
) -> None:
    """Snapshot the repository after ITERATION."""
    working_dir = _working_dir(ctx)
    config = load_config(working_dir)
    feedback = {loop: FeedbackResult(passed=True) for loop in passed_loops}
    feedback.update({loop: FeedbackResult(passed=False) for loop in failed_loops})

    try:
        checkpoints = _load_store(store)
        created = create_checkpoint(
            battle_id,
            Iteration(number=iteration, commit_hash=commit_hash),
            working_dir,
            config.battle,
            feedback,
            [cp for cp in checkpoints if cp.battle_id == battle_id],
        )
        _save_store(store, [*checkpoints, created])
    except (BattlekitError, ValidationError, OSError) as e:
        handle_exception(console, e, "Create checkpoint")
        return

    console.print(f"[green]✓[/green] {created.description}: {created.id} ({created.storage_type})")


@checkpoint.command("restore")
@click.argument("battle_id")
@click.argument("iteration", type=int)
@store_option
@click.pass_context
def checkpoint_restore(ctx: click.Context, battle_id: str, iteration: int, store: Path) -> None:
    """Roll the repository back to the checkpoint after ITERATION."""
    try:
        checkpoints = [cp for cp in _load_store(store) if cp.battle_id == battle_id]
    except (ValidationError, OSError) as e:
        handle_exception(console, e, "Load checkpoints")
        return

    result = rollback_to_iteration(checkpoints, iteration, _working_dir(ctx))
    if not result.success:
        console.print(f"[red]✗[/red] Rollback failed: {result.error}")
        sys.exit(1)
    console.print(
        f"[green]✓[/green] Restored to iteration {result.restored_to_iteration} "
        f"({result.checkpoint_id})"
    )


@checkpoint.command("prune")
@store_option
@click.option("--dry-run", is_flag=True, help="Only show what would be removed")
@click.pass_context
def checkpoint_prune(ctx: click.Context, store: Path, dry_run: bool) -> None:
    """Apply the retention policy to every battle in the store."""
    config = load_config(_working_dir(ctx))
    policy = CheckpointRetentionPolicy.from_settings(config.retention)
    try:
        checkpoints = _load_store(store)
    except (ValidationError, OSError) as e:
        handle_exception(console, e, "Load checkpoints")
        return

    kept_ids: set[str] = set()
    for battle_id in {cp.battle_id for cp in checkpoints}:
        battle_checkpoints = [cp for cp in checkpoints if cp.battle_id == battle_id]
        kept_ids.update(cp.id for cp in cleanup_checkpoints(battle_checkpoints, policy))

    removed = [cp for cp in checkpoints if cp.id not in kept_ids]
    for cp in removed:
        console.print(f"[dim]-[/dim] {cp.id} ({cp.battle_id}, {cp.description})")

    if not dry_run and removed:
        _save_store(store, [cp for cp in checkpoints if cp.id in kept_ids])
    verb = "Would remove" if dry_run else "Removed"
    console.print(f"{verb} {len(removed)} of {len(checkpoints)} checkpoints")


# =============================================================================
# Classification
# =============================================================================

FAILURE_KINDS = ["feedback_loop", "timeout", "agent", "cancellation", "crash", "system", "other"]


@main.command()
@click.option("--kind", type=click.Choice(FAILURE_KINDS), required=True, help="Failure variant")
@click.option("--message", "-m", default="", help="Error message")
@click.option("--iteration", "-i", type=int, default=1, help="Iteration that failed")
@click.option("--loop", default="test", help="Feedback loop name (feedback_loop)")
@click.option("--output", default="", help="Feedback loop output (feedback_loop)")
@click.option("--signal", help="Signal that killed the agent (crash)")
@click.option("--not-retryable", is_flag=True, help="Agent error cannot be retried")
@click.option("--json", "as_json", is_flag=True, help="Print the failure as JSON")
@click.pass_context
def classify(
    ctx: click.Context,
    kind: str,
    message: str,
    iteration: int,
    loop: str,
    output: str,
    signal: str | None,
    not_retryable: bool,
    as_json: bool,
) -> None:
    """Classify a failure and show recovery options.

    \b
    Examples:
        battlekit classify --kind feedback_loop --loop test --output "1 failed"
        battlekit classify --kind other -m "ENOSPC: no space left on device"
    """
    config = load_config(_working_dir(ctx))
    builders = {
        "feedback_loop": lambda: FeedbackLoopFailure(loop, output),
        "timeout": lambda: IterationTimeoutFailure(config.battle.timeout_minutes),
        "agent": lambda: AgentError(message, retryable=not not_retryable),
        "cancellation": lambda: CancellationFailure(message or None),
        "crash": lambda: CrashFailure(message, signal=signal),
        "system": lambda: SystemFailure(message),
        "other": lambda: RuntimeError(message),
    }
    failure = classify_failure(
        builders[kind](), BattleContext(current_iteration=iteration, config=config.battle)
    )
    plan = plan_recovery(failure)

    if as_json:
        click.echo(
            json.dumps(
                {"failure": failure.model_dump(mode="json"), "plan": plan.model_dump(mode="json")},
                indent=2,
            )
        )
        return

    severity = get_failure_severity(failure.type).value
    console.print(f"[bold]{get_failure_message(failure)}[/bold]")
    console.print(
        f"[dim]type={failure.type.value} severity={severity} "
        f"recoverable={failure.recoverable}[/dim]"
    )
    console.print()
    for suggestion in get_all_recovery_suggestions(failure):
        marker = "[green]→[/green]" if suggestion.recommended else " "
        console.print(f"{marker} {suggestion.action.value}: {suggestion.description}")
    console.print()
    console.print(f"Plan: {plan.message} ({plan.strategy.value})")


# =============================================================================
# Tokens
# =============================================================================


@main.group()
def token() -> None:
    """Inspect preflight tokens."""


@token.command("verify")
@click.argument("token_value", metavar="TOKEN")
@click.option("--task-id", help="Require the token to be for this task")
@click.pass_context
def token_verify(ctx: click.Context, token_value: str, task_id: str | None) -> None:
    """Check that TOKEN is valid and unexpired."""
    payload = validate_preflight_token(token_value, working_dir=_working_dir(ctx))
    if payload is None:
        console.print("[red]✗[/red] Token is invalid or expired")
        sys.exit(1)
    if task_id and payload.task_id != task_id:
        console.print(f"[red]✗[/red] Token is for task {payload.task_id}")
        sys.exit(1)
    console.print(f"[green]✓[/green] Valid token for task {payload.task_id} ({payload.timestamp})")


if __name__ == "__main__":
    main()
