"""Built-in preflight checks.

Checks are grouped by category:
- environment: agent_cli
- system: disk_space
- git: git_repo, repo_status, branch_tracking, conflicts
- config: config_valid, feedback_loops, iteration_limit
- task: task_status, no_concurrent, acceptance_criteria, task_complexity

Each check is a plain function taking a PreflightContext. Checks may raise;
the service records that as a failed result.
"""

from __future__ import annotations

import logging
import re
import shlex
import shutil
from pathlib import PurePosixPath

from .. import git
from ..config import STATE_DIR_NAME, validate_battle_config
from ..models import TaskStatus
from ..utils.errors import GitCommandError
from .models import FixResult, PreflightCheck, PreflightContext, PreflightResult
from .risk import assess_task_risk

logger = logging.getLogger(__name__)

MIN_FREE_BYTES = 100 * 1024 * 1024
HIGH_ITERATION_LIMIT = 20
STASH_MESSAGE = "battlekit-preflight-stash"
MAX_LISTED_FILES = 10

_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


# =============================================================================
# Helpers
# =============================================================================


def tokenize_command(command: str) -> str:
    """Extract the executable name from a shell command.

    Skips leading ``VAR=value`` assignments, honors quotes and strips any
    directory from the executable path.

    Example:
        >>> tokenize_command('CI=1 "/usr/local/bin/my tool" --flag')
        'my tool'
    """
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()

    for token in tokens:
        if not _ENV_ASSIGNMENT.match(token):
            return PurePosixPath(token).name or token
    return ""


def format_bytes(size: float) -> str:
    """Format a byte count for display."""
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GB"


def _list_files(paths: list[str]) -> str:
    details = "\n".join(paths[:MAX_LISTED_FILES])
    if len(paths) > MAX_LISTED_FILES:
        details += f"\n... and {len(paths) - MAX_LISTED_FILES} more"
    return details


def _not_repo(can_proceed: bool) -> PreflightResult:
    return PreflightResult(
        passed=False,
        message="Not a git repository",
        can_proceed=can_proceed,
        suggestion="Initialize a git repository with 'git init'",
    )


def _is_state_path(path: str) -> bool:
    return path == STATE_DIR_NAME or path.startswith(f"{STATE_DIR_NAME}/")


def _pending_changes(ctx: PreflightContext) -> list[str]:
    return [e.path for e in git.get_status(ctx.working_dir) if not _is_state_path(e.path)]


# =============================================================================
# Environment and system
# =============================================================================


def check_agent_cli(ctx: PreflightContext) -> PreflightResult:
    executable = tokenize_command(ctx.config.agent_command)
    location = shutil.which(executable) if executable else None
    if location:
        return PreflightResult(
            passed=True,
            message=f"Agent CLI available: {executable}",
            can_proceed=True,
            details=location,
        )
    return PreflightResult(
        passed=False,
        message=f"Agent CLI not found: {executable or ctx.config.agent_command!r}",
        can_proceed=True,
        suggestion="Install the agent CLI or set battle.agent_command in .battlekit/config.toml",
    )


def check_disk_space(ctx: PreflightContext) -> PreflightResult:
    free = shutil.disk_usage(ctx.working_dir).free
    passed = free >= MIN_FREE_BYTES
    return PreflightResult(
        passed=passed,
        message=f"{format_bytes(free)} available" if passed else f"Only {format_bytes(free)} available",
        can_proceed=True,
        suggestion=None if passed else "Free up disk space before proceeding",
    )


# =============================================================================
# Git
# =============================================================================


def check_git_repo(ctx: PreflightContext) -> PreflightResult:
    if not git.is_repo(ctx.working_dir):
        return _not_repo(can_proceed=False)

    head = git.get_head(ctx.working_dir)
    if head is None:
        return PreflightResult(
            passed=False,
            message="Repository has no commits",
            can_proceed=False,
            suggestion="Create an initial commit so checkpoints have a base",
        )
    return PreflightResult(
        passed=True,
        message=f"Git repository at {head[:12]}",
        can_proceed=True,
    )


def check_repo_status(ctx: PreflightContext) -> PreflightResult:
    if not git.is_repo(ctx.working_dir):
        return _not_repo(can_proceed=True)

    files = _pending_changes(ctx)
    if not files:
        return PreflightResult(passed=True, message="Working tree is clean", can_proceed=True)

    return PreflightResult(
        passed=False,
        message=f"{len(files)} uncommitted changes",
        can_proceed=True,
        details=_list_files(files),
        suggestion="Consider committing or stashing changes",
    )


def stash_changes(ctx: PreflightContext) -> FixResult:
    """Stash tracked and untracked changes, recording the stash ref."""
    try:
        git.run_git(
            [
                "stash",
                "push",
                "--include-untracked",
                "-m",
                STASH_MESSAGE,
                "--",
                ".",
                f":(exclude){STATE_DIR_NAME}",
            ],
            ctx.working_dir,
        )
        listing = git.run_git(["stash", "list", "-1", "--format=%gd"], ctx.working_dir)
    except GitCommandError as e:
        return FixResult(success=False, message=f"Stash failed: {e.stderr.strip() or e}")

    stash_ref = listing.stdout.strip() or "stash@{0}"
    ctx.stash_ref = stash_ref
    logger.info(f"Stashed uncommitted changes as {stash_ref}")
    return FixResult(success=True, message="Changes stashed", metadata={"stash_ref": stash_ref})


def check_branch_tracking(ctx: PreflightContext) -> PreflightResult:
    if not git.is_repo(ctx.working_dir):
        return PreflightResult(passed=True, message="Not a git repository", can_proceed=True)

    branch = git.get_current_branch(ctx.working_dir)
    if branch is None:
        return PreflightResult(passed=True, message="No branch checked out", can_proceed=True)

    upstream = git.run_git(
        ["rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}"], ctx.working_dir, check=False
    )
    tracking = upstream.stdout.strip()
    if not upstream.success or not tracking:
        return PreflightResult(
            passed=True, message=f"On {branch}, not tracking remote", can_proceed=True
        )

    counts = git.run_git(
        ["rev-list", "--left-right", "--count", f"{branch}...{tracking}"],
        ctx.working_dir,
        check=False,
    )
    ahead, behind = (counts.stdout.split() + ["0", "0"])[:2] if counts.success else ("0", "0")
    return PreflightResult(
        passed=True,
        message=f"On {branch}, tracking {tracking} ({ahead} ahead, {behind} behind)",
        can_proceed=True,
    )


def check_conflicts(ctx: PreflightContext) -> PreflightResult:
    if not git.is_repo(ctx.working_dir):
        return PreflightResult(passed=True, message="Not a git repository", can_proceed=True)

    conflicted = [e.path for e in git.get_status(ctx.working_dir) if e.conflicted]
    merging = git.run_git(
        ["rev-parse", "--quiet", "--verify", "MERGE_HEAD"], ctx.working_dir, check=False
    ).success

    if conflicted or merging:
        return PreflightResult(
            passed=False,
            message="Unresolved merge conflicts detected",
            can_proceed=False,
            details=_list_files(conflicted) if conflicted else "A merge is in progress",
            suggestion="Resolve merge conflicts before starting battle",
        )
    return PreflightResult(passed=True, message="No merge conflicts", can_proceed=True)


# =============================================================================
# Config
# =============================================================================


def check_config_valid(ctx: PreflightContext) -> PreflightResult:
    errors = validate_battle_config(ctx.config)
    if errors:
        return PreflightResult(
            passed=False,
            message=", ".join(errors),
            can_proceed=False,
            suggestion="Fix the [battle] section of .battlekit/config.toml",
        )
    return PreflightResult(passed=True, message="Configuration valid", can_proceed=True)


def check_feedback_loops(ctx: PreflightContext) -> PreflightResult:
    loops = ctx.config.feedback_loops
    if not loops:
        return PreflightResult(
            passed=True, message="No feedback loops configured", can_proceed=True
        )

    lines: list[str] = []
    missing: list[str] = []
    for loop in loops:
        command = ctx.config.loop_command(loop)
        executable = tokenize_command(command)
        if executable and shutil.which(executable):
            lines.append(f"{loop}: available")
        else:
            missing.append(loop)
            lines.append(f"{loop}: Command not found: {executable} (from: {command})")

    if not missing:
        return PreflightResult(
            passed=True,
            message=f"All {len(loops)} feedback loops available",
            can_proceed=True,
            details="\n".join(lines),
        )
    return PreflightResult(
        passed=False,
        message=f"{len(missing)} loops unavailable",
        can_proceed=False,
        details="\n".join(lines),
        suggestion=f"Check feedback_commands for: {', '.join(missing)}",
    )


def check_iteration_limit(ctx: PreflightContext) -> PreflightResult:
    limit = ctx.config.max_iterations_per_task
    if limit > HIGH_ITERATION_LIMIT:
        message = f"Max {limit} iterations - consider reducing if task is well-scoped"
    else:
        message = f"Max {limit} iterations"
    return PreflightResult(passed=True, message=message, can_proceed=True)


# =============================================================================
# Task
# =============================================================================


def check_task_status(ctx: PreflightContext) -> PreflightResult:
    status = ctx.task.status
    if status == TaskStatus.COMPLETED:
        return PreflightResult(
            passed=False,
            message="Task is already completed",
            can_proceed=False,
            suggestion="Choose a pending or in-progress task",
        )
    if status == TaskStatus.IN_PROGRESS or ctx.task.iterations:
        return PreflightResult(
            passed=True,
            message="Task has previous battle history",
            can_proceed=True,
            details=f"{len(ctx.task.iterations)} previous iterations",
        )
    return PreflightResult(passed=True, message="Task is ready", can_proceed=True)


def check_no_concurrent(ctx: PreflightContext) -> PreflightResult:
    active = ctx.get_active_battle() if ctx.get_active_battle else None
    if active is not None and active.task_id != ctx.task_id:
        return PreflightResult(
            passed=False,
            message=f"Battle for {active.task_id} is running",
            can_proceed=False,
            suggestion="Wait for current battle to complete or cancel it",
        )
    return PreflightResult(passed=True, message="No active battle", can_proceed=True)


def check_acceptance_criteria(ctx: PreflightContext) -> PreflightResult:
    criteria = ctx.task.acceptance_criteria
    if not criteria:
        return PreflightResult(
            passed=False,
            message="No acceptance criteria defined",
            can_proceed=True,
            suggestion="Add acceptance criteria so the agent knows when it is done",
        )
    return PreflightResult(
        passed=True,
        message=f"{len(criteria)} acceptance criteria defined",
        can_proceed=True,
    )


def check_task_complexity(ctx: PreflightContext) -> PreflightResult:
    risk = assess_task_risk(ctx.task)
    return PreflightResult(
        passed=True,
        message=f"{risk.level} complexity - {risk.recommendation}",
        can_proceed=True,
        details="\n".join(f"- {f.name}: {f.description}" for f in risk.factors),
    )


# =============================================================================
# Registry
# =============================================================================


def default_checks() -> list[PreflightCheck]:
    """All built-in checks, in run order."""
    return [
        PreflightCheck(
            id="agent_cli",
            name="Agent CLI",
            description="Verify the coding agent CLI is installed",
            category="environment",
            severity="warning",
            check=check_agent_cli,
        ),
        PreflightCheck(
            id="disk_space",
            name="Disk Space",
            description="Check available disk space",
            category="system",
            severity="warning",
            check=check_disk_space,
        ),
        PreflightCheck(
            id="git_repo",
            name="Git Repository",
            description="Check the working directory is a git repository with commits",
            category="git",
            severity="error",
            check=check_git_repo,
        ),
        PreflightCheck(
            id="repo_status",
            name="Repository Status",
            description="Check for uncommitted changes",
            category="git",
            severity="warning",
            check=check_repo_status,
            fix=stash_changes,
        ),
        PreflightCheck(
            id="branch_tracking",
            name="Branch Tracking",
            description="Check if branch tracks a remote",
            category="git",
            severity="info",
            check=check_branch_tracking,
        ),
        PreflightCheck(
            id="conflicts",
            name="Merge Conflicts",
            description="Check for unresolved merge conflicts",
            category="git",
            severity="error",
            check=check_conflicts,
        ),
        PreflightCheck(
            id="config_valid",
            name="Configuration Valid",
            description="Validate battle configuration",
            category="config",
            severity="error",
            check=check_config_valid,
        ),
        PreflightCheck(
            id="feedback_loops",
            name="Feedback Loops",
            description="Verify feedback loop commands exist",
            category="config",
            severity="error",
            check=check_feedback_loops,
        ),
        PreflightCheck(
            id="iteration_limit",
            name="Iteration Limit",
            description="Check if iteration limit is reasonable",
            category="config",
            severity="info",
            check=check_iteration_limit,
        ),
        PreflightCheck(
            id="task_status",
            name="Task Status",
            description="Check task is ready to battle",
            category="task",
            severity="error",
            check=check_task_status,
        ),
        PreflightCheck(
            id="no_concurrent",
            name="No Active Battle",
            description="Check no other battle is running",
            category="task",
            severity="error",
            check=check_no_concurrent,
        ),
        PreflightCheck(
            id="acceptance_criteria",
            name="Acceptance Criteria",
            description="Check task has acceptance criteria",
            category="task",
            severity="warning",
            check=check_acceptance_criteria,
        ),
        PreflightCheck(
            id="task_complexity",
            name="Task Complexity",
            description="Estimate task complexity",
            category="task",
            severity="info",
            check=check_task_complexity,
        ),
    ]
