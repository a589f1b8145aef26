"""PreflightService: runs the checks that gate the start of a battle."""

from __future__ import annotations

import logging
import time
from pathlib import Path

from .. import git
from ..models import utc_now
from ..utils.errors import GitCommandError
from .checks import default_checks
from .models import (
    FixOutcome,
    FixResult,
    PreflightCheck,
    PreflightCheckResult,
    PreflightContext,
    PreflightReport,
    PreflightResult,
    PreflightSummary,
)
from .tokens import generate_preflight_token

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def summarize(results: list[PreflightCheckResult]) -> PreflightSummary:
    """Count results by outcome."""
    return PreflightSummary(
        total=len(results),
        passed=sum(1 for r in results if r.result.passed),
        warnings=sum(
            1 for r in results if r.check.severity == "warning" and not r.result.passed
        ),
        errors=sum(1 for r in results if r.blocking),
        infos=sum(1 for r in results if r.check.severity == "info"),
    )


class PreflightService:
    """Runs preflight checks for a working directory.

    Example:
        service = PreflightService(Path("."))
        report = service.run_preflight(context)
        if report.can_start:
            create_initial_checkpoint(..., preflight_token=report.preflight_token)
    """

    def __init__(self, working_dir: Path, checks: list[PreflightCheck] | None = None):
        self.working_dir = Path(working_dir)
        self._checks = list(checks) if checks is not None else default_checks()

    def _run_check(self, check: PreflightCheck, context: PreflightContext) -> PreflightCheckResult:
        start = time.perf_counter()
        try:
            result = check.check(context)
        except Exception as e:
            logger.exception(f"Preflight check {check.id} raised")
            result = PreflightResult(
                passed=False,
                message=f"Check failed: {e}",
                can_proceed=False,
            )
        return PreflightCheckResult(check=check, result=result, duration=_elapsed_ms(start))

    def run_preflight(self, context: PreflightContext) -> PreflightReport:
        """Run every check and decide whether the battle may start.

        A check that raises is recorded as a failed result; the remaining
        checks still run. A token is issued only when nothing blocks.
        """
        start = time.perf_counter()
        results = [self._run_check(check, context) for check in self._checks]
        summary = summarize(results)

        can_start = not any(r.blocking for r in results)
        timestamp = utc_now()

        for r in results:
            if r.blocking:
                logger.warning(f"Preflight blocked by {r.check.id}: {r.result.message}")

        logger.info(
            f"Preflight for task {context.task_id}: {summary.passed}/{summary.total} passed, "
            f"can_start={can_start}"
        )
        return PreflightReport(
            task_id=context.task_id,
            timestamp=timestamp,
            duration=_elapsed_ms(start),
            results=results,
            summary=summary,
            can_start=can_start,
            stash_ref=context.stash_ref,
            preflight_token=generate_preflight_token(
                context.task_id, timestamp, working_dir=self.working_dir
            )
            if can_start
            else None,
        )

    def apply_fix(self, check_id: str, context: PreflightContext) -> FixOutcome:
        """Run a check's auto-fix, then re-run the check."""
        check = self.get_check(check_id)
        if check is None:
            return FixOutcome(
                result=FixResult(success=False, message=f'Check "{check_id}" not found')
            )
        if check.fix is None:
            return FixOutcome(
                result=FixResult(success=False, message=f'Check "{check_id}" has no auto-fix')
            )

        try:
            fix_result = check.fix(context)
        except Exception as e:
            logger.exception(f"Auto-fix for {check_id} raised")
            fix_result = FixResult(success=False, message=f"Fix failed: {e}")

        return FixOutcome(result=fix_result, updated_check=self._run_check(check, context))

    def restore_stash(self, stash_ref: str) -> FixResult:
        """Pop a stash created by the repo_status fix. Never raises."""
        hint = "Run 'git stash list' to find your changes."
        try:
            git.run_git(["stash", "pop", stash_ref], self.working_dir)
        except GitCommandError as e:
            return FixResult(
                success=False,
                message=f"Failed to restore stash: {e.stderr.strip()}. {hint}",
            )
        except OSError as e:
            return FixResult(success=False, message=f"Failed to restore stash: {e}. {hint}")

        logger.info(f"Restored stash {stash_ref}")
        return FixResult(success=True, message="Stashed changes restored")

    def get_checks(self) -> list[PreflightCheck]:
        return list(self._checks)

    def get_check(self, check_id: str) -> PreflightCheck | None:
        for check in self._checks:
            if check.id == check_id:
                return check
        return None
