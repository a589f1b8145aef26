"""Preflight check definitions, results and API DTOs."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel

from ..config import BattleConfig
from ..models import Battle, Task

CheckCategory = Literal["environment", "git", "config", "task", "system"]

# error: blocks the battle, warning: may cause issues, info: FYI
CheckSeverity = Literal["error", "warning", "info"]


class PreflightResult(BaseModel):
    """Outcome of a single check."""

    passed: bool
    message: str
    can_proceed: bool
    details: str | None = None
    suggestion: str | None = None


class FixResult(BaseModel):
    """Outcome of an auto-fix."""

    success: bool
    message: str
    metadata: dict[str, Any] | None = None


@dataclass
class PreflightContext:
    """Everything a check can inspect.

    Attributes:
        task_id: Task about to be battled.
        task: The task record.
        config: Battle configuration.
        working_dir: Repository the battle runs in.
        stash_ref: Set by the repo_status fix when it stashes changes.
        get_active_battle: Returns the currently running battle, if any.
    """

    task_id: str
    task: Task
    config: BattleConfig
    working_dir: Path
    stash_ref: str | None = None
    get_active_battle: Callable[[], Battle | None] | None = None


@dataclass
class PreflightCheck:
    """A registered check with an optional auto-fix."""

    id: str
    name: str
    description: str
    category: CheckCategory
    severity: CheckSeverity
    check: Callable[[PreflightContext], PreflightResult]
    fix: Callable[[PreflightContext], FixResult] | None = None

    @property
    def has_auto_fix(self) -> bool:
        return self.fix is not None


@dataclass
class PreflightCheckResult:
    """A check and its result. ``duration`` is in milliseconds."""

    check: PreflightCheck
    result: PreflightResult
    duration: float = 0.0

    @property
    def blocking(self) -> bool:
        return (
            self.check.severity == "error"
            and not self.result.passed
            and not self.result.can_proceed
        )


class PreflightSummary(BaseModel):
    total: int
    passed: int
    warnings: int
    errors: int
    infos: int


@dataclass
class PreflightReport:
    """Result of a full preflight run."""

    task_id: str
    timestamp: str
    duration: float
    results: list[PreflightCheckResult]
    summary: PreflightSummary
    can_start: bool
    stash_ref: str | None = None
    preflight_token: str | None = None


@dataclass
class FixOutcome:
    """Fix result plus the re-run of the fixed check."""

    result: FixResult
    updated_check: PreflightCheckResult | None = None


# =============================================================================
# DTOs
# =============================================================================


class CheckInfoDTO(BaseModel):
    id: str
    name: str
    description: str
    category: CheckCategory
    severity: CheckSeverity
    has_auto_fix: bool


class PreflightCheckResultDTO(BaseModel):
    check: CheckInfoDTO
    result: PreflightResult
    duration: float


class PreflightReportDTO(BaseModel):
    task_id: str
    timestamp: str
    duration: float
    results: list[PreflightCheckResultDTO]
    summary: PreflightSummary
    can_start: bool
    stash_ref: str | None = None
    preflight_token: str | None = None


def to_check_info_dto(check: PreflightCheck) -> CheckInfoDTO:
    return CheckInfoDTO(
        id=check.id,
        name=check.name,
        description=check.description,
        category=check.category,
        severity=check.severity,
        has_auto_fix=check.has_auto_fix,
    )


def to_preflight_check_result_dto(result: PreflightCheckResult) -> PreflightCheckResultDTO:
    """Serializable view of a check result, without the check's callables."""
    return PreflightCheckResultDTO(
        check=to_check_info_dto(result.check),
        result=result.result,
        duration=result.duration,
    )


def to_preflight_report_dto(report: PreflightReport) -> PreflightReportDTO:
    """Serializable view of a report."""
    return PreflightReportDTO(
        task_id=report.task_id,
        timestamp=report.timestamp,
        duration=report.duration,
        results=[to_preflight_check_result_dto(r) for r in report.results],
        summary=report.summary,
        can_start=report.can_start,
        stash_ref=report.stash_ref,
        preflight_token=report.preflight_token,
    )
