"""Preflight checks run before a battle starts.

This module provides:
- A registry of independent checks (environment, system, git, config, task)
- Auto-fixes, such as stashing uncommitted changes
- Signed, short-lived tokens that authorize the battle start
- Task risk assessment
"""

from .checks import default_checks, tokenize_command
from .models import (
    CheckInfoDTO,
    FixOutcome,
    FixResult,
    PreflightCheck,
    PreflightCheckResult,
    PreflightCheckResultDTO,
    PreflightContext,
    PreflightReport,
    PreflightReportDTO,
    PreflightResult,
    PreflightSummary,
    to_preflight_check_result_dto,
    to_preflight_report_dto,
)
from .risk import TaskRisk, TaskRiskFactor, assess_task_risk
from .service import PreflightService
from .tokens import TokenPayload, generate_preflight_token, validate_preflight_token

__all__ = [
    # Service
    "PreflightService",
    "default_checks",
    "tokenize_command",
    # Records
    "PreflightCheck",
    "PreflightContext",
    "PreflightResult",
    "FixResult",
    "FixOutcome",
    "PreflightCheckResult",
    "PreflightReport",
    "PreflightSummary",
    # DTOs
    "CheckInfoDTO",
    "PreflightCheckResultDTO",
    "PreflightReportDTO",
    "to_preflight_check_result_dto",
    "to_preflight_report_dto",
    # Tokens
    "TokenPayload",
    "generate_preflight_token",
    "validate_preflight_token",
    # Risk
    "TaskRisk",
    "TaskRiskFactor",
    "assess_task_risk",
]
