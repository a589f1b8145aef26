"""Failure classification for battle recovery.

Turns an exception raised during an iteration into a BattleFailure record:
- feedback_failure: A feedback loop (tests, lint, typecheck) failed
- timeout: The iteration exceeded its time limit
- agent_error: The coding agent reported an error
- system_error: Disk, permission or memory problems, and anything unknown
- cancellation: The user stopped the battle
- crash: The agent process died

Failure variants carry a ``kind`` discriminant and are dispatched through a
handler table, so a variant raised from another module classifies the same
as long as it sets the same ``kind``. Classification never raises; unknown
errors fail closed as non-recoverable system errors.
"""

from __future__ import annotations

import errno
import re
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict

from ..config import BattleConfig
from ..models import utc_now


class FailureType(str, Enum):
    """Closed taxonomy of battle failures."""

    FEEDBACK_FAILURE = "feedback_failure"
    TIMEOUT = "timeout"
    AGENT_ERROR = "agent_error"
    SYSTEM_ERROR = "system_error"
    CANCELLATION = "cancellation"
    CRASH = "crash"


class RecoveryAction(str, Enum):
    """Recovery actions that can be suggested for a failure."""

    RETRY_ITERATION = "retry_iteration"
    FIX_AND_CONTINUE = "fix_and_continue"
    ROLLBACK = "rollback"
    RESTART = "restart"
    MANUAL_RESOLUTION = "manual_resolution"


class FailureSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BattleFailure(BaseModel):
    """Structured record of a failed iteration. Immutable once classified."""

    model_config = ConfigDict(frozen=True)

    type: FailureType
    timestamp: str
    iteration: int
    message: str
    details: str | None = None
    recoverable: bool
    suggested_action: RecoveryAction


class RecoverySuggestion(BaseModel):
    """A recovery option offered to the user."""

    action: RecoveryAction
    description: str
    recommended: bool


@dataclass
class BattleContext:
    """Execution context a failure is classified in."""

    current_iteration: int
    config: BattleConfig


# =============================================================================
# Failure variants
# =============================================================================


class BattleFailureError(Exception):
    """Base for the known failure variants."""

    kind: ClassVar[str] = ""


class FeedbackLoopFailure(BattleFailureError):
    """A feedback loop command failed after an iteration."""

    kind = "feedback_loop"

    def __init__(self, loop: str, output: str):
        super().__init__(f"Feedback loop '{loop}' failed")
        self.loop = loop
        self.output = output


class IterationTimeoutFailure(BattleFailureError):
    """The iteration ran longer than the configured timeout."""

    kind = "timeout"

    def __init__(self, timeout_minutes: float):
        super().__init__(f"Iteration timed out after {timeout_minutes} minutes")
        self.timeout_minutes = timeout_minutes


class AgentError(BattleFailureError):
    """The agent CLI or its API reported an error."""

    kind = "agent"

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class SystemFailure(BattleFailureError):
    """Host-level failure: disk full, permissions, memory."""

    kind = "system"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class CancellationFailure(BattleFailureError):
    """The battle was cancelled."""

    kind = "cancellation"

    def __init__(self, reason: str | None = None):
        super().__init__(reason if reason is not None else "Cancelled by user")
        self.reason = reason


class CrashFailure(BattleFailureError):
    """The agent process died unexpectedly."""

    kind = "crash"

    def __init__(self, message: str, signal: str | None = None):
        super().__init__(message)
        self.signal = signal


# =============================================================================
# Classification
# =============================================================================

SYSTEM_ERROR_PATTERNS: list[str] = [
    r"ENOSPC",  # Disk full
    r"EACCES",  # Permission denied
    r"EPERM",  # Operation not permitted
    r"EMFILE",  # Too many open files
    r"ENOMEM",  # Out of memory
    r"ENFILE",  # File table overflow
    r"disk full",
    r"permission denied",
    r"out of memory",
    r"no space left",
]

SYSTEM_ERRNOS = {
    errno.ENOSPC,
    errno.EACCES,
    errno.EPERM,
    errno.EMFILE,
    errno.ENOMEM,
    errno.ENFILE,
}


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _stack(error: BaseException) -> str | None:
    """Formatted traceback of a raised error, if it has one."""
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def is_system_error(error: BaseException) -> bool:
    """Check if an error is a host-level problem (disk, permissions, memory)."""
    if getattr(error, "kind", None) == SystemFailure.kind:
        return True
    if isinstance(error, OSError) and error.errno in SYSTEM_ERRNOS:
        return True
    message = _error_message(error)
    return any(re.search(pattern, message, re.IGNORECASE) for pattern in SYSTEM_ERROR_PATTERNS)


def _failure(
    context: BattleContext,
    type: FailureType,
    message: str,
    details: str | None,
    recoverable: bool,
    action: RecoveryAction,
) -> BattleFailure:
    return BattleFailure(
        type=type,
        timestamp=utc_now(),
        iteration=context.current_iteration,
        message=message,
        details=details,
        recoverable=recoverable,
        suggested_action=action,
    )


def _classify_feedback(error, context: BattleContext) -> BattleFailure:
    return _failure(
        context,
        FailureType.FEEDBACK_FAILURE,
        f"Feedback loop '{error.loop}' failed",
        error.output,
        True,
        RecoveryAction.RETRY_ITERATION,
    )


def _classify_timeout(error, context: BattleContext) -> BattleFailure:
    return _failure(
        context,
        FailureType.TIMEOUT,
        "Iteration timed out",
        f"Exceeded {context.config.timeout_minutes} minutes",
        True,
        RecoveryAction.RETRY_ITERATION,
    )


def _classify_agent(error, context: BattleContext) -> BattleFailure:
    retryable = bool(getattr(error, "retryable", True))
    return _failure(
        context,
        FailureType.AGENT_ERROR,
        _error_message(error),
        _stack(error),
        retryable,
        RecoveryAction.RETRY_ITERATION if retryable else RecoveryAction.MANUAL_RESOLUTION,
    )


def _classify_cancellation(error, context: BattleContext) -> BattleFailure:
    reason = getattr(error, "reason", None)
    return _failure(
        context,
        FailureType.CANCELLATION,
        reason if reason is not None else "Cancelled by user",
        reason,
        True,
        RecoveryAction.RESTART,
    )


def _classify_crash(error, context: BattleContext) -> BattleFailure:
    signal = getattr(error, "signal", None)
    return _failure(
        context,
        FailureType.CRASH,
        _error_message(error),
        f"Signal: {signal}" if signal else _stack(error),
        True,
        RecoveryAction.RESTART,
    )


def _classify_system(error, context: BattleContext) -> BattleFailure:
    return _failure(
        context,
        FailureType.SYSTEM_ERROR,
        _error_message(error),
        _stack(error),
        False,
        RecoveryAction.MANUAL_RESOLUTION,
    )


_HANDLERS: dict[str, Callable[[BaseException, BattleContext], BattleFailure]] = {
    FeedbackLoopFailure.kind: _classify_feedback,
    IterationTimeoutFailure.kind: _classify_timeout,
    AgentError.kind: _classify_agent,
    CancellationFailure.kind: _classify_cancellation,
    CrashFailure.kind: _classify_crash,
    SystemFailure.kind: _classify_system,
}


def classify_failure(error: BaseException, context: BattleContext) -> BattleFailure:
    """Classify an error into a BattleFailure.

    Args:
        error: The exception raised during the iteration.
        context: Current iteration number and configuration.

    Returns:
        BattleFailure. Unknown errors, and variants whose attributes cannot be
        read, are classified as non-recoverable system errors.
    """
    handler = _HANDLERS.get(getattr(error, "kind", None) or "")
    if handler is not None:
        try:
            return handler(error, context)
        except AttributeError:
            pass

    # System errors by pattern, then everything else: both fail closed
    return _classify_system(error, context)


# =============================================================================
# Severity and recovery options
# =============================================================================

_SEVERITY: dict[FailureType, FailureSeverity] = {
    FailureType.FEEDBACK_FAILURE: FailureSeverity.LOW,
    FailureType.CANCELLATION: FailureSeverity.LOW,
    FailureType.TIMEOUT: FailureSeverity.MEDIUM,
    FailureType.AGENT_ERROR: FailureSeverity.MEDIUM,
    FailureType.SYSTEM_ERROR: FailureSeverity.HIGH,
    FailureType.CRASH: FailureSeverity.HIGH,
}

_RECOVERY_OPTIONS: dict[FailureType, tuple[RecoveryAction, ...]] = {
    FailureType.FEEDBACK_FAILURE: (
        RecoveryAction.RETRY_ITERATION,
        RecoveryAction.FIX_AND_CONTINUE,
        RecoveryAction.ROLLBACK,
    ),
    FailureType.TIMEOUT: (RecoveryAction.RETRY_ITERATION, RecoveryAction.ROLLBACK),
    FailureType.AGENT_ERROR: (
        RecoveryAction.RETRY_ITERATION,
        RecoveryAction.MANUAL_RESOLUTION,
    ),
    FailureType.SYSTEM_ERROR: (RecoveryAction.MANUAL_RESOLUTION, RecoveryAction.RESTART),
    FailureType.CANCELLATION: (RecoveryAction.RESTART, RecoveryAction.ROLLBACK),
    FailureType.CRASH: (
        RecoveryAction.RESTART,
        RecoveryAction.ROLLBACK,
        RecoveryAction.MANUAL_RESOLUTION,
    ),
}

_SUGGESTION_TEXT: dict[RecoveryAction, str] = {
    RecoveryAction.RETRY_ITERATION: "Retry the iteration with the error context included",
    RecoveryAction.FIX_AND_CONTINUE: "Fix the issue manually, then continue the battle",
    RecoveryAction.ROLLBACK: "Roll back changes and retry from a clean state",
    RecoveryAction.RESTART: "Start the battle fresh from the beginning",
    RecoveryAction.MANUAL_RESOLUTION: "Manual intervention required to fix the underlying issue",
}


def get_failure_severity(type: FailureType) -> FailureSeverity:
    """Severity of a failure type for display."""
    return _SEVERITY[FailureType(type)]


def get_recovery_options(type: FailureType) -> list[RecoveryAction]:
    """Recovery actions available for a failure type."""
    return list(_RECOVERY_OPTIONS[FailureType(type)])


def get_failure_message(failure: BattleFailure) -> str:
    """User-friendly one-line message for a failure."""
    if failure.type == FailureType.FEEDBACK_FAILURE:
        return f"Build/test failed: {failure.message}"
    if failure.type == FailureType.TIMEOUT:
        return f"Iteration timed out: {failure.details}"
    if failure.type == FailureType.AGENT_ERROR:
        return f"Agent error: {failure.message}"
    if failure.type == FailureType.CANCELLATION:
        return f"Cancelled: {failure.message}"
    if failure.type == FailureType.CRASH:
        return f"Process crashed: {failure.message}"
    return f"System error: {failure.message}"


def get_recovery_suggestion(failure: BattleFailure) -> str:
    """Description of the failure's suggested recovery action."""
    return _SUGGESTION_TEXT[failure.suggested_action]


def get_all_recovery_suggestions(failure: BattleFailure) -> list[RecoverySuggestion]:
    """Every recovery option for the failure, with the suggested one recommended."""
    return [
        RecoverySuggestion(
            action=action,
            description=_SUGGESTION_TEXT[action],
            recommended=action == failure.suggested_action,
        )
        for action in get_recovery_options(failure.type)
    ]
