"""Tests for failure classification."""

from __future__ import annotations

import errno

import pytest
from pydantic import ValidationError

from battlekit.config import BattleConfig
from battlekit.recovery.classifier import (
    AgentError,
    BattleContext,
    CancellationFailure,
    CrashFailure,
    FailureSeverity,
    FailureType,
    FeedbackLoopFailure,
    IterationTimeoutFailure,
    RecoveryAction,
    SystemFailure,
    classify_failure,
    get_all_recovery_suggestions,
    get_failure_message,
    get_failure_severity,
    get_recovery_options,
    get_recovery_suggestion,
    is_system_error,
)


@pytest.fixture
def context() -> BattleContext:
    return BattleContext(current_iteration=3, config=BattleConfig(timeout_minutes=15))


def raised(error: BaseException) -> BaseException:
    """Return ``error`` with a traceback attached."""
    try:
        raise error
    except BaseException as e:
        return e


# =============================================================================
# Known variants
# =============================================================================


class TestKnownVariants:
    """Each variant maps to a fixed type, recoverability and action."""

    def test_feedback_loop_failure(self, context):
        failure = classify_failure(FeedbackLoopFailure("test", "2 failed, 8 passed"), context)
        assert failure.type == FailureType.FEEDBACK_FAILURE
        assert failure.message == "Feedback loop 'test' failed"
        assert failure.details == "2 failed, 8 passed"
        assert failure.recoverable is True
        assert failure.suggested_action == RecoveryAction.RETRY_ITERATION
        assert failure.iteration == 3

    def test_timeout_uses_configured_minutes(self, context):
        failure = classify_failure(IterationTimeoutFailure(99), context)
        assert failure.type == FailureType.TIMEOUT
        assert failure.message == "Iteration timed out"
        assert failure.details == "Exceeded 15 minutes"
        assert failure.recoverable is True
        assert failure.suggested_action == RecoveryAction.RETRY_ITERATION

    def test_retryable_agent_error(self, context):
        failure = classify_failure(AgentError("API overloaded"), context)
        assert failure.type == FailureType.AGENT_ERROR
        assert failure.message == "API overloaded"
        assert failure.recoverable is True
        assert failure.suggested_action == RecoveryAction.RETRY_ITERATION

    def test_non_retryable_agent_error(self, context):
        failure = classify_failure(AgentError("Invalid API key", retryable=False), context)
        assert failure.type == FailureType.AGENT_ERROR
        assert failure.recoverable is False
        assert failure.suggested_action == RecoveryAction.MANUAL_RESOLUTION

    def test_agent_error_details_hold_traceback(self, context):
        failure = classify_failure(raised(AgentError("boom")), context)
        assert failure.details is not None
        assert "Traceback" in failure.details
        assert "AgentError: boom" in failure.details

    def test_agent_error_without_traceback(self, context):
        failure = classify_failure(AgentError("boom"), context)
        assert failure.details is None

    def test_cancellation_with_reason(self, context):
        failure = classify_failure(CancellationFailure("User pressed stop"), context)
        assert failure.type == FailureType.CANCELLATION
        assert failure.message == "User pressed stop"
        assert failure.details == "User pressed stop"
        assert failure.recoverable is True
        assert failure.suggested_action == RecoveryAction.RESTART

    def test_cancellation_without_reason(self, context):
        failure = classify_failure(CancellationFailure(), context)
        assert failure.message == "Cancelled by user"
        assert failure.details is None

    def test_crash_with_signal(self, context):
        failure = classify_failure(CrashFailure("Agent exited", signal="SIGKILL"), context)
        assert failure.type == FailureType.CRASH
        assert failure.message == "Agent exited"
        assert failure.details == "Signal: SIGKILL"
        assert failure.recoverable is True
        assert failure.suggested_action == RecoveryAction.RESTART

    def test_crash_without_signal_uses_traceback(self, context):
        failure = classify_failure(raised(CrashFailure("Agent exited")), context)
        assert "Traceback" in (failure.details or "")

    def test_system_failure(self, context):
        failure = classify_failure(SystemFailure("Disk quota hit", code="EDQUOT"), context)
        assert failure.type == FailureType.SYSTEM_ERROR
        assert failure.recoverable is False
        assert failure.suggested_action == RecoveryAction.MANUAL_RESOLUTION


# =============================================================================
# Fail-closed fallback
# =============================================================================


class TestUnknownErrors:
    """Unrecognized errors become non-recoverable system errors."""

    @pytest.mark.parametrize(
        "error",
        [
            RuntimeError("something odd"),
            ValueError("bad value"),
            KeyError("missing"),
            Exception(),
        ],
    )
    def test_unknown_is_system_error(self, context, error):
        failure = classify_failure(error, context)
        assert failure.type == FailureType.SYSTEM_ERROR
        assert failure.recoverable is False
        assert failure.suggested_action == RecoveryAction.MANUAL_RESOLUTION

    def test_empty_message_falls_back_to_class_name(self, context):
        failure = classify_failure(Exception(), context)
        assert failure.message == "Exception"

    @pytest.mark.parametrize(
        "message",
        [
            "ENOSPC: no space left on device",
            "write failed: Permission Denied",
            "eacces while opening file",
            "Out of memory",
            "disk full",
            "EMFILE: too many open files",
        ],
    )
    def test_system_patterns(self, message):
        assert is_system_error(RuntimeError(message))

    def test_oserror_errno_matches(self):
        assert is_system_error(OSError(errno.ENOSPC, "No space"))
        assert not is_system_error(OSError(errno.ENOENT, "No such file"))

    def test_unrelated_message_is_not_system_pattern(self):
        assert not is_system_error(RuntimeError("tests failed"))

    def test_variant_from_another_module_classifies_by_kind(self, context):
        class ForeignTimeout(Exception):
            kind = "timeout"

        failure = classify_failure(ForeignTimeout(), context)
        assert failure.type == FailureType.TIMEOUT

    def test_variant_missing_attributes_fails_closed(self, context):
        class BrokenFeedback(Exception):
            kind = "feedback_loop"

        failure = classify_failure(BrokenFeedback("x"), context)
        assert failure.type == FailureType.SYSTEM_ERROR
        assert failure.recoverable is False

    def test_failure_is_immutable(self, context):
        failure = classify_failure(CancellationFailure(), context)
        with pytest.raises(ValidationError):
            failure.message = "changed"


# =============================================================================
# Severity and recovery options
# =============================================================================


class TestSeverity:
    @pytest.mark.parametrize(
        "failure_type,severity",
        [
            (FailureType.FEEDBACK_FAILURE, FailureSeverity.LOW),
            (FailureType.CANCELLATION, FailureSeverity.LOW),
            (FailureType.TIMEOUT, FailureSeverity.MEDIUM),
            (FailureType.AGENT_ERROR, FailureSeverity.MEDIUM),
            (FailureType.SYSTEM_ERROR, FailureSeverity.HIGH),
            (FailureType.CRASH, FailureSeverity.HIGH),
        ],
    )
    def test_severity_table(self, failure_type, severity):
        assert get_failure_severity(failure_type) == severity


class TestRecoveryOptions:
    def test_feedback_failure_options(self):
        assert get_recovery_options(FailureType.FEEDBACK_FAILURE) == [
            RecoveryAction.RETRY_ITERATION,
            RecoveryAction.FIX_AND_CONTINUE,
            RecoveryAction.ROLLBACK,
        ]

    def test_crash_options(self):
        assert get_recovery_options(FailureType.CRASH) == [
            RecoveryAction.RESTART,
            RecoveryAction.ROLLBACK,
            RecoveryAction.MANUAL_RESOLUTION,
        ]

    def test_accepts_string_type(self):
        assert get_recovery_options("timeout") == [
            RecoveryAction.RETRY_ITERATION,
            RecoveryAction.ROLLBACK,
        ]

    @pytest.mark.parametrize(
        "error",
        [
            FeedbackLoopFailure("lint", "E501"),
            IterationTimeoutFailure(30),
            AgentError("overloaded"),
            AgentError("bad key", retryable=False),
            CancellationFailure(),
            CrashFailure("died"),
            SystemFailure("disk full"),
            RuntimeError("unknown"),
        ],
    )
    def test_exactly_one_recommended_suggestion(self, context, error):
        failure = classify_failure(error, context)
        suggestions = get_all_recovery_suggestions(failure)

        assert len(suggestions) == len(get_recovery_options(failure.type))
        recommended = [s for s in suggestions if s.recommended]
        assert len(recommended) == 1
        assert recommended[0].action == failure.suggested_action
        assert all(s.description for s in suggestions)


class TestMessages:
    def test_failure_messages(self, context):
        feedback = classify_failure(FeedbackLoopFailure("test", ""), context)
        timeout = classify_failure(IterationTimeoutFailure(30), context)
        crash = classify_failure(CrashFailure("segfault"), context)

        assert get_failure_message(feedback) == "Build/test failed: Feedback loop 'test' failed"
        assert get_failure_message(timeout) == "Iteration timed out: Exceeded 15 minutes"
        assert get_failure_message(crash) == "Process crashed: segfault"

    def test_recovery_suggestion_describes_suggested_action(self, context):
        failure = classify_failure(SystemFailure("disk full"), context)
        assert "Manual intervention" in get_recovery_suggestion(failure)
