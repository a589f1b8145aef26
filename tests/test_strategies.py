"""Tests for resume strategies and retry prompts."""

from __future__ import annotations

import pytest

from battlekit.models import Battle, Iteration
from battlekit.recovery.classifier import BattleFailure, FailureType, RecoveryAction
from battlekit.recovery.strategies import (
    ResumeStrategy,
    RetryPromptOptions,
    build_resume_context,
    build_retry_prompt,
    get_default_resume_strategy,
    is_valid_resume_strategy,
    plan_recovery,
    prepare_iteration_for_retry,
)


def make_failure(
    type: FailureType = FailureType.FEEDBACK_FAILURE,
    iteration: int = 4,
    message: str = "Feedback loop 'test' failed",
    details: str | None = "AssertionError in test_app.py",
    recoverable: bool = True,
    suggested_action: RecoveryAction = RecoveryAction.RETRY_ITERATION,
) -> BattleFailure:
    return BattleFailure(
        type=type,
        timestamp="2026-01-01T00:00:00+00:00",
        iteration=iteration,
        message=message,
        details=details,
        recoverable=recoverable,
        suggested_action=suggested_action,
    )


# =============================================================================
# build_resume_context
# =============================================================================


class TestBuildResumeContext:
    def test_retry_same(self):
        result = build_resume_context(ResumeStrategy.RETRY_SAME, make_failure())
        assert result.success is True
        assert result.iteration == 4
        assert result.error_context is None
        assert result.message == "Retrying iteration 4"

    def test_retry_with_context_prefers_details(self):
        result = build_resume_context(ResumeStrategy.RETRY_WITH_CONTEXT, make_failure())
        assert result.iteration == 4
        assert result.error_context == "AssertionError in test_app.py"

    def test_retry_with_context_falls_back_to_message(self):
        failure = make_failure(details=None)
        result = build_resume_context(ResumeStrategy.RETRY_WITH_CONTEXT, failure)
        assert result.error_context == "Feedback loop 'test' failed"

    def test_retry_with_context_keeps_empty_details(self):
        failure = make_failure(details="")
        result = build_resume_context(ResumeStrategy.RETRY_WITH_CONTEXT, failure)
        assert result.error_context == ""

    def test_rollback_and_retry(self):
        result = build_resume_context(ResumeStrategy.ROLLBACK_AND_RETRY, make_failure())
        assert result.iteration == 4
        assert result.error_context == "Previous attempt failed: Feedback loop 'test' failed"
        assert "Rolling back" in result.message

    def test_continue_next(self):
        result = build_resume_context(ResumeStrategy.CONTINUE_NEXT, make_failure())
        assert result.iteration == 5
        assert result.message == "Continuing with iteration 5"

    def test_manual_then_continue(self):
        result = build_resume_context(ResumeStrategy.MANUAL_THEN_CONTINUE, make_failure())
        assert result.iteration == 4
        assert "manual fix" in result.message

    @pytest.mark.parametrize("strategy", list(ResumeStrategy))
    def test_instructions_pass_through(self, strategy):
        result = build_resume_context(strategy, make_failure(), "Use the new API")
        assert result.additional_instructions == "Use the new API"
        assert result.strategy == strategy

    @pytest.mark.parametrize("strategy", list(ResumeStrategy))
    def test_only_continue_next_advances(self, strategy):
        result = build_resume_context(strategy, make_failure(iteration=7))
        expected = 8 if strategy == ResumeStrategy.CONTINUE_NEXT else 7
        assert result.iteration == expected


# =============================================================================
# Strategy validation and defaults
# =============================================================================


class TestIsValidResumeStrategy:
    @pytest.mark.parametrize("strategy", list(ResumeStrategy))
    def test_non_recoverable_only_allows_manual(self, strategy):
        failure = make_failure(
            type=FailureType.SYSTEM_ERROR,
            recoverable=False,
            suggested_action=RecoveryAction.MANUAL_RESOLUTION,
        )
        expected = strategy == ResumeStrategy.MANUAL_THEN_CONTINUE
        assert is_valid_resume_strategy(strategy, failure) is expected

    def test_feedback_failure_allows_all(self):
        failure = make_failure()
        for strategy in ResumeStrategy:
            assert is_valid_resume_strategy(strategy, failure)

    def test_timeout_disallows_manual(self):
        failure = make_failure(type=FailureType.TIMEOUT)
        assert is_valid_resume_strategy(ResumeStrategy.RETRY_SAME, failure)
        assert is_valid_resume_strategy(ResumeStrategy.ROLLBACK_AND_RETRY, failure)
        assert not is_valid_resume_strategy(ResumeStrategy.MANUAL_THEN_CONTINUE, failure)

    def test_cancellation_disallows_retry(self):
        failure = make_failure(
            type=FailureType.CANCELLATION, suggested_action=RecoveryAction.RESTART
        )
        assert not is_valid_resume_strategy(ResumeStrategy.RETRY_WITH_CONTEXT, failure)
        assert is_valid_resume_strategy(ResumeStrategy.ROLLBACK_AND_RETRY, failure)


class TestDefaultResumeStrategy:
    @pytest.mark.parametrize(
        "action,strategy",
        [
            (RecoveryAction.RETRY_ITERATION, ResumeStrategy.RETRY_WITH_CONTEXT),
            (RecoveryAction.FIX_AND_CONTINUE, ResumeStrategy.MANUAL_THEN_CONTINUE),
            (RecoveryAction.ROLLBACK, ResumeStrategy.ROLLBACK_AND_RETRY),
            (RecoveryAction.RESTART, ResumeStrategy.RETRY_SAME),
            (RecoveryAction.MANUAL_RESOLUTION, ResumeStrategy.MANUAL_THEN_CONTINUE),
        ],
    )
    def test_maps_suggested_action(self, action, strategy):
        assert get_default_resume_strategy(make_failure(suggested_action=action)) == strategy

    def test_non_recoverable_is_manual(self):
        failure = make_failure(recoverable=False)
        assert get_default_resume_strategy(failure) == ResumeStrategy.MANUAL_THEN_CONTINUE

    def test_plan_recovery_uses_default(self):
        plan = plan_recovery(make_failure(), "Check the fixtures")
        assert plan.strategy == ResumeStrategy.RETRY_WITH_CONTEXT
        assert plan.additional_instructions == "Check the fixtures"


# =============================================================================
# Retry prompts
# =============================================================================


class TestBuildRetryPrompt:
    def test_unchanged_without_extras(self):
        assert build_retry_prompt("Do the task", RetryPromptOptions()) == "Do the task"

    def test_error_context_ignored_when_disabled(self):
        options = RetryPromptOptions(include_error_context=False, error_context="boom")
        assert build_retry_prompt("Do the task", options) == "Do the task"

    def test_error_context_section(self):
        prompt = build_retry_prompt("Do the task", RetryPromptOptions(error_context="boom"))
        assert prompt.startswith("Do the task")
        assert "## Previous Attempt Failed" in prompt
        assert "boom" in prompt
        assert "## Additional Instructions" not in prompt

    def test_instructions_section(self):
        options = RetryPromptOptions(additional_instructions="Keep it small")
        prompt = build_retry_prompt("Do the task", options)
        assert "## Additional Instructions" in prompt
        assert "Keep it small" in prompt
        assert "## Previous Attempt Failed" not in prompt

    def test_error_context_precedes_instructions(self):
        options = RetryPromptOptions(error_context="boom", additional_instructions="Keep it small")
        prompt = build_retry_prompt("Do the task", options)
        assert prompt.index("## Previous Attempt Failed") < prompt.index(
            "## Additional Instructions"
        )


# =============================================================================
# Iteration retry shells
# =============================================================================


class TestPrepareIterationForRetry:
    def test_first_retry_count_is_one(self):
        battle = Battle(task_id="task-1", iterations=[Iteration(number=1, result="failure")])
        iteration = prepare_iteration_for_retry(battle, 1)
        assert iteration.number == 1
        assert iteration.retry_count == 1
        assert iteration.result == "pending"
        assert iteration.output == ""
        assert iteration.files_changed == []

    def test_retry_count_increments(self):
        battle = Battle(
            task_id="task-1",
            iterations=[
                Iteration(number=1, result="success"),
                Iteration(number=2, result="failure", retry_count=2),
            ],
        )
        assert prepare_iteration_for_retry(battle, 2).retry_count == 3

    def test_missing_iteration_starts_at_one(self):
        battle = Battle(task_id="task-1")
        assert prepare_iteration_for_retry(battle, 5).retry_count == 1

    def test_does_not_modify_battle(self):
        original = Iteration(number=1, result="failure", output="old output")
        battle = Battle(task_id="task-1", iterations=[original])
        prepare_iteration_for_retry(battle, 1)
        assert battle.iterations[0].output == "old output"
        assert battle.iterations[0].retry_count is None
