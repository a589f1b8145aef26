"""Resume strategies for continuing a battle after a failure.

Provides the strategies a caller can pick after classification:
- retry_same: Retry the failed iteration as-is
- retry_with_context: Retry with the failure details in the prompt
- rollback_and_retry: Restore a checkpoint, then retry
- continue_next: Skip ahead to the next iteration
- manual_then_continue: Pause for a manual fix, then continue
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from ..models import Battle, Iteration, utc_now
from .classifier import BattleFailure, RecoveryAction, get_recovery_options


class ResumeStrategy(str, Enum):
    """How to resume a battle after a failure."""

    RETRY_SAME = "retry_same"
    RETRY_WITH_CONTEXT = "retry_with_context"
    ROLLBACK_AND_RETRY = "rollback_and_retry"
    CONTINUE_NEXT = "continue_next"
    MANUAL_THEN_CONTINUE = "manual_then_continue"


class ResumeResult(BaseModel):
    """Plan for the next iteration after a failure."""

    success: bool
    strategy: ResumeStrategy
    iteration: int
    message: str
    error_context: str | None = None
    additional_instructions: str | None = None


@dataclass
class RetryPromptOptions:
    """Options for building a retry prompt."""

    include_error_context: bool = True
    error_context: str | None = None
    additional_instructions: str | None = None


# Recovery action each strategy carries out
STRATEGY_ACTIONS: dict[ResumeStrategy, RecoveryAction] = {
    ResumeStrategy.RETRY_SAME: RecoveryAction.RETRY_ITERATION,
    ResumeStrategy.RETRY_WITH_CONTEXT: RecoveryAction.RETRY_ITERATION,
    ResumeStrategy.CONTINUE_NEXT: RecoveryAction.RETRY_ITERATION,
    ResumeStrategy.ROLLBACK_AND_RETRY: RecoveryAction.ROLLBACK,
    ResumeStrategy.MANUAL_THEN_CONTINUE: RecoveryAction.FIX_AND_CONTINUE,
}

# Default strategy for each suggested action
DEFAULT_STRATEGIES: dict[RecoveryAction, ResumeStrategy] = {
    RecoveryAction.RETRY_ITERATION: ResumeStrategy.RETRY_WITH_CONTEXT,
    RecoveryAction.FIX_AND_CONTINUE: ResumeStrategy.MANUAL_THEN_CONTINUE,
    RecoveryAction.ROLLBACK: ResumeStrategy.ROLLBACK_AND_RETRY,
    RecoveryAction.RESTART: ResumeStrategy.RETRY_SAME,
    RecoveryAction.MANUAL_RESOLUTION: ResumeStrategy.MANUAL_THEN_CONTINUE,
}


def build_resume_context(
    strategy: ResumeStrategy,
    failure: BattleFailure,
    instructions: str | None = None,
) -> ResumeResult:
    """Build the resume plan for a strategy.

    Args:
        strategy: Chosen resume strategy.
        failure: The classified failure being recovered from.
        instructions: Optional extra instructions for the agent.

    Returns:
        ResumeResult naming the iteration to run next.
    """
    strategy = ResumeStrategy(strategy)
    n = failure.iteration

    if strategy == ResumeStrategy.RETRY_SAME:
        iteration = n
        message = f"Retrying iteration {n}"
        error_context = None
    elif strategy == ResumeStrategy.RETRY_WITH_CONTEXT:
        iteration = n
        message = f"Retrying iteration {n} with error context"
        error_context = failure.details if failure.details is not None else failure.message
    elif strategy == ResumeStrategy.ROLLBACK_AND_RETRY:
        iteration = n
        message = f"Rolling back and retrying iteration {n}"
        error_context = f"Previous attempt failed: {failure.message}"
    elif strategy == ResumeStrategy.CONTINUE_NEXT:
        iteration = n + 1
        message = f"Continuing with iteration {n + 1}"
        error_context = None
    else:
        iteration = n
        message = f"Pausing for manual fix before continuing iteration {n}"
        error_context = failure.message

    return ResumeResult(
        success=True,
        strategy=strategy,
        iteration=iteration,
        message=message,
        error_context=error_context,
        additional_instructions=instructions,
    )


def is_valid_resume_strategy(strategy: ResumeStrategy, failure: BattleFailure) -> bool:
    """Check whether a strategy is allowed for a failure.

    Non-recoverable failures only allow a manual fix.
    """
    strategy = ResumeStrategy(strategy)
    if not failure.recoverable:
        return strategy == ResumeStrategy.MANUAL_THEN_CONTINUE
    return STRATEGY_ACTIONS[strategy] in get_recovery_options(failure.type)


def get_default_resume_strategy(failure: BattleFailure) -> ResumeStrategy:
    """Default strategy for a failure, derived from its suggested action."""
    if not failure.recoverable:
        return ResumeStrategy.MANUAL_THEN_CONTINUE
    return DEFAULT_STRATEGIES[failure.suggested_action]


def build_retry_prompt(base_prompt: str, options: RetryPromptOptions) -> str:
    """Append error context and extra instructions to a prompt.

    Error context, when included, always precedes the instructions.
    """
    prompt = base_prompt

    if options.include_error_context and options.error_context:
        prompt += (
            "\n\n## Previous Attempt Failed\n\n"
            "The previous attempt failed with the following error:\n\n"
            f"```\n{options.error_context}\n```\n\n"
            "Please address this issue in your next attempt."
        )

    if options.additional_instructions:
        prompt += f"\n\n## Additional Instructions\n\n{options.additional_instructions}"

    return prompt


def prepare_iteration_for_retry(battle: Battle, iteration_number: int) -> Iteration:
    """Create a fresh iteration shell for retrying ``iteration_number``.

    The retry count continues from the previous attempt at that iteration,
    starting at 1.
    """
    previous_count = 0
    index = iteration_number - 1
    if 0 <= index < len(battle.iterations):
        previous_count = battle.iterations[index].retry_count or 0

    return Iteration(
        number=iteration_number,
        started_at=utc_now(),
        output="",
        result="pending",
        files_changed=[],
        retry_count=previous_count + 1,
    )


def plan_recovery(failure: BattleFailure, instructions: str | None = None) -> ResumeResult:
    """Plan recovery using the default strategy for the failure."""
    return build_resume_context(get_default_resume_strategy(failure), failure, instructions)
