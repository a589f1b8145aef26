"""Battle recovery system.

This module provides:
- Failure classification into a fixed taxonomy with recovery options
- Resume strategies and retry prompts for the next iteration
- Checkpoints of the working directory (commit or patch backed)
- Retention policy for old checkpoints
- Manual fix sessions that watch the user's edits
"""

from .checkpoints import (
    Checkpoint,
    CheckpointStorage,
    CheckpointValidation,
    CommitCheckpointStorage,
    PatchCheckpointStorage,
    RollbackResult,
    create_checkpoint,
    create_initial_checkpoint,
    find_checkpoint_by_iteration,
    get_checkpoint_storage,
    get_initial_checkpoint,
    restore_checkpoint,
    rollback_to_iteration,
    validate_checkpoint,
)
from .classifier import (
    AgentError,
    BattleContext,
    BattleFailure,
    CancellationFailure,
    CrashFailure,
    FailureSeverity,
    FailureType,
    FeedbackLoopFailure,
    IterationTimeoutFailure,
    RecoveryAction,
    RecoverySuggestion,
    SystemFailure,
    classify_failure,
    get_all_recovery_suggestions,
    get_failure_message,
    get_failure_severity,
    get_recovery_options,
    get_recovery_suggestion,
)
from .manual_fix import (
    FileChange,
    ManualFixCompletion,
    ManualFixManager,
    ManualFixSession,
    SessionRegistry,
    StartOptions,
    watch_directory,
)
from .retention import (
    DEFAULT_RETENTION_POLICY,
    CheckpointRetentionPolicy,
    cleanup_checkpoints,
    get_checkpoints_to_remove,
)
from .strategies import (
    ResumeResult,
    ResumeStrategy,
    RetryPromptOptions,
    build_resume_context,
    build_retry_prompt,
    get_default_resume_strategy,
    is_valid_resume_strategy,
    plan_recovery,
    prepare_iteration_for_retry,
)

__all__ = [
    # Classifier
    "FailureType",
    "FailureSeverity",
    "RecoveryAction",
    "RecoverySuggestion",
    "BattleFailure",
    "BattleContext",
    "FeedbackLoopFailure",
    "IterationTimeoutFailure",
    "AgentError",
    "CancellationFailure",
    "CrashFailure",
    "SystemFailure",
    "classify_failure",
    "get_failure_severity",
    "get_recovery_options",
    "get_all_recovery_suggestions",
    "get_failure_message",
    "get_recovery_suggestion",
    # Strategies
    "ResumeStrategy",
    "ResumeResult",
    "RetryPromptOptions",
    "build_resume_context",
    "is_valid_resume_strategy",
    "get_default_resume_strategy",
    "build_retry_prompt",
    "prepare_iteration_for_retry",
    "plan_recovery",
    # Checkpoints
    "Checkpoint",
    "CheckpointStorage",
    "CommitCheckpointStorage",
    "PatchCheckpointStorage",
    "CheckpointValidation",
    "RollbackResult",
    "get_checkpoint_storage",
    "create_checkpoint",
    "restore_checkpoint",
    "create_initial_checkpoint",
    "validate_checkpoint",
    "find_checkpoint_by_iteration",
    "get_initial_checkpoint",
    "rollback_to_iteration",
    # Retention
    "CheckpointRetentionPolicy",
    "DEFAULT_RETENTION_POLICY",
    "cleanup_checkpoints",
    "get_checkpoints_to_remove",
    # Manual fix
    "FileChange",
    "ManualFixSession",
    "ManualFixCompletion",
    "ManualFixManager",
    "SessionRegistry",
    "StartOptions",
    "watch_directory",
]
