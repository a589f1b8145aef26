"""battlekit utility modules."""

from .errors import (
    BattlekitError,
    CheckpointError,
    ErrorCategory,
    ErrorInfo,
    FixNotVerifiedError,
    GitCommandError,
    PreflightTokenError,
    SessionNotFoundError,
    classify_exception,
    error_git_operation,
    error_internal,
    format_error,
    handle_exception,
    is_debug_mode,
    set_debug_mode,
)

__all__ = [
    # Exceptions
    "BattlekitError",
    "CheckpointError",
    "GitCommandError",
    "SessionNotFoundError",
    "FixNotVerifiedError",
    "PreflightTokenError",
    # Error display
    "ErrorCategory",
    "ErrorInfo",
    "format_error",
    "handle_exception",
    "classify_exception",
    "error_git_operation",
    "error_internal",
    "set_debug_mode",
    "is_debug_mode",
]
