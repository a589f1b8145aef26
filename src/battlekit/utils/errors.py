"""Error types and error display utilities for battlekit.

Provides:
- The exception hierarchy raised by the recovery subsystem
- Consistent, human-friendly CLI error formatting with suggested fixes
- Hidden stack traces (unless debug mode)
"""

from __future__ import annotations

import os
import sys
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by BATTLEKIT_DEBUG=1 or --debug flag
_debug_mode = os.environ.get("BATTLEKIT_DEBUG", "0") == "1"


# =============================================================================
# Exceptions
# =============================================================================


class BattlekitError(Exception):
    """Base class for errors raised by battlekit."""


class CheckpointError(BattlekitError):
    """A checkpoint could not be created or restored.

    Structural problems (a required field missing) use fixed messages that
    callers may match on, e.g. "Commit-based checkpoint missing commitHash".
    """


class GitCommandError(CheckpointError):
    """A git command exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.command = ["git", *args]
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"git {' '.join(args)} failed with exit code {returncode}: {self.stderr}"
        )


class SessionNotFoundError(BattlekitError, KeyError):
    """No manual-fix session exists with the given ID."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Manual fix session not found: {session_id}")

    def __str__(self) -> str:
        return self.args[0]


class FixNotVerifiedError(BattlekitError):
    """A manual-fix session was completed before its fix was verified."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Cannot complete session {session_id}: fix not verified")


class PreflightTokenError(BattlekitError):
    """A preflight token was missing, malformed, expired or issued for another task."""


# =============================================================================
# Error display
# =============================================================================


class ErrorCategory(str, Enum):
    """Categories of errors for consistent formatting."""

    CONFIG = "config"  # Configuration errors
    FILE = "file"  # File not found, permission errors
    GIT = "git"  # Git operation errors
    CHECKPOINT = "checkpoint"  # Checkpoint create/restore errors
    SESSION = "session"  # Manual fix session errors
    PREFLIGHT = "preflight"  # Preflight gate errors
    INTERNAL = "internal"  # Internal/unexpected errors


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    category: ErrorCategory
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Format and display an error with consistent styling.

    Args:
        error: Structured error information
        console: Rich console for output
    """
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    # Long details only in debug mode
    if error.details:
        if is_debug_mode() or len(error.details) < 200:
            console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if is_debug_mode() and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not is_debug_mode() and error.original_error:
        console.print()
        console.print("[dim]Set BATTLEKIT_DEBUG=1 or use --debug for more details[/dim]")


def error_git_operation(
    operation: str, message: str, original: Exception | None = None
) -> ErrorInfo:
    """Create error info for git operation errors.

    Args:
        operation: The git operation that failed
        message: Error message from git
        original: Original exception if available
    """
    suggestion = "Check git status and ensure the working directory is a repository"
    if "stash" in operation.lower():
        suggestion = "Run 'git stash list' to find your changes"
    elif "apply" in operation.lower() or "restore" in operation.lower():
        suggestion = "Resolve conflicting local changes, then retry the restore"

    return ErrorInfo(
        message=f"Git {operation} failed: {message}",
        category=ErrorCategory.GIT,
        suggestion=suggestion,
        original_error=original,
    )


def error_internal(message: str, original: Exception | None = None) -> ErrorInfo:
    """Create error info for internal/unexpected errors."""
    return ErrorInfo(
        message=f"Internal error: {message}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug. Re-run with --debug and report the stack trace",
        original_error=original,
    )


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo.

    Args:
        exception: The exception to classify
        context: Description of what was being done

    Returns:
        ErrorInfo with appropriate categorization
    """
    if isinstance(exception, GitCommandError):
        return error_git_operation(context, exception.stderr or str(exception), exception)

    if isinstance(exception, CheckpointError):
        return ErrorInfo(
            message=f"Checkpoint {context} failed: {exception}",
            category=ErrorCategory.CHECKPOINT,
            suggestion="Validate the checkpoint record and the repository state",
            original_error=exception,
        )

    if isinstance(exception, SessionNotFoundError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.SESSION,
            suggestion="The session may already have been completed or aborted",
            original_error=exception,
        )

    if isinstance(exception, FixNotVerifiedError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.SESSION,
            suggestion="Run the feedback loops and record their results before completing",
            original_error=exception,
        )

    if isinstance(exception, PreflightTokenError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.PREFLIGHT,
            suggestion="Run preflight again; tokens are valid for 5 minutes",
            original_error=exception,
        )

    if isinstance(exception, FileNotFoundError):
        return ErrorInfo(
            message=f"File not found: {exception.filename or exception}",
            category=ErrorCategory.FILE,
            suggestion="Check the path and ensure the file exists",
            original_error=exception,
        )

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    return error_internal(f"{context}: {exception}", exception)


def handle_exception(
    console: Console,
    exception: Exception,
    context: str = "operation",
    exit_code: int = 1,
    exit_on_error: bool = True,
) -> ErrorInfo:
    """Display a formatted error for an exception, optionally exiting.

    Returns:
        ErrorInfo for the error (useful if not exiting)
    """
    error = classify_exception(exception, context)
    format_error(error, console)

    if exit_on_error:
        sys.exit(exit_code)

    return error
