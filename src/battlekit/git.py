"""Synchronous git capability used by checkpoints and preflight.

Every operation is a blocking ``git`` subprocess with captured output and
exit status. No locking is done here: callers serialize operations per
working directory.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .utils.errors import GitCommandError

logger = logging.getLogger(__name__)

ENCODING = "utf-8"


@dataclass
class GitResult:
    """Captured result of a git command."""

    returncode: int
    stdout: str
    stderr: str
    raw_stdout: bytes = b""

    @property
    def success(self) -> bool:
        return self.returncode == 0


@dataclass
class StatusEntry:
    """One path from ``git status --porcelain``."""

    index: str  # X column
    worktree: str  # Y column
    path: str

    @property
    def untracked(self) -> bool:
        return self.index == "?" and self.worktree == "?"

    @property
    def conflicted(self) -> bool:
        return "U" in (self.index + self.worktree) or (self.index + self.worktree) in ("AA", "DD")


def run_git(
    args: list[str],
    cwd: Path | str,
    input: str | bytes | None = None,
    check: bool = True,
) -> GitResult:
    """Run a git command in ``cwd``.

    Args:
        args: Arguments after ``git``.
        cwd: Working directory.
        input: Text or raw bytes fed to stdin.
        check: Raise GitCommandError on a non-zero exit.

    Returns:
        GitResult with decoded output. ``raw_stdout`` keeps the undecoded bytes.
    """
    logger.debug(f"git {' '.join(args)} (cwd={cwd})")
    if isinstance(input, str):
        input = input.encode(ENCODING, "surrogateescape")
    # Bytes on the pipe so patches keep CRLF and non-UTF-8 content intact
    completed = subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        input=input,
        capture_output=True,
    )
    result = GitResult(
        completed.returncode,
        completed.stdout.decode(ENCODING, "surrogateescape"),
        completed.stderr.decode(ENCODING, "replace"),
        completed.stdout,
    )
    if check and not result.success:
        raise GitCommandError(args, result.returncode, result.stderr)
    return result


def is_repo(cwd: Path | str) -> bool:
    """Check whether ``cwd`` is inside a git work tree."""
    try:
        result = run_git(["rev-parse", "--is-inside-work-tree"], cwd, check=False)
    except (FileNotFoundError, NotADirectoryError):
        return False
    return result.success and result.stdout.strip() == "true"


def get_head(cwd: Path | str) -> str | None:
    """Full hash of HEAD, or None when the repository has no commits."""
    result = run_git(["rev-parse", "--verify", "--quiet", "HEAD"], cwd, check=False)
    if not result.success:
        return None
    return result.stdout.strip() or None


def get_current_branch(cwd: Path | str) -> str | None:
    """Checked-out branch name, or None when detached."""
    result = run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd, check=False)
    if not result.success:
        return None
    return result.stdout.strip() or None


def get_status(cwd: Path | str) -> list[StatusEntry]:
    """Parse ``git status --porcelain -z`` into entries."""
    result = run_git(["status", "--porcelain=v1", "-z", "--untracked-files=all"], cwd)
    entries: list[StatusEntry] = []
    fields = result.stdout.split("\0")
    i = 0
    while i < len(fields):
        item = fields[i]
        i += 1
        if len(item) < 4:
            continue
        index, worktree, path = item[0], item[1], item[3:]
        if index in ("R", "C"):
            # Renames and copies carry the original path in the next field
            i += 1
        entries.append(StatusEntry(index=index, worktree=worktree, path=path))
    return entries


def get_untracked_files(cwd: Path | str) -> list[str]:
    """Untracked, non-ignored files."""
    result = run_git(["ls-files", "--others", "--exclude-standard", "-z"], cwd)
    return [f for f in result.stdout.split("\0") if f]


def has_staged_changes(cwd: Path | str) -> bool:
    """Check whether the index differs from HEAD."""
    result = run_git(["diff", "--cached", "--quiet"], cwd, check=False)
    return result.returncode != 0


def reset_hard(cwd: Path | str, commit: str, keep_paths: tuple[str, ...] = ()) -> None:
    """Reset tracked files to ``commit`` and drop untracked, non-ignored files.

    Args:
        cwd: Working directory.
        commit: Target commit.
        keep_paths: Untracked paths that must survive the clean.
    """
    run_git(["reset", "--hard", "--quiet", commit], cwd)
    clean_args = ["clean", "-fd", "--quiet"]
    for path in keep_paths:
        clean_args.extend(["-e", path])
    run_git(clean_args, cwd)
