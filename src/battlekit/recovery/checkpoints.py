"""Checkpoint system for rolling a battle back to an earlier iteration.

A checkpoint is a reversible snapshot of the working directory taken after
an iteration. Two storage backends exist:
- CommitCheckpointStorage: Points at a git commit (used with auto_commit)
- PatchCheckpointStorage: Stores a binary diff against a base commit, so the
  user's history is never touched

Checkpoint operations run git in the working directory and are not locked.
Callers must serialize them per working directory.
"""

from __future__ import annotations

import base64
import logging
import secrets
import string
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .. import git
from ..config import STATE_DIR_NAME, BattleConfig
from ..models import FeedbackResults, Iteration, utc_now
from ..preflight.tokens import validate_preflight_token
from ..utils.errors import CheckpointError, PreflightTokenError

logger = logging.getLogger(__name__)

CheckpointStorageType = Literal["commit", "patch"]

COMMIT_MESSAGE_PREFIX = "[battlekit]"

_ID_ALPHABET = string.ascii_lowercase + string.digits


class Checkpoint(BaseModel):
    """A saved snapshot of the working directory after an iteration.

    ``after_iteration`` 0 is the baseline taken before the battle started.
    Backend-specific fields are checked by validate_checkpoint and restore
    rather than at construction, so corrupt stored records can be reported.

    ``patch`` holds the raw diff bytes and is base64 text in JSON, so diffs of
    files in any encoding survive a save and load.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    battle_id: str
    after_iteration: int
    storage_type: CheckpointStorageType
    commit_hash: str | None = None
    base_commit_hash: str | None = None
    patch: bytes | None = None
    timestamp: str = Field(default_factory=utc_now)
    description: str = ""
    files: list[str] = Field(default_factory=list)
    feedback_results: FeedbackResults = Field(default_factory=dict)

    @field_validator("patch", mode="before")
    @classmethod
    def _decode_patch(cls, value: object) -> object:
        if isinstance(value, str):
            return base64.b64decode(value, validate=True)
        return value

    @field_serializer("patch", when_used="json")
    def _encode_patch(self, value: bytes | None) -> str | None:
        if value is None:
            return None
        return base64.b64encode(value).decode("ascii")


class CheckpointValidation(BaseModel):
    """Result of a structural checkpoint check."""

    valid: bool
    error: str | None = None


class RollbackResult(BaseModel):
    """Outcome of rolling back to an iteration."""

    success: bool
    restored_to_iteration: int
    checkpoint_id: str
    storage_type: CheckpointStorageType | None = None
    error: str | None = None


def generate_checkpoint_id(existing: Iterable[str] = ()) -> str:
    """Generate a checkpoint ID like ``cp-1718000000000-k3j9x2a``."""
    taken = set(existing)
    while True:
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
        checkpoint_id = f"cp-{int(time.time() * 1000)}-{suffix}"
        if checkpoint_id not in taken:
            return checkpoint_id


def _describe(iteration: Iteration) -> str:
    if iteration.number == 0:
        return "Before battle started"
    return f"After iteration {iteration.number}"


# =============================================================================
# Storage backends
# =============================================================================


class CheckpointStorage(ABC):
    """Base class for checkpoint storage backends."""

    storage_type: CheckpointStorageType

    @abstractmethod
    def create(
        self,
        battle_id: str,
        iteration: Iteration,
        working_dir: Path,
        feedback_results: FeedbackResults,
        existing_checkpoints: Iterable[Checkpoint] = (),
    ) -> Checkpoint:
        """Snapshot the working directory after ``iteration``.

        Args:
            battle_id: Battle the checkpoint belongs to.
            iteration: Iteration just finished.
            working_dir: Repository root.
            feedback_results: Feedback loop outcomes for the iteration.
            existing_checkpoints: Checkpoints already held for the battle.

        Returns:
            The new Checkpoint.
        """
        ...

    @abstractmethod
    def restore(self, checkpoint: Checkpoint, working_dir: Path) -> None:
        """Return the working directory to the checkpoint's state."""
        ...


class CommitCheckpointStorage(CheckpointStorage):
    """Checkpoints backed by git commits."""

    storage_type: CheckpointStorageType = "commit"

    def create(
        self,
        battle_id: str,
        iteration: Iteration,
        working_dir: Path,
        feedback_results: FeedbackResults,
        existing_checkpoints: Iterable[Checkpoint] = (),
    ) -> Checkpoint:
        commit_hash = iteration.commit_hash or self._commit_changes(working_dir, iteration)

        checkpoint = Checkpoint(
            id=generate_checkpoint_id(cp.id for cp in existing_checkpoints),
            battle_id=battle_id,
            after_iteration=iteration.number,
            storage_type="commit",
            commit_hash=commit_hash,
            description=_describe(iteration),
            files=list(iteration.files_changed),
            feedback_results=dict(feedback_results),
        )
        logger.info(
            f"Created commit checkpoint {checkpoint.id} for iteration "
            f"{iteration.number} at {commit_hash[:12]}"
        )
        return checkpoint

    def _commit_changes(self, working_dir: Path, iteration: Iteration) -> str:
        """Commit pending changes, returning the resulting HEAD."""
        git.run_git(["add", "-A", "--", ".", f":(exclude){STATE_DIR_NAME}"], working_dir)
        if git.has_staged_changes(working_dir):
            git.run_git(
                [
                    "commit",
                    "--quiet",
                    "--no-verify",
                    "-m",
                    f"{COMMIT_MESSAGE_PREFIX} checkpoint after iteration {iteration.number}",
                ],
                working_dir,
            )

        head = git.get_head(working_dir)
        if head is None:
            raise CheckpointError("No commit found for checkpoint creation")
        return head

    def restore(self, checkpoint: Checkpoint, working_dir: Path) -> None:
        if not checkpoint.commit_hash:
            raise CheckpointError("Commit-based checkpoint missing commitHash")

        git.reset_hard(working_dir, checkpoint.commit_hash, keep_paths=(STATE_DIR_NAME,))
        logger.info(f"Restored commit checkpoint {checkpoint.id}")


class PatchCheckpointStorage(CheckpointStorage):
    """Checkpoints stored as a diff against a base commit."""

    storage_type: CheckpointStorageType = "patch"

    def create(
        self,
        battle_id: str,
        iteration: Iteration,
        working_dir: Path,
        feedback_results: FeedbackResults,
        existing_checkpoints: Iterable[Checkpoint] = (),
    ) -> Checkpoint:
        base_commit_hash = git.get_head(working_dir)
        if base_commit_hash is None:
            raise CheckpointError("No commit found for checkpoint creation")

        patch = self.generate_patch(working_dir)
        # The baseline never reports files, even over a dirty tree
        if iteration.files_changed or iteration.number == 0:
            files = list(iteration.files_changed)
        else:
            files = [entry.path for entry in git.get_status(working_dir)]

        checkpoint = Checkpoint(
            id=generate_checkpoint_id(cp.id for cp in existing_checkpoints),
            battle_id=battle_id,
            after_iteration=iteration.number,
            storage_type="patch",
            base_commit_hash=base_commit_hash,
            patch=patch,
            description=_describe(iteration),
            files=files,
            feedback_results=dict(feedback_results),
        )
        logger.info(
            f"Created patch checkpoint {checkpoint.id} for iteration "
            f"{iteration.number} ({len(patch)} bytes)"
        )
        return checkpoint

    def generate_patch(self, working_dir: Path) -> bytes:
        """Diff of all tracked and untracked changes against HEAD.

        Untracked files are marked intent-to-add for the duration of the diff
        so they appear as new-file hunks, then the index is restored.
        """
        untracked = [
            path
            for path in git.get_untracked_files(working_dir)
            if path != STATE_DIR_NAME and not path.startswith(f"{STATE_DIR_NAME}/")
        ]

        if untracked:
            git.run_git(["add", "--intent-to-add", "--", *untracked], working_dir)
        try:
            return git.run_git(["diff", "HEAD", "--binary"], working_dir).raw_stdout
        finally:
            if untracked:
                git.run_git(["reset", "--quiet", "--", *untracked], working_dir)

    def restore(self, checkpoint: Checkpoint, working_dir: Path) -> None:
        if not checkpoint.base_commit_hash:
            raise CheckpointError("Patch-based checkpoint missing baseCommitHash")

        git.reset_hard(working_dir, checkpoint.base_commit_hash, keep_paths=(STATE_DIR_NAME,))
        if checkpoint.patch:
            git.run_git(["apply", "--whitespace=nowarn"], working_dir, input=checkpoint.patch)
        logger.info(f"Restored patch checkpoint {checkpoint.id}")


_STORAGES: dict[str, type[CheckpointStorage]] = {
    "commit": CommitCheckpointStorage,
    "patch": PatchCheckpointStorage,
}


def get_checkpoint_storage(config: BattleConfig) -> CheckpointStorage:
    """Commit-backed storage when auto_commit is on, patch-backed otherwise."""
    return CommitCheckpointStorage() if config.auto_commit else PatchCheckpointStorage()


# =============================================================================
# Checkpoint operations
# =============================================================================


def create_checkpoint(
    battle_id: str,
    iteration: Iteration,
    working_dir: Path,
    config: BattleConfig,
    feedback_results: FeedbackResults,
    existing_checkpoints: Iterable[Checkpoint] = (),
) -> Checkpoint:
    """Create a checkpoint with the backend selected by the config."""
    storage = get_checkpoint_storage(config)
    return storage.create(
        battle_id, iteration, Path(working_dir), feedback_results, existing_checkpoints
    )


def restore_checkpoint(checkpoint: Checkpoint, working_dir: Path) -> None:
    """Restore a checkpoint with the backend it was created by.

    Raises:
        CheckpointError: The checkpoint is missing its backend fields.
        GitCommandError: A git command failed.
    """
    storage = _STORAGES[checkpoint.storage_type]()
    storage.restore(checkpoint, Path(working_dir))


def create_initial_checkpoint(
    battle_id: str,
    working_dir: Path,
    config: BattleConfig,
    preflight_token: str | None = None,
    task_id: str | None = None,
) -> Checkpoint:
    """Create the iteration-0 baseline before a battle starts.

    The baseline points at the current HEAD. With patch storage, uncommitted
    changes present at the start are captured too.

    Args:
        battle_id: Battle being started.
        working_dir: Repository root.
        config: Battle configuration.
        preflight_token: Token from a passing preflight run, if required.
        task_id: Task the token was issued for. Defaults to ``battle_id``.

    Raises:
        PreflightTokenError: The token is invalid, expired or for another task.
        CheckpointError: The repository has no commits.
    """
    working_dir = Path(working_dir)

    if preflight_token is not None:
        payload = validate_preflight_token(preflight_token, working_dir=working_dir)
        expected = task_id or battle_id
        if payload is None:
            raise PreflightTokenError("Preflight token is invalid or expired")
        if payload.task_id != expected:
            raise PreflightTokenError(
                f"Preflight token was issued for task {payload.task_id}, not {expected}"
            )

    head = git.get_head(working_dir)
    if head is None:
        raise CheckpointError("Cannot create initial checkpoint: no commits in repository")

    baseline = Iteration(number=0, commit_hash=head)
    return get_checkpoint_storage(config).create(battle_id, baseline, working_dir, {})


def validate_checkpoint(checkpoint: Checkpoint) -> CheckpointValidation:
    """Check that a checkpoint carries what its backend needs to restore."""
    if not checkpoint.id:
        return CheckpointValidation(valid=False, error="Checkpoint missing ID")
    if checkpoint.storage_type == "commit" and not checkpoint.commit_hash:
        return CheckpointValidation(
            valid=False, error="Commit-based checkpoint missing commitHash"
        )
    if checkpoint.storage_type == "patch" and not checkpoint.base_commit_hash:
        return CheckpointValidation(
            valid=False, error="Patch-based checkpoint missing baseCommitHash"
        )
    return CheckpointValidation(valid=True)


def find_checkpoint_by_iteration(
    checkpoints: Iterable[Checkpoint], after_iteration: int
) -> Checkpoint | None:
    """Find the checkpoint taken after a given iteration."""
    for checkpoint in checkpoints:
        if checkpoint.after_iteration == after_iteration:
            return checkpoint
    return None


def get_initial_checkpoint(checkpoints: Iterable[Checkpoint]) -> Checkpoint | None:
    """Find the pre-battle baseline."""
    return find_checkpoint_by_iteration(checkpoints, 0)


def rollback_to_iteration(
    checkpoints: Iterable[Checkpoint],
    target_iteration: int,
    working_dir: Path,
) -> RollbackResult:
    """Restore the checkpoint taken after ``target_iteration``.

    Failures are reported in the result rather than raised.
    """
    checkpoint = find_checkpoint_by_iteration(checkpoints, target_iteration)
    if checkpoint is None:
        return RollbackResult(
            success=False,
            restored_to_iteration=target_iteration,
            checkpoint_id="",
            error=f"No checkpoint found for iteration {target_iteration}",
        )

    validation = validate_checkpoint(checkpoint)
    if not validation.valid:
        return RollbackResult(
            success=False,
            restored_to_iteration=target_iteration,
            checkpoint_id=checkpoint.id,
            storage_type=checkpoint.storage_type,
            error=validation.error,
        )

    try:
        restore_checkpoint(checkpoint, working_dir)
    except (CheckpointError, OSError) as e:
        logger.warning(f"Rollback to iteration {target_iteration} failed: {e}")
        return RollbackResult(
            success=False,
            restored_to_iteration=target_iteration,
            checkpoint_id=checkpoint.id,
            storage_type=checkpoint.storage_type,
            error=str(e),
        )

    return RollbackResult(
        success=True,
        restored_to_iteration=target_iteration,
        checkpoint_id=checkpoint.id,
        storage_type=checkpoint.storage_type,
    )
