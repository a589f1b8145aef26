"""Checkpoint retention policy.

Decides which checkpoints of a battle to keep. The newest ``max_checkpoints``
are always kept. Older ones are evicted once they exceed ``max_age``, and
below that age survive only if their feedback outcome is one the policy
wants to keep.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ..config import RetentionSettings
from ..models import parse_timestamp
from .checkpoints import Checkpoint


@dataclass(frozen=True)
class CheckpointRetentionPolicy:
    """Retention policy for checkpoint cleanup."""

    max_checkpoints: int = 10
    max_age: timedelta = timedelta(days=7)
    keep_failed: bool = True
    keep_successful: bool = True

    @classmethod
    def from_settings(cls, settings: RetentionSettings) -> CheckpointRetentionPolicy:
        """Build a policy from the [retention] config section."""
        return cls(
            max_checkpoints=settings.max_checkpoints,
            max_age=settings.max_age,
            keep_failed=settings.keep_failed,
            keep_successful=settings.keep_successful,
        )


DEFAULT_RETENTION_POLICY = CheckpointRetentionPolicy()


def _has_failures(checkpoint: Checkpoint) -> bool:
    return any(not result.passed for result in checkpoint.feedback_results.values())


def _all_passed(checkpoint: Checkpoint) -> bool:
    return all(result.passed for result in checkpoint.feedback_results.values())


def cleanup_checkpoints(
    checkpoints: list[Checkpoint],
    policy: CheckpointRetentionPolicy = DEFAULT_RETENTION_POLICY,
    now: datetime | None = None,
) -> list[Checkpoint]:
    """Apply the retention policy.

    Args:
        checkpoints: Checkpoints of one battle, in any order.
        policy: Retention policy.
        now: Reference time for age checks. Defaults to the current time.

    Returns:
        Checkpoints to keep, newest first.
    """
    now = now or datetime.now(timezone.utc)
    ordered = sorted(checkpoints, key=lambda cp: parse_timestamp(cp.timestamp), reverse=True)

    kept: list[Checkpoint] = []
    for index, checkpoint in enumerate(ordered):
        if index < policy.max_checkpoints:
            kept.append(checkpoint)
            continue

        if now - parse_timestamp(checkpoint.timestamp) > policy.max_age:
            continue

        if policy.keep_failed and _has_failures(checkpoint):
            kept.append(checkpoint)
        elif policy.keep_successful and _all_passed(checkpoint):
            kept.append(checkpoint)

    return kept


def get_checkpoints_to_remove(
    checkpoints: list[Checkpoint],
    policy: CheckpointRetentionPolicy = DEFAULT_RETENTION_POLICY,
    now: datetime | None = None,
) -> list[str]:
    """IDs of the checkpoints the policy evicts."""
    kept_ids = {cp.id for cp in cleanup_checkpoints(checkpoints, policy, now)}
    return [cp.id for cp in checkpoints if cp.id not in kept_ids]
