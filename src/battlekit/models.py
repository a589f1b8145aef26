"""Battle, iteration and task records consumed by the recovery subsystem.

These are the history records owned by the caller. battlekit reads them to
plan retries and produces fresh iteration shells, but never persists them.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class TaskStatus(str, Enum):
    PENDING = "pending"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class BattleStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


IterationResult = Literal["pending", "success", "failure", "timeout", "cancelled"]


class FeedbackResult(BaseModel):
    """Outcome of one feedback loop (test, lint, typecheck...) after an iteration."""

    passed: bool
    output: str = ""
    duration: float | None = None


FeedbackResults = dict[str, FeedbackResult]


class Iteration(BaseModel):
    """A single agent attempt within a battle."""

    number: int
    started_at: str = Field(default_factory=utc_now)
    ended_at: str | None = None
    output: str = ""
    result: IterationResult = "pending"
    files_changed: list[str] = Field(default_factory=list)
    commit_hash: str | None = None
    error: str | None = None
    feedback_results: FeedbackResults | None = None
    retry_count: int | None = None


class Battle(BaseModel):
    """One end-to-end execution of a task through repeated iterations."""

    task_id: str
    status: BattleStatus = BattleStatus.PENDING
    iterations: list[Iteration] = Field(default_factory=list)
    started_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None
    duration_ms: int | None = None
    error: str | None = None


class Task(BaseModel):
    """A unit of work the agent battles through."""

    id: str
    title: str
    description: str
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 1
    acceptance_criteria: list[str] = Field(default_factory=list)
    iterations: list[Iteration] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)
