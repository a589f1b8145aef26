"""Task risk assessment for the task_complexity check."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from ..models import Task

RiskLevel = Literal["low", "medium", "high"]

LONG_DESCRIPTION_CHARS = 500
MANY_CRITERIA = 5

COMPLEX_KEYWORDS = (
    "refactor",
    "migration",
    "security",
    "authentication",
    "database",
    "api",
    "integration",
)


class TaskRiskFactor(BaseModel):
    name: str
    description: str
    weight: int


class TaskRisk(BaseModel):
    level: RiskLevel
    recommendation: str
    factors: list[TaskRiskFactor]


def assess_task_risk(task: Task) -> TaskRisk:
    """Score how many iterations and how much supervision a task is likely to need."""
    factors: list[TaskRiskFactor] = []

    if len(task.description) > LONG_DESCRIPTION_CHARS:
        factors.append(
            TaskRiskFactor(
                name="Long description",
                description="Task has a detailed description which may indicate complexity",
                weight=1,
            )
        )

    criteria_count = len(task.acceptance_criteria)
    if criteria_count > MANY_CRITERIA:
        factors.append(
            TaskRiskFactor(
                name="Many acceptance criteria",
                description=f"{criteria_count} criteria to satisfy",
                weight=2,
            )
        )
    elif criteria_count == 0:
        factors.append(
            TaskRiskFactor(
                name="No acceptance criteria",
                description="Success conditions are unclear",
                weight=0,
            )
        )

    description = task.description.lower()
    if any(keyword in description for keyword in COMPLEX_KEYWORDS):
        factors.append(
            TaskRiskFactor(
                name="Complex domain",
                description="Task involves areas that often require multiple iterations",
                weight=2,
            )
        )

    score = sum(f.weight for f in factors)

    if score >= 4:
        return TaskRisk(
            level="high",
            recommendation="Human oversight recommended: supervise each iteration and narrow the scope",
            factors=factors,
        )
    if score >= 2:
        return TaskRisk(
            level="medium",
            recommendation="Human-in-the-loop mode recommended",
            factors=factors,
        )
    return TaskRisk(
        level="low",
        recommendation="Autonomous execution suitable",
        factors=factors
        or [TaskRiskFactor(name="Well-scoped", description="Task appears manageable", weight=0)],
    )
