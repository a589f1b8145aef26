"""Tests for task risk assessment."""

from __future__ import annotations

import pytest

from battlekit.models import Task
from battlekit.preflight.risk import assess_task_risk


def make_task(description: str = "Fix typo in footer", criteria: int = 1) -> Task:
    return Task(
        id="task-1",
        title="Task",
        description=description,
        acceptance_criteria=[f"criterion {i}" for i in range(criteria)],
    )


class TestAssessTaskRisk:
    def test_simple_task_is_low(self):
        risk = assess_task_risk(make_task())
        assert risk.level == "low"
        assert risk.recommendation == "Autonomous execution suitable"
        assert [f.name for f in risk.factors] == ["Well-scoped"]

    def test_missing_criteria_alone_is_low(self):
        risk = assess_task_risk(make_task(criteria=0))
        assert risk.level == "low"
        assert [f.name for f in risk.factors] == ["No acceptance criteria"]

    def test_complex_domain_is_medium(self):
        risk = assess_task_risk(make_task("Add a database index"))
        assert risk.level == "medium"
        assert risk.recommendation == "Human-in-the-loop mode recommended"

    def test_many_criteria_and_keywords_is_high(self):
        risk = assess_task_risk(make_task("Refactor the authentication flow", criteria=6))
        assert risk.level == "high"
        assert risk.recommendation.startswith("Human oversight recommended")
        assert {f.name for f in risk.factors} == {"Many acceptance criteria", "Complex domain"}

    def test_long_description_counts(self):
        risk = assess_task_risk(make_task("x" * 501, criteria=0))
        assert risk.level == "low"
        assert sum(f.weight for f in risk.factors) == 1

    def test_long_complex_description_is_high(self):
        risk = assess_task_risk(make_task("Refactor the database layer " + "x" * 500))
        assert risk.level == "high"


LEVELS = {"low": 0, "medium": 1, "high": 2}


class TestRiskMonotonicity:
    @pytest.mark.parametrize(
        "description",
        [
            "Fix typo in footer",
            "Add a database index",
            "x" * 501,
            "Refactor the database layer " + "x" * 500,
        ],
    )
    def test_more_criteria_never_lowers_level(self, description):
        levels = [LEVELS[assess_task_risk(make_task(description, n)).level] for n in range(9)]
        assert levels == sorted(levels)

    @pytest.mark.parametrize("criteria", [0, 1, 3, 6])
    def test_longer_description_never_lowers_level(self, criteria):
        short = assess_task_risk(make_task("Add a database index", criteria))
        long = assess_task_risk(make_task("Add a database index " + "x" * 500, criteria))
        assert LEVELS[long.level] >= LEVELS[short.level]

    @pytest.mark.parametrize("criteria", [0, 1, 3, 6])
    def test_complex_keywords_never_lower_level(self, criteria):
        plain = assess_task_risk(make_task("Update the footer copy", criteria))
        complex_ = assess_task_risk(make_task("Update the footer copy and api", criteria))
        assert LEVELS[complex_.level] >= LEVELS[plain.level]
