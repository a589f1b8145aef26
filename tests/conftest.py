"""Shared fixtures: throwaway git repositories."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest


def git(repo: Path, *args: str) -> str:
    """Run git in ``repo`` and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout


def init_repo(path: Path) -> Path:
    """Initialize a repository with a local identity and no commits."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "--quiet")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "commit.gpgsign", "false")
    git(path, "config", "core.autocrlf", "false")
    return path


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep developer environment overrides out of tests."""
    for name in (
        "BATTLEKIT_CONFIG",
        "BATTLEKIT_AUTO_COMMIT",
        "BATTLEKIT_TIMEOUT_MINUTES",
        "BATTLEKIT_MAX_ITERATIONS",
        "BATTLEKIT_MODE",
        "BATTLEKIT_DEBUG",
        "BATTLEKIT_PREFLIGHT_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def empty_repo(tmp_path: Path) -> Path:
    """A git repository without commits."""
    return init_repo(tmp_path / "repo")


@pytest.fixture
def repo(empty_repo: Path) -> Path:
    """A git repository with one commit of README.md and src/app.py."""
    (empty_repo / "README.md").write_text("# Project\n")
    (empty_repo / "src").mkdir()
    (empty_repo / "src" / "app.py").write_text("print('hello')\n")
    git(empty_repo, "add", "-A")
    git(empty_repo, "commit", "--quiet", "-m", "Initial commit")
    return empty_repo
