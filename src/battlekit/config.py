"""Configuration for battlekit.

Configuration is stored at <working_dir>/.battlekit/config.toml and organized
into sections.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (.battlekit/config.toml, or $BATTLEKIT_CONFIG)
3. Defaults (lowest)

Sections:
    [battle]     - Battle loop settings (iterations, mode, feedback loops, commits)
    [retention]  - Checkpoint retention policy

Example:
    from battlekit.config import load_config

    config = load_config(Path("."))
    print(config.battle.auto_commit)
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Literal

import tomli_w
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".battlekit"
DEFAULT_CONFIG_FILE = "config.toml"

DEFAULT_FEEDBACK_COMMANDS: dict[str, str] = {
    "test": "pytest",
    "lint": "ruff check .",
    "typecheck": "mypy .",
    "format": "ruff format .",
    "format:check": "ruff format --check .",
}


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class BattleConfig:
    """Battle loop settings.

    Attributes:
        max_iterations_per_task: Iterations allowed before the battle fails.
        mode: "hitl" pauses after each iteration for approval, "yolo" runs unattended.
        feedback_loops: Feedback loops run after each iteration.
        timeout_minutes: Timeout for a single iteration.
        polling_interval_ms: Interval for polling agent progress.
        auto_commit: Commit after each iteration. Selects commit-backed
            checkpoints when true, patch-backed otherwise.
        feedback_commands: Shell command for each named loop. Loops without an
            entry are run as-is.
        agent_command: Executable of the coding agent.
    """

    max_iterations_per_task: int = 10
    mode: str = "hitl"
    feedback_loops: list[str] = field(default_factory=lambda: ["test", "lint", "typecheck"])
    timeout_minutes: int = 30
    polling_interval_ms: int = 2000
    auto_commit: bool = True
    feedback_commands: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_FEEDBACK_COMMANDS)
    )
    agent_command: str = "claude"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BattleConfig:
        """Create from dictionary."""
        defaults = cls()
        return cls(
            max_iterations_per_task=int(
                data.get("max_iterations_per_task", defaults.max_iterations_per_task)
            ),
            mode=data.get("mode", defaults.mode),
            feedback_loops=list(data.get("feedback_loops", defaults.feedback_loops)),
            timeout_minutes=int(data.get("timeout_minutes", defaults.timeout_minutes)),
            polling_interval_ms=int(
                data.get("polling_interval_ms", defaults.polling_interval_ms)
            ),
            auto_commit=bool(data.get("auto_commit", defaults.auto_commit)),
            feedback_commands={
                **defaults.feedback_commands,
                **data.get("feedback_commands", {}),
            },
            agent_command=data.get("agent_command", defaults.agent_command),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    def loop_command(self, loop: str) -> str:
        """Full shell command for a feedback loop."""
        return self.feedback_commands.get(loop, loop)


@dataclass
class RetentionSettings:
    """Checkpoint retention settings.

    Attributes:
        max_checkpoints: Newest checkpoints always kept.
        max_age_days: Checkpoints beyond the count limit older than this are evicted.
        keep_failed: Keep checkpoints whose feedback loops failed.
        keep_successful: Keep checkpoints whose feedback loops all passed.
    """

    max_checkpoints: int = 10
    max_age_days: float = 7.0
    keep_failed: bool = True
    keep_successful: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetentionSettings:
        """Create from dictionary."""
        return cls(
            max_checkpoints=int(data.get("max_checkpoints", 10)),
            max_age_days=float(data.get("max_age_days", 7.0)),
            keep_failed=bool(data.get("keep_failed", True)),
            keep_successful=bool(data.get("keep_successful", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @property
    def max_age(self) -> timedelta:
        return timedelta(days=self.max_age_days)


@dataclass
class BattlekitConfig:
    """Main configuration container."""

    battle: BattleConfig = field(default_factory=BattleConfig)
    retention: RetentionSettings = field(default_factory=RetentionSettings)

    # Metadata
    config_path: Path | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BattlekitConfig:
        """Create configuration from dictionary."""
        return cls(
            battle=BattleConfig.from_dict(data.get("battle", {})),
            retention=RetentionSettings.from_dict(data.get("retention", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "battle": self.battle.to_dict(),
            "retention": self.retention.to_dict(),
        }

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if value := os.environ.get("BATTLEKIT_AUTO_COMMIT"):
            self.battle.auto_commit = value.strip().lower() in ("1", "true", "yes", "on")
        if value := os.environ.get("BATTLEKIT_TIMEOUT_MINUTES"):
            self.battle.timeout_minutes = int(value)
        if value := os.environ.get("BATTLEKIT_MAX_ITERATIONS"):
            self.battle.max_iterations_per_task = int(value)
        if value := os.environ.get("BATTLEKIT_MODE"):
            self.battle.mode = value.strip().lower()


# =============================================================================
# Validation
# =============================================================================


class BattleConfigSchema(BaseModel):
    """Validation schema for BattleConfig values."""

    max_iterations_per_task: int = Field(ge=1, le=100)
    mode: Literal["hitl", "yolo"]
    feedback_loops: list[str]
    timeout_minutes: int = Field(ge=1, le=60)
    polling_interval_ms: int = Field(ge=500, le=10000)
    auto_commit: bool
    feedback_commands: dict[str, str] = Field(default_factory=dict)
    agent_command: str = Field(min_length=1)


def validate_battle_config(config: BattleConfig) -> list[str]:
    """Validate a battle configuration.

    Returns:
        List of "field: message" errors, empty when valid.
    """
    try:
        BattleConfigSchema.model_validate(config.to_dict())
    except ValidationError as e:
        return [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
    return []


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path(working_dir: Path) -> Path:
    """Get the path to the configuration file for a working directory."""
    if custom_path := os.environ.get("BATTLEKIT_CONFIG"):
        return Path(custom_path)
    return working_dir / STATE_DIR_NAME / DEFAULT_CONFIG_FILE


def load_config(working_dir: Path, config_path: Path | None = None) -> BattlekitConfig:
    """Load configuration from TOML file.

    A missing file yields defaults. An unreadable file is logged and also
    yields defaults.

    Args:
        working_dir: Repository the battle runs in.
        config_path: Path to config file. Uses default if not specified.

    Returns:
        BattlekitConfig with settings from file and environment.
    """
    path = config_path or get_config_path(working_dir)

    config = BattlekitConfig()
    config.config_path = path

    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            config = BattlekitConfig.from_dict(data)
            config.config_path = path
            config.last_modified = datetime.fromtimestamp(path.stat().st_mtime)

        except (OSError, tomllib.TOMLDecodeError, ValueError, TypeError) as e:
            logger.error(f"Failed to load config from {path}: {e}")
            config = BattlekitConfig()
            config.config_path = path

    config.apply_env_overrides()

    return config


def save_config(config: BattlekitConfig, config_path: Path | None = None) -> Path:
    """Save configuration to TOML file.

    Returns:
        Path the configuration was written to.
    """
    path = config_path or config.config_path
    if path is None:
        raise ValueError("No config path given and configuration has no config_path")

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        tomli_w.dump(config.to_dict(), f)

    config.config_path = path
    config.last_modified = datetime.now()
    logger.info(f"Saved config to {path}")
    return path
