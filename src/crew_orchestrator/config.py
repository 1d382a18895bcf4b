"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".crew_orchestrator" / "crew.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    worktree_dir: str = ".git-worktrees"
    brain_command: str = "claude"
    brain_model: str = "sonnet"
    brain_timeout: float = 600.0
    git_timeout: float = 60.0
    tool_timeout: float = 300.0
    cycle_interval: float = 10.0
    stuck_task_hours: float = 2.0
    lint_command: str = "ruff check"
    typecheck_command: str = "mypy"
    test_command: str = "pytest"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("CREW_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("CREW_REPO_PATH"):
            config.repo_path = Path(repo)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("CREW_SLACK_CHANNEL")

        if wt_dir := os.environ.get("CREW_WORKTREE_DIR"):
            config.worktree_dir = wt_dir

        if brain := os.environ.get("CREW_BRAIN_COMMAND"):
            config.brain_command = brain

        if model := os.environ.get("CREW_BRAIN_MODEL"):
            config.brain_model = model

        if timeout := os.environ.get("CREW_BRAIN_TIMEOUT"):
            config.brain_timeout = float(timeout)

        if timeout := os.environ.get("CREW_GIT_TIMEOUT"):
            config.git_timeout = float(timeout)

        if timeout := os.environ.get("CREW_TOOL_TIMEOUT"):
            config.tool_timeout = float(timeout)

        if interval := os.environ.get("CREW_CYCLE_INTERVAL"):
            config.cycle_interval = float(interval)

        if hours := os.environ.get("CREW_STUCK_TASK_HOURS"):
            config.stuck_task_hours = float(hours)

        if cmd := os.environ.get("CREW_LINT_CMD"):
            config.lint_command = cmd

        if cmd := os.environ.get("CREW_TYPECHECK_CMD"):
            config.typecheck_command = cmd

        if cmd := os.environ.get("CREW_TEST_CMD"):
            config.test_command = cmd

        if level := os.environ.get("CREW_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
