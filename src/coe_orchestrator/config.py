"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".coe" / "tickets.db")
    stall_timeout_seconds: float = 30
    max_retries: int = 3
    answer_timeout_seconds: float = 45
    auto_mode: bool = False
    diagnostics_path: Path = field(
        default_factory=lambda: Path.cwd() / ".vscode" / "quality-diagnostics.json"
    )
    agent_model: str = "sonnet"
    log_level: str = "INFO"
    slack_bot_token: str | None = None
    slack_channel: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("COE_DB_PATH"):
            config.db_path = Path(db)

        if stall := os.environ.get("COE_STALL_TIMEOUT_SECONDS"):
            config.stall_timeout_seconds = float(stall)

        if retries := os.environ.get("COE_MAX_RETRIES"):
            config.max_retries = int(retries)

        if answer := os.environ.get("COE_ANSWER_TIMEOUT_SECONDS"):
            config.answer_timeout_seconds = float(answer)

        if mode := os.environ.get("COE_AUTO_MODE"):
            config.auto_mode = mode.strip().lower() in _TRUTHY

        if diag := os.environ.get("COE_DIAGNOSTICS_PATH"):
            config.diagnostics_path = Path(diag)

        if model := os.environ.get("COE_AGENT_MODEL"):
            config.agent_model = model

        if level := os.environ.get("COE_LOG_LEVEL"):
            config.log_level = level.upper()

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("COE_SLACK_CHANNEL")

        return config


def get_config() -> Config:
    return Config.from_env()
