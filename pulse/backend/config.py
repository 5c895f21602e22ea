"""Application configuration using pydantic-settings."""

import os
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    GITHUB_TOKEN: str = ""
    GITHUB_ORG: str = ""
    GITHUB_API_URL: str = "https://api.github.com/graphql"
    ANTHROPIC_API_KEY: str = ""
    MENTION_CLASSIFIER_MODEL: str = "sonnet"
    DB_PATH: str = str(Path(__file__).parent / "pulse.db")
    LOG_DIR: str = str(Path(__file__).parent / "logs")
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    SYNC_INTERVAL_MINUTES: int = 60
    TODO_PROJECT_NAME: str = ""
    TIMEZONE: str = "UTC"
    HOLIDAYS: str = ""  # comma-separated YYYY-MM-DD
    ALLOWED_BOT_LOGINS: str = ""  # comma-separated
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def holiday_list(self) -> list[str]:
        return [h.strip() for h in self.HOLIDAYS.split(",") if h.strip()]

    @property
    def allowed_bot_logins(self) -> set[str]:
        return {b.strip().lower() for b in self.ALLOWED_BOT_LOGINS.split(",") if b.strip()}


settings = Settings()

# Ensure log directory exists
os.makedirs(settings.LOG_DIR, exist_ok=True)
