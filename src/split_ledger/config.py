"""Configuration management for Split Ledger."""

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SPLIT_LEDGER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Authenticated user for the CLI and MCP server
    current_user: str | None = None

    # Simplified-debt cache refresh: worker thread or synchronous
    debt_refresh: Literal["background", "inline"] = "background"

    # Category applied when an expense is logged without one
    default_category: str = "Other"

    # Database path
    database_path: Path = Path.home() / ".split_ledger" / "split_ledger.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        if str(self.database_path) != ":memory:":
            self.database_path.parent.mkdir(parents=True, exist_ok=True)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check the SPLIT_LEDGER_* variables in "
            f"your environment or .env file.\n"
            f"Error: {e}"
        ) from e
