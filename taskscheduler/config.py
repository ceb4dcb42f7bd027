"""Application settings loaded from environment variables."""

import os
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Scheduler configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/scheduler.db"))
    # Log every SQL statement at DEBUG (development only)
    database_trace: bool = Field(default=False)

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    tick_interval_seconds: float = Field(default=5.0)
    due_batch_limit: int = Field(default=100)
    max_concurrent_executions: int = Field(default=4)
    execution_timeout_seconds: float | None = Field(default=None)
    # Only safe when a single scheduler process uses the database
    recover_interrupted_on_start: bool = Field(default=False)

    # Retry policy
    max_attempts: int = Field(default=3)
    retry_base_delay_seconds: float = Field(default=30.0)
    retry_max_delay_seconds: float = Field(default=3600.0)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @field_validator(
        "tick_interval_seconds",
        "due_batch_limit",
        "max_concurrent_executions",
        "max_attempts",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            msg = "must be greater than zero"
            raise ValueError(msg)
        return value

    @field_validator("retry_base_delay_seconds", "retry_max_delay_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            msg = "must not be negative"
            raise ValueError(msg)
        return value

    @field_validator("execution_timeout_seconds")
    @classmethod
    def _timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            msg = "must be greater than zero when set"
            raise ValueError(msg)
        return value

    @field_validator("log_level")
    @classmethod
    def _log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            msg = f"unknown log level: {value}"
            raise ValueError(msg)
        return level


settings = Settings()
