"""
Configuration management using Pydantic Settings.
Loads environment variables and provides type-safe configuration access.
"""

from pathlib import Path
from shutil import copyfile

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def ensure_env_file() -> None:
    """
    Ensure .env file exists. If not, create it from .env.example.
    Skips silently when the file already exists or the directory is read-only
    (Docker deployments usually inject variables through env_file instead).
    """
    env_path = Path(".env")

    if env_path.exists():
        try:
            env_path.read_text(encoding="utf-8")
            logger.debug(".env file already exists and is readable")
            return
        except PermissionError:
            logger.warning(".env file exists but is not readable, skipping auto-creation")
            return

    possible_paths = [
        Path(".env.example"),
        Path(__file__).parent.parent.parent / ".env.example",
        Path("/app/.env.example"),
    ]

    env_example_path = next((path for path in possible_paths if path.exists()), None)
    if env_example_path is None:
        logger.debug(f".env.example not found, searched: {[str(p) for p in possible_paths]}")
        return

    try:
        copyfile(env_example_path, env_path)
        logger.info(f"Created .env file from {env_example_path} at {env_path.absolute()}")
        logger.info("Please edit .env file with your actual configuration values")
    except PermissionError:
        logger.debug("Permission denied creating .env file (likely provided via env_file)")
    except OSError as e:
        logger.warning(f"Failed to create .env file from .env.example: {e}")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    All configuration values are type-safe and validated.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Mail provider (Gmail IMAP)
    GMAIL_USER: str = Field(default="", description="Gmail account used by the IMAP provider")
    GMAIL_APP_PASSWORD: str = Field(default="", description="Gmail App Password for IMAP access")
    IMAP_SERVER: str = Field(default="imap.gmail.com", description="IMAP host")
    GMAIL_FOLDER: str = Field(default="INBOX", description="Folder to fetch messages from")

    # LLM Configuration
    OPENAI_API_KEY: str = Field(default="", description="OpenAI API key (or compatible service)")
    OPENAI_BASE_URL: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI API base URL (change for Groq, DeepSeek, etc.)",
    )
    LLM_PROVIDER_NAME: str = Field(
        default="openai",
        description="Provider label recorded in digest metadata",
    )
    LLM_MODEL_NAME: str = Field(default="gpt-4o-mini", description="LLM model name")
    LLM_TEMPERATURE: float = Field(
        default=0.1,
        description="Low temperature keeps summaries consistent",
        ge=0.0,
        le=2.0,
    )
    LLM_MAX_TOKENS: int = Field(default=2000, description="Maximum tokens for LLM response", gt=0)
    LLM_TIMEOUT_SECONDS: int = Field(default=60, description="Per-request LLM timeout", gt=0)
    LLM_MAX_RETRIES: int = Field(
        default=3,
        description="Attempts for transient LLM errors (connection, timeout, rate limit)",
        gt=0,
        le=10,
    )

    # Prompt Configuration
    PROMPT_EMAIL_PATH: str = Field(
        default="./prompts/email_summary.txt",
        description="Path to the individual email summary prompt",
    )
    PROMPT_DIGEST_PATH: str = Field(
        default="./prompts/daily_digest.txt",
        description="Path to the daily digest prompt",
    )

    # Storage
    DATA_DIR: str = Field(
        default="./data",
        description="Directory for the SQLite database. In Docker set to /app/data so the volume persists.",
    )

    # Pipeline
    DAILY_MAX_RESULTS: int = Field(default=50, description="Messages fetched per daily run", gt=0, le=500)
    ON_DEMAND_MAX_RESULTS: int = Field(default=10, description="Messages fetched per on-demand run", gt=0, le=100)
    ON_DEMAND_LOOKBACK_HOURS: int = Field(default=6, description="Lookback window of on-demand runs", gt=0)
    SUMMARY_BATCH_SIZE: int = Field(default=10, description="Concurrent summarization calls per batch", gt=0, le=50)
    SUMMARY_BATCH_DELAY_SECONDS: float = Field(
        default=0.1,
        description="Pause between summarization batches (upstream rate limits)",
        ge=0,
    )
    MAX_BODY_LENGTH: int = Field(default=5000, description="Stored body length before truncation", gt=0)

    # Scheduler
    DAILY_RUN_HOUR: int = Field(default=7, description="Hour of the daily digest run", ge=0, le=23)
    DAILY_RUN_MINUTE: int = Field(default=0, description="Minute of the daily digest run", ge=0, le=59)
    JOB_USER_BATCH_SIZE: int = Field(default=5, description="Users processed per scheduler batch", gt=0)
    JOB_BATCH_DELAY_SECONDS: float = Field(default=2.0, description="Pause between scheduler batches", ge=0)

    # System
    LOG_LEVEL: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)")

    # Web Server
    WEB_SERVER_PORT: int = Field(default=5800, description="Port for the management API", gt=0, lt=65536)
    WEB_SERVER_HOST: str = Field(default="127.0.0.1", description="Host for the management API")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that LOG_LEVEL is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}, got {value}")
        return upper_value

    @field_validator("OPENAI_BASE_URL")
    @classmethod
    def validate_base_url(cls, value: str) -> str:
        """Remove trailing slash from base URL if present."""
        return value.rstrip("/")

    @property
    def db_path(self) -> Path:
        return Path(self.DATA_DIR) / "mailbrief.db"


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance.
    Uses lazy initialization to allow for environment variable changes.
    """
    global _settings
    if _settings is None:
        ensure_env_file()
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """
    Force reload settings from environment variables.
    Useful for testing or when environment changes.
    """
    global _settings
    _settings = Settings()
    return _settings
