"""
Configuration settings for Progress Service

Always go through get_settings(); never instantiate Settings at import time.
"""
import logging
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables"""

    # Service
    SERVICE_NAME: str = "progress-service"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "local"
    LOG_LEVEL: str = "INFO"

    # Calendar
    DEFAULT_TIMEZONE: str = "UTC"  # Learner's local day when the caller passes no zone

    # Lesson phases
    PRACTICE_MAX_ATTEMPTS: int = 3

    # Streaks
    STREAK_MILESTONES: List[int] = [7, 30, 100]
    FREEZE_GRANT_WINDOW_DAYS: int = 7

    # Achievements
    ACHIEVEMENT_XP_REWARDS_ENABLED: bool = True

    # Raw enum decoding: False rejects unknown strings, True falls back to the first case
    LENIENT_ENUM_DECODE: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """Returns cached settings instance (singleton)"""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Root logging setup for scripts and embedding applications"""
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
