from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnv(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """
    Central configuration for the points ledger and referral network.
    Values come from the environment or a local .env file.
    """

    APP_NAME: str = "points-ledger"
    APP_ENV: AppEnv = AppEnv.DEVELOPMENT

    # --- Persistence ---
    DATABASE_URL: str = "sqlite:///./points.db"
    DATABASE_ECHO: bool = False

    # Calendar days (check-in, trends, leaderboard windows) are cut in this zone
    TIMEZONE: str = "UTC"

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"

    # --- Invitations ---
    INVITE_CODE_PREFIX: str = "INV-"
    INVITE_CODE_TTL_HOURS: int = 720

    # --- Referral graph ---
    TREE_DEFAULT_DEPTH: int = 3
    TREE_MAX_DEPTH: int = 5

    # --- Reporting ---
    TREND_MAX_DAYS: int = 365
    LEADERBOARD_MAX_LIMIT: int = 100
    ACTIVE_WINDOW_DAYS: int = 30

    # --- Default reward rules, seeded into the rule store ---
    INVITE_REWARD_POINTS: int = 100
    DOWNLOAD_REWARD_POINTS: int = 1
    UPLOAD_REWARD_POINTS: int = 10
    CHECKIN_REWARD_POINTS: int = 5

    # --- HTTP adapter ---
    RATE_LIMIT_REQUESTS: int = 30
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
