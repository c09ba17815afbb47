from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    settings read from REFERRAL_* environment variables or a .env file.

    max_levels is fixed per collection: documents are created with
    max_levels + 1 slots, so raising it for a collection that already has
    documents is unsupported (appends past the old size land at the wrong
    level, or fail). use a new collection for a deeper tree.
    """

    model_config = SettingsConfigDict(
        env_prefix="REFERRAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_dsn: str = "dbname=referrals user=referrals password=secret host=localhost port=5432"
    collection: str = "referrals"
    max_levels: int = Field(3, ge=1)

    log_level: str = "INFO"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings()
