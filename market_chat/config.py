from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, read from the environment or a local .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    mongo_url: str = Field(default="mongodb://localhost:27017")
    mongo_db: str = Field(default="market_chat")

    # Unset means the in-process bus is used
    redis_url: Optional[str] = Field(default=None)

    jwt_secret_key: str = Field(default="change-me-in-every-real-deployment-0123456789")
    jwt_algorithm: str = Field(default="HS256")

    log_level: str = Field(default="INFO")

    read_retry_attempts: int = Field(default=3, ge=1)
    channel_reconnect_attempts: int = Field(default=5, ge=0)
    channel_reconnect_delay: float = Field(default=0.5, ge=0)

    # reserved seqs not stored within this many seconds are treated as abandoned
    append_slot_timeout: float = Field(default=10.0, gt=0)
    channel_gap_recheck: float = Field(default=0.25, gt=0)

    broadcast_ttl_days: int = Field(default=7, ge=1)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
