import json
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production", "test"] = "development"
    database_url: str = "sqlite+aiosqlite:///./kfactor.db"
    redis_url: str | None = None
    redis_socket_timeout_seconds: float = 2.0

    # Application URLs
    public_app_url: str = "http://localhost:3000"

    # Internal API security
    internal_api_key: str = ""

    # Smart links
    smartlink_hmac_secret: str = ""
    smartlink_expiry_days: int = 7
    attribution_cookie_max_age_seconds: int = 30 * 24 * 60 * 60
    attribution_processed_max_age_seconds: int = 60 * 60
    # comma separated or a JSON array in the environment
    attribution_tracked_paths: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["/results", "/cohort", "/fvm", "/app"]
    )

    @field_validator("attribution_tracked_paths", mode="before")
    @classmethod
    def _parse_path_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            if value.strip().startswith("["):
                value = json.loads(value)
            else:
                return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []

    # Invite rate limiting
    invite_rate_limit_daily: int = 20

    # Presence
    presence_ttl_seconds: int = 30
    presence_poll_interval_seconds: float = 2.5
    presence_keepalive_interval_seconds: float = 15.0

    # Ephemeral store resilience
    ephemeral_health_window_seconds: float = 120.0
    ephemeral_log_suppression_seconds: float = 60.0

    # Analytics sink
    analytics_queue_size: int = 1000
    analytics_enabled: bool = True

    # Loop orchestrator
    orchestrator_url: str | None = None
    orchestrator_timeout_seconds: float = 0.15
    orchestrator_default_loop: str = "buddy_challenge"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
