from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    debug: bool = False
    log_level: str | None = None
    app_name: str = "Conversation Sync"
    api_v1_prefix: str = "/v1"
    database_url: str = "sqlite:///./chatsync.db"

    secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 15

    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000", "http://localhost:8081"])

    message_max_length: int = 2000
    message_page_size: int = 50

    typing_ttl_seconds: float = 5.0
    write_timeout_seconds: float = 10.0
    send_max_attempts: int = 3
    send_retry_delay_seconds: float = 0.5
    send_rate_limit_window_seconds: int = 10
    send_rate_limit_max_requests: int = 30
    summary_max_attempts: int = 5

    resubscribe_backoff_base_seconds: float = 0.25
    resubscribe_backoff_max_seconds: float = 5.0

    change_feed_enabled: bool = True
    change_feed_poll_ms: int = 50
    change_feed_batch_size: int = 100
    change_feed_max_pending: int = 500

    ws_heartbeat_sec: int = 30
    ws_idle_timeout_sec: int = 120
    ws_open_timeout_sec: float = 5.0
    ws_max_command_bytes: int = 16_384
    ws_max_open_per_connection: int = 50
    ws_outgoing_queue_size: int = 200
    ws_rate_limit_window_sec: int = 10
    ws_rate_limit_max_commands: int = 60

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, list):
            return value
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()
