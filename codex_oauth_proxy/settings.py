from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    oauth_access_token: str = ""
    oauth_refresh_token: str = ""
    oauth_token_url: str = "https://auth.openai.com/oauth/token"
    oauth_client_id: str = "app_EMoamEEZ73f0CkXaXp7hrann"
    token_refresh_skew_seconds: int = 60
    token_relay_url: str | None = None
    token_relay_key: str | None = None
    backend_url: str = "https://chatgpt.com/backend-api/codex/responses"
    backend_connect_timeout_seconds: float = 10.0
    backend_read_timeout_seconds: float = 300.0
    backend_write_timeout_seconds: float = 30.0
    backend_pool_timeout_seconds: float = 10.0
    listen_host: str = "127.0.0.1"
    server_info_file: str | None = None
    max_request_body_bytes: int = 32 * 1024 * 1024
    log_level: str = "info"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def relay_is_configured(self) -> bool:
        return bool(self.token_relay_url and self.token_relay_url.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()
