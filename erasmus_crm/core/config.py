from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Erasmus CRM API"
    app_env: str = "local"
    app_debug: bool = True
    log_level: str = "INFO"
    api_port: int = 8000
    database_url: str | None = None
    allow_degraded_storage: bool = True
    redis_url: str = "redis://redis:6379/0"
    celery_always_eager: bool = True
    jwt_secret: str = "replace-me"
    jwt_algorithm: str = "HS256"
    notify_owner_url: str | None = None
    notify_owner_api_key: str | None = None
    notify_owner_timeout_seconds: float = 10.0
    export_currency_symbol: str = "€"
    export_row_limit: int = 10000
    metrics_enabled: bool = False
    otel_enabled: bool = False

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
