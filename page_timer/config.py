from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    enabled: bool = Field(default=True, alias="PAGE_TIMER_ENABLED")
    api_prefix: str = Field(default="/api", alias="PAGE_TIMER_API_PREFIX")
    max_all_nodes: int = Field(default=30000, alias="PAGE_TIMER_MAX_ALL_NODES")
    idle_timeout_ms: int = Field(default=200, alias="PAGE_TIMER_IDLE_TIMEOUT_MS")
    debug_storage_key: str = Field(default="pet-dom-debug", alias="PAGE_TIMER_DEBUG_STORAGE_KEY")
    disguise_mb: bool = Field(default=True, alias="PAGE_TIMER_DISGUISE_MB")

    database_url: str = Field(default="sqlite:///./page_timer.db", alias="DATABASE_URL")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
