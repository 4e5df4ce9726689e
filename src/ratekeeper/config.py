from enum import StrEnum
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

class AlgorithmType(StrEnum):
    TOKEN_BUCKET = "token_bucket"
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW_LOG = "sliding_window_log"
    SLIDING_WINDOW_COUNTER = "sliding_window_counter"

class Settings(BaseSettings):
    app_name: str = "Ratekeeper API"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "ratekeeper"
    default_algorithm: AlgorithmType = AlgorithmType.TOKEN_BUCKET
    rate_limit_default: int = 100
    rate_limit_window: int = 60
    store_timeout_seconds: float = 0.5
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

@lru_cache
def get_settings() -> Settings:
    return Settings()
