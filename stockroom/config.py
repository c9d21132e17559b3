from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # 都可以通过 STOCKROOM_xxx 环境变量或 .env 覆盖
    database_url: str = "sqlite:///./stockroom.db"
    log_level: str = "INFO"

    max_extension_days: int = 30
    reversal_window_hours: int = 24
    default_page_limit: int = 50

    model_config = SettingsConfigDict(env_file=".env", env_prefix="STOCKROOM_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
