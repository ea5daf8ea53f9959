from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./budgetsync.db"
    log_level: str = "INFO"
    sync_max_retries: int = 3
    sync_cleanup_days: int = 7
    sync_cleanup_hour: int = 3  # UTC
    sync_sweep_minutes: int = 15

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
