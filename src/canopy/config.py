from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./canopy.db"

    # Metrc: vendor key is per-integrator, user key per-operator account
    metrc_vendor_api_key: str = ""
    metrc_user_api_key: str = ""
    metrc_state_code: str = "ca"
    metrc_sandbox: bool = False
    metrc_base_url: Optional[str] = None
    metrc_timeout_seconds: float = 30.0
    metrc_max_retries: int = 3
    metrc_retry_initial_delay: float = 1.0
    metrc_retry_backoff: float = 2.0

    location_sync_interval_minutes: int = 60
    sync_lock_timeout_seconds: int = 900

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
