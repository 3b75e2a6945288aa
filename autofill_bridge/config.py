from __future__ import annotations

from typing import Literal

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="AUTOFILL_BRIDGE_", extra="ignore")

    extension_base_url: str = "http://127.0.0.1:6263"
    # The round trip waits for the user to pick an item in the manager.
    extension_timeout_seconds: float = 300.0
    extension_scheme: str = "org-appextension-feature-password-management"
    layout: Literal["compact", "wide"] = "compact"
    headless: bool = True
    user_data_dir: str | None = None
    navigation_timeout_ms: int = 30000
    autosubmit_delay_ms: int = 100
    default_operation_delay_ms: int = 1
    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()


settings = get_settings()
