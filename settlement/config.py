from __future__ import annotations

import os
from functools import lru_cache

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = "config/defaults.toml"


class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://settlement:settlement@db:5432/settlement"
    redis_url: str = "redis://redis:6379/0"
    tz: str = "Asia/Ho_Chi_Minh"
    log_level: str = "INFO"
    bot_token: str = ""
    admin_chat_id: str = ""
    frontend_url: str = "http://localhost:3000"
    web_host: str = "0.0.0.0"
    web_port: int = 8080
    minimum_participants: int = 2
    bid_increment_compliance_threshold: float = 0.95
    max_auction_duration_days: int = 7
    winner_payment_deadline_days: int = 7
    refund_business_days_delay: int = 3
    refund_watcher_interval_seconds: int = 300
    evaluation_sweep_interval_seconds: int = 60
    evaluation_sweep_batch_size: int = 50
    payment_gateway_base_url: str = ""
    payment_gateway_api_key: str = ""
    payment_gateway_timeout_seconds: float = 15.0
    payment_gateway_currency: str = "VND"
    broadcast_channel_prefix: str = "auction"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        toml_file = os.getenv("APP_CONFIG_FILE") or DEFAULT_CONFIG_FILE
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            file_secret_settings,
        )

    def parsed_admin_chat_id(self) -> int | None:
        value = self.admin_chat_id.strip()
        if not value:
            return None
        return int(value)


@lru_cache(1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
