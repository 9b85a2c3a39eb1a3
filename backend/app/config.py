import logging
from functools import lru_cache
from typing import List

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MAX_VIDEO_DURATION_SECONDS = 180


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development", validation_alias=AliasChoices("ENVIRONMENT", "NODE_ENV"))
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    cors_origins: str = Field(default="", validation_alias="CORS_ORIGINS")

    supabase_url: str = Field(default="", validation_alias="SUPABASE_URL")
    supabase_service_role_key: str = Field(
        default="", validation_alias=AliasChoices("SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_SERVICE_KEY")
    )

    cloudflare_account_id: str = Field(default="", validation_alias="CLOUDFLARE_ACCOUNT_ID")
    cloudflare_stream_api_token: str = Field(default="", validation_alias="CLOUDFLARE_STREAM_API_TOKEN")
    cloudflare_delivery_base_url: str = Field(
        default="https://videodelivery.net", validation_alias="CLOUDFLARE_STREAM_DELIVERY_BASE_URL"
    )
    cloudflare_webhook_secret: str | None = Field(default=None, validation_alias="CLOUDFLARE_STREAM_WEBHOOK_SECRET")
    cloudflare_signing_key_id: str | None = Field(default=None, validation_alias="CLOUDFLARE_STREAM_SIGNING_KEY_ID")
    cloudflare_signing_key_secret: str | None = Field(
        default=None, validation_alias="CLOUDFLARE_STREAM_SIGNING_KEY_SECRET"
    )

    @field_validator("cloudflare_delivery_base_url")
    @classmethod
    def strip_trailing_slashes(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("cloudflare_webhook_secret", "cloudflare_signing_key_id", "cloudflare_signing_key_secret")
    @classmethod
    def blank_as_unset(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origin_list(self) -> List[str]:
        return [entry.strip() for entry in self.cors_origins.split(",") if entry.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
