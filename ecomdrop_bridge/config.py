from __future__ import annotations

from typing import Literal

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    SHOPIFY_APP_API_KEY: str
    SHOPIFY_APP_API_SECRET: str
    SHOPIFY_APP_SCOPES: str
    SHOPIFY_APP_BASE_URL: AnyHttpUrl
    SHOPIFY_INTERNAL_API_TOKEN: str
    ECOMDROP_APP_DB_URL: str = "sqlite:///./ecomdrop_bridge.db"
    SHOPIFY_ADMIN_API_VERSION: str = "2025-10"
    SHOPIFY_REQUEST_TIMEOUT_SECONDS: float = 20.0

    ECOMDROP_API_BASE_URL: AnyHttpUrl = "https://panel.ecomdrop.app/api"
    ECOMDROP_REQUEST_TIMEOUT_SECONDS: float = 15.0
    ECOMDROP_FLOWS_CACHE_SECONDS: float = 60.0
    ECOMDROP_BLIND_TAG_WRITE_ON_READ_DENIED: bool = True
    ECOMDROP_DISPATCH_FAILURE_TAG: str = "ecomdrop-error"

    ENVIRONMENT: Literal["development", "production"] = "development"
    LOG_LEVEL: str = "INFO"

    @field_validator("SHOPIFY_APP_SCOPES")
    @classmethod
    def validate_scopes(cls, value: str) -> str:
        scopes = [scope.strip() for scope in value.split(",") if scope.strip()]
        if not scopes:
            raise ValueError("SHOPIFY_APP_SCOPES must include at least one scope")
        return ",".join(scopes)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("LOG_LEVEL must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return normalized

    @property
    def app_base_url(self) -> str:
        return str(self.SHOPIFY_APP_BASE_URL).rstrip("/")

    @property
    def ecomdrop_api_base_url(self) -> str:
        return str(self.ECOMDROP_API_BASE_URL).rstrip("/")

    @property
    def callback_url(self) -> str:
        return f"{self.app_base_url}/api/ecomdrop/callback"

    @property
    def admin_scopes_csv(self) -> str:
        return self.SHOPIFY_APP_SCOPES

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
