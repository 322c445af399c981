"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class SyncConfig(BaseModel):
    """Read-only classification settings handed to the reconciliation engine."""

    model_config = ConfigDict(frozen=True)

    internal_domains: tuple[str, ...] = ()
    exclude_resources: bool = True


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS (the add-in task pane is served from another origin)
    CORS_ALLOWED_ORIGINS: str = "*"

    # Attendee classification
    INTERNAL_DOMAINS: str = ""  # Comma-separated, e.g. "contoso.com,contoso.co.jp"
    EXCLUDE_RESOURCES: bool = True

    # SharePoint visitor list
    SHAREPOINT_SITE_URL: str = ""
    SHAREPOINT_LIST_NAME: str = "Visitors"
    SHAREPOINT_ACCESS_TOKEN: str = ""
    STORE_TIMEOUT_MS: int = 15000
    STORE_MAX_RETRIES: int = 3
    STORE_RETRY_DELAY_MS: int = 1000

    # Power Automate notification trigger
    NOTIFICATION_URL: str = ""
    NOTIFICATION_TIMEOUT_MS: int = 30000
    NOTIFICATION_MAX_RETRIES: int = 3
    NOTIFICATION_RETRY_DELAY_MS: int = 2000
    NOTIFICATION_SOURCE: str = "LobbyExperienceAddin"

    RETRY_BACKOFF_MULTIPLIER: float = Field(default=2.0, gt=0)

    def get_internal_domains(self) -> tuple[str, ...]:
        """Split INTERNAL_DOMAINS into normalized domain names.

        Leading ``@`` and surrounding whitespace are stripped so both
        ``contoso.com`` and ``@Contoso.com`` are accepted.
        """
        domains = []
        for raw in self.INTERNAL_DOMAINS.split(","):
            domain = raw.strip().lstrip("@").lower()
            if domain:
                domains.append(domain)
        return tuple(domains)

    def get_sync_config(self) -> SyncConfig:
        return SyncConfig(
            internal_domains=self.get_internal_domains(),
            exclude_resources=self.EXCLUDE_RESOURCES,
        )


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance (composition root only)."""
    return Settings()
