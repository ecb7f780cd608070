from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MPEVENTS_", extra="ignore")

    # Shared secret MinistryPlatform sends in X-MP-Webhook-Secret
    webhook_secret: str = Field(default="", description="Webhook secret. Ingress answers 500 while unset.")

    mp_base_url: str = Field(default="", description="MinistryPlatform API base URL, e.g. https://mp.example.org/ministryplatformapi")
    mp_client_id: str = Field(default="", description="OAuth client id used for server-side enrichment calls.")
    mp_client_secret: str = Field(default="", description="OAuth client secret used for server-side enrichment calls.")
    mp_timeout_s: float = Field(default=5.0, description="Timeout for MinistryPlatform enrichment requests.")

    db_path: str = Field(default="mpevents.sqlite3", description="SQLite file for the webhook receipt log.")
    retention_days: int = Field(default=30, description="Default retention period for webhook receipts (days).")

    queue_size: int = Field(default=100, description="Outbound frames buffered per SSE client before it is dropped.")
    max_clients: int = Field(default=1000, description="Max concurrent SSE clients.")
    ping_interval_s: float = Field(default=30.0, description="Seconds between ping events.")
    keepalive_interval_s: float = Field(default=15.0, description="Seconds of silence before a comment keepalive is written.")
    idle_timeout_s: float = Field(default=120.0, description="Drop clients that have not drained their queue for this long.")

    defer_dispatch: bool = Field(default=True, description="Run webhook handlers after acknowledging the webhook.")
    service_name: str = Field(default="mpevents", description="Display name.")

    enable_cors: bool = Field(default=False, description="Enable CORS middleware.")
    cors_origins: str = Field(default="*", description="Comma-separated allowed origins for CORS.")
    enable_rate_limit: bool = Field(default=True, description="Enable rate limiting middleware on webhook ingress.")
    rate_limit_per_minute: int = Field(default=600, description="Max webhook requests per minute per IP.")

    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def mp_configured(self) -> bool:
        return bool(self.mp_base_url and self.mp_client_id and self.mp_client_secret)
