# laundry/config.py
"""Runtime configuration loaded from the environment (and `.env` in dev)."""
from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Supabase (auth + washer_accounts table)
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    supabase_jwt_secret: Optional[str] = None  # HS256 secret; RS256 tokens use the JWKS
    supabase_db_url: Optional[str] = None  # postgresql+asyncpg://...

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_currency: str = "usd"

    base_url: str = "http://localhost:4242"
    port: int = 4242

    # Pricing
    flat_rate_cents: int = 1500

    # Backends
    job_store: Literal["memory", "sql"] = "memory"
    washer_registry: Literal["memory", "supabase"] = "memory"

    # Outbound call bounds (seconds)
    gateway_timeout_seconds: float = 15.0
    store_timeout_seconds: float = 5.0
    auth_timeout_seconds: float = 10.0

    # Only washers whose Connect account can receive transfers may accept jobs
    require_active_washer: bool = True

    cors_origins: List[str] = ["*"]
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
