from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Salon Ledger API"
    database_url: str = "sqlite:///salon_ledger.db"
    log_level: str = "INFO"
    # Peers whose X-Forwarded-For header is believed.
    trusted_proxies: list[str] = []

    # Ledger
    currency: str = "eur"
    balance_write_retries: int = 8
    balance_write_backoff_seconds: float = 0.01

    # Stripe
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_max_network_retries: int = 2

    # Gift cards
    gift_card_expiration_months: int = 6
    gift_card_code_bytes: int = 32
    verification_token_bytes: int = 16
    gift_card_hash_rounds: int = 12
    max_redemption_attempts: int = 5
    max_verification_attempts: int = 10
    # Cards that left ACTIVE or got locked recently still answer NotActive/Locked
    # on a matching code; older ones answer InvalidCode like any unknown code.
    gift_card_replay_window_days: int = 30
    gift_card_replay_scan_limit: int = 100

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SALON_",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
