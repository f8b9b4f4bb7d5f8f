"""Pydantic BaseSettings — chain, claim-link, retry and cache configuration."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Settings(BaseSettings):
    """Central configuration loaded from env / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ─────────────────────────────────────────────
    APP_ENV: Literal["dev", "staging", "prod"] = "dev"
    APP_NAME: str = "repcard-claims"
    LOG_LEVEL: str = "INFO"

    # ── Chain ───────────────────────────────────────────────────
    CHAIN_ID: int = 1287  # Moonbase Alpha
    RPC_URLS: list[str] = Field(
        default_factory=lambda: ["https://rpc.api.moonbase.moonbeam.network"]
    )
    REPUTATION_CARD_ADDRESS: str = ZERO_ADDRESS
    PROFILE_NFT_ADDRESS: str = ZERO_ADDRESS
    RPC_REQUEST_TIMEOUT_SECONDS: float = 10.0
    RPC_HEALTH_CHECK_INTERVAL_SECONDS: float = 30.0

    # ── Claim links ─────────────────────────────────────────────
    CLAIM_BASE_URL: str = "http://localhost:5173"

    # ── Credentials (never commit real values) ──────────────────
    ISSUER_PRIVATE_KEY: str = ""
    CLAIMANT_PRIVATE_KEY: str = ""

    # ── Retry / backoff ─────────────────────────────────────────
    RETRY_MAX_RETRIES: int = 3
    RETRY_INITIAL_DELAY_SECONDS: float = 1.0
    RETRY_MAX_DELAY_SECONDS: float = 10.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_JITTER_RATIO: float = 0.1

    # ── Transactions ────────────────────────────────────────────
    TX_GAS_LIMIT_CLAIM: int = 500_000
    TX_GAS_PRICE_MULTIPLIER: float = 1.2
    TX_CONFIRMATION_TIMEOUT_SECONDS: float = 120.0

    # ── State sync cache ────────────────────────────────────────
    CACHE_DSN: str = "sqlite:///data/claims_cache.db"
    SYNC_MAX_TEMPLATE_ID: int = 100
    SYNC_MAX_CONSECUTIVE_EMPTY: int = 5
    SYNC_RETRY_INTERVAL_SECONDS: float = 30.0

    # ── Chain event watcher ─────────────────────────────────────
    WATCHER_ENABLED: bool = False
    WATCHER_POLL_INTERVAL_SECONDS: float = 12.0
    WATCHER_BLOCK_CHUNK_SIZE: int = 1000
    WATCHER_START_BLOCK: int = 0


settings = Settings()
