"""
Global configuration for the payment limit monitor.

All values are read from environment variables (prefixed PLM_).
Defaults are safe for local development; override in production via .env or secrets manager.
"""

from decimal import Decimal
from enum import Enum

from pydantic_settings import BaseSettings, SettingsConfigDict


class BusType(str, Enum):
    MEMORY = "memory"
    REDIS  = "redis"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PLM_", env_file=".env")

    # ── Exposure limits ───────────────────────────────────────────────────
    reporting_currency: str = "USD"
    default_exposure_limit_usd: Decimal = Decimal("500000000.00")  # fixed MVP limit
    # Comma-separated overrides: "CP-001=1000000,PTS|PE|CP|2026-03-02=250000"
    # Keys are either a counterparty id or a full exposure-group key.
    exposure_limits_raw: str = ""

    # ── Exchange rates ────────────────────────────────────────────────────
    rate_staleness_hours: int = 12
    rate_refresh_interval_hours: int = 12
    rate_staleness_check_min: int = 30
    rate_source_url: str = ""                     # empty = static seed rates

    # ── Ingestion validation ──────────────────────────────────────────────
    supported_currencies_raw: str = (
        "USD,EUR,GBP,JPY,CHF,CAD,AUD,CNY,HKD,SGD,"
        "SEK,NOK,DKK,PLN,CZK,HUF,MXN,BRL,ZAR,INR"
    )
    max_settlement_amount: Decimal = Decimal("999999999999.99")
    max_settlement_id_length: int = 100

    # ── Message bus ───────────────────────────────────────────────────────
    bus_type: BusType = BusType.MEMORY
    redis_url: str = "redis://localhost:6379/0"

    # ── Auth ──────────────────────────────────────────────────────────────
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # ── Runner ────────────────────────────────────────────────────────────
    port: int = 3001

    @property
    def supported_currencies(self) -> frozenset[str]:
        return frozenset(
            c.strip().upper() for c in self.supported_currencies_raw.split(",") if c.strip()
        )

    @property
    def exposure_limit_overrides(self) -> dict[str, Decimal]:
        overrides: dict[str, Decimal] = {}
        for item in self.exposure_limits_raw.split(","):
            if "=" not in item:
                continue
            key, _, amount = item.partition("=")
            overrides[key.strip()] = Decimal(amount.strip())
        return overrides


settings = Settings()
