"""
Exchange rate refresh — pulls current rates from a provider and stores them
through the CurrencyNormalizer.

Providers:
    HttpExchangeRateProvider    GET <rate_source_url>, expects {"rates": {"EUR": "1.085", ...}}
    StaticExchangeRateProvider  fixed seed rates for local runs and tests

The runner schedules refresh_rates() every settings.rate_refresh_interval_hours
and refresh_if_stale() every settings.rate_staleness_check_min minutes. Each
successful refresh publishes fx.rates.refreshed, which makes the engine retry
settlements held for a missing rate.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from bus.base import EventBus
from bus.events import RATES_REFRESHED, create_event
from models.domain import ExchangeRate

logger = logging.getLogger("plm.services.rate_refresh")

SEED_RATES: dict[str, Decimal] = {
    "USD": Decimal("1.000000"),
    "EUR": Decimal("1.085000"),
    "GBP": Decimal("1.270000"),
    "JPY": Decimal("0.006800"),
    "CHF": Decimal("1.130000"),
    "CNY": Decimal("0.138000"),
    "HKD": Decimal("0.128000"),
    "SGD": Decimal("0.745000"),
}


class RateSourceError(Exception):
    """The rate provider could not produce a usable rate set."""


class ExchangeRateProvider(ABC):
    @abstractmethod
    async def fetch_current_rates(self) -> dict[str, Decimal]:
        """Return currency -> rate_to_usd."""


class StaticExchangeRateProvider(ExchangeRateProvider):
    def __init__(self, rates: Optional[dict[str, Decimal]] = None) -> None:
        self._rates = dict(rates if rates is not None else SEED_RATES)

    async def fetch_current_rates(self) -> dict[str, Decimal]:
        return dict(self._rates)


class HttpExchangeRateProvider(ExchangeRateProvider):
    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ) -> None:
        self._url     = url
        self._client  = client
        self._timeout = timeout

    async def fetch_current_rates(self) -> dict[str, Decimal]:
        try:
            if self._client is not None:
                resp = await self._client.get(self._url)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self._url)
            resp.raise_for_status()
            data: dict[str, Any] = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateSourceError(f"rate source {self._url} unavailable: {exc}") from exc

        rates = data.get("rates")
        if not isinstance(rates, dict) or not rates:
            raise RateSourceError(f"rate source {self._url} returned no rates")
        try:
            return {str(ccy).upper(): Decimal(str(rate)) for ccy, rate in rates.items()}
        except InvalidOperation as exc:
            raise RateSourceError(f"rate source {self._url} returned a non-numeric rate") from exc


class ExchangeRateRefreshService:
    def __init__(self, provider: ExchangeRateProvider, normalizer, bus: Optional[EventBus] = None) -> None:
        self.provider   = provider
        self.normalizer = normalizer
        self.bus        = bus

    async def refresh_rates(self) -> list[ExchangeRate]:
        logger.info("refreshing exchange rates")
        rates = await self.provider.fetch_current_rates()
        saved = await self.normalizer.save_many(rates)
        logger.info("saved %d exchange rate(s)", len(saved))

        if self.bus is not None:
            try:
                await self.bus.publish(create_event(
                    RATES_REFRESHED,
                    "rate_refresh",
                    {"currencies": [r.currency for r in saved]},
                ))
            except Exception as exc:
                logger.error("failed to publish %s: %s", RATES_REFRESHED, exc, exc_info=True)
        return saved

    async def refresh_if_stale(self) -> bool:
        """Refresh when the stored set is empty or stale. Returns True if a refresh ran."""
        if await self.normalizer.list_rates() and not await self.normalizer.are_rates_stale():
            return False
        await self.refresh_rates()
        return True
