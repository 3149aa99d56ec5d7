"""
CurrencyNormalizer — converts settlement amounts to the reporting currency.

Rates are quoted as "1 unit of currency = rate_to_usd USD". Conversion rounds
to cents with ROUND_HALF_UP. A missing rate is always an error: converting at
an assumed 1 or 0 would silently misstate exposure.

Staleness: a rate set is stale when any rate is older than
settings.rate_staleness_hours (12h by default). Staleness is reported, not
enforced; ingestion keeps converting at the last known rate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Mapping

from config.settings import settings
from models.domain import ExchangeRate
from models.errors import RateNotFoundError, ValidationError

logger = logging.getLogger("plm.services.currency")

_CENT = Decimal("0.01")


class CurrencyNormalizer:
    """
    Owns the ExchangeRate rows.

    `store` must expose:
        async get(currency: str) -> ExchangeRate | None
        async save(rate: ExchangeRate) -> None
        async list_all() -> list[ExchangeRate]
    """

    def __init__(
        self,
        store,
        reporting_currency: str | None = None,
        staleness_hours: int | None = None,
    ) -> None:
        self.store              = store
        self.reporting_currency = (reporting_currency or settings.reporting_currency).upper()
        self.staleness          = timedelta(
            hours=staleness_hours if staleness_hours is not None else settings.rate_staleness_hours
        )

    # ── Conversion ────────────────────────────────────────────────────────────

    async def to_usd(self, amount: Decimal, currency: str) -> Decimal:
        currency = currency.upper()
        if currency == self.reporting_currency:
            return amount

        rate = await self.store.get(currency)
        if rate is None:
            raise RateNotFoundError(currency)
        return (amount * rate.rate_to_usd).quantize(_CENT, rounding=ROUND_HALF_UP)

    # ── Rate maintenance ──────────────────────────────────────────────────────

    async def save(self, currency: str, rate: Decimal | str | float) -> ExchangeRate:
        currency = (currency or "").strip().upper()
        value = self._parse_rate(currency, rate)
        record = ExchangeRate(
            currency=currency,
            rate_to_usd=value,
            updated_at=datetime.now(timezone.utc),
        )
        await self.store.save(record)
        logger.info("exchange rate saved", extra={"currency": currency, "rate": str(value)})
        return record

    async def save_many(self, rates: Mapping[str, Decimal | str | float]) -> list[ExchangeRate]:
        """Validate every rate first so a bad entry saves nothing."""
        errors: list[str] = []
        parsed: dict[str, Decimal] = {}
        for currency, rate in rates.items():
            try:
                parsed[currency.strip().upper()] = self._parse_rate(currency.strip().upper(), rate)
            except ValidationError as exc:
                errors.extend(exc.errors)
        if errors:
            raise ValidationError(errors)
        return [await self.save(currency, rate) for currency, rate in parsed.items()]

    async def get(self, currency: str) -> ExchangeRate | None:
        return await self.store.get(currency.upper())

    async def list_rates(self) -> list[ExchangeRate]:
        return await self.store.list_all()

    async def are_rates_stale(self) -> bool:
        rates = await self.store.list_all()
        if not rates:
            return False
        cutoff = datetime.now(timezone.utc) - self.staleness
        stale = [r.currency for r in rates if r.updated_at < cutoff]
        if stale:
            logger.warning("stale exchange rates: %s", ", ".join(stale))
        return bool(stale)

    # ── Internal ──────────────────────────────────────────────────────────────

    def _parse_rate(self, currency: str, rate) -> Decimal:
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError([f"currency must be a 3-letter ISO code, got {currency!r}"])
        try:
            value = Decimal(str(rate))
        except (InvalidOperation, ValueError):
            raise ValidationError([f"rate for {currency} is not a number: {rate!r}"])
        if not value.is_finite() or value <= 0:
            raise ValidationError([f"rate for {currency} must be positive, got {rate}"])
        if currency == self.reporting_currency and value != 1:
            raise ValidationError([f"rate for reporting currency {currency} is fixed at 1"])
        return value
