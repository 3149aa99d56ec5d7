"""Tests for exchange rate providers and ExchangeRateRefreshService."""
from __future__ import annotations

from decimal import Decimal

import httpx
import pytest
from freezegun import freeze_time

from bus.events import RATES_REFRESHED
from bus.memory_bus import InMemoryBus
from models.errors import RateNotFoundError
from services.currency_normalizer import CurrencyNormalizer
from services.rate_refresh import (
    SEED_RATES,
    ExchangeRateRefreshService,
    HttpExchangeRateProvider,
    RateSourceError,
    StaticExchangeRateProvider,
)
from storage.memory import InMemoryExchangeRateStore

RATE_URL = "https://rates.example.test/latest"


def _http_provider(handler) -> HttpExchangeRateProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpExchangeRateProvider(RATE_URL, client=client)


class _ExplodingBus(InMemoryBus):
    async def publish(self, event):
        raise ConnectionError("bus down")


# ── Providers ─────────────────────────────────────────────────────────────────


class TestHttpProvider:

    async def test_parses_rates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert str(request.url) == RATE_URL
            return httpx.Response(200, json={"rates": {"eur": "1.0912", "GBP": 1.27}})

        rates = await _http_provider(handler).fetch_current_rates()
        assert rates == {"EUR": Decimal("1.0912"), "GBP": Decimal("1.27")}

    async def test_server_error_raises_rate_source_error(self):
        provider = _http_provider(lambda request: httpx.Response(503))
        with pytest.raises(RateSourceError):
            await provider.fetch_current_rates()

    async def test_non_json_body_raises(self):
        provider = _http_provider(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(RateSourceError):
            await provider.fetch_current_rates()

    async def test_empty_rate_set_raises(self):
        provider = _http_provider(lambda request: httpx.Response(200, json={"rates": {}}))
        with pytest.raises(RateSourceError, match="no rates"):
            await provider.fetch_current_rates()

    async def test_non_numeric_rate_raises(self):
        provider = _http_provider(lambda request: httpx.Response(200, json={"rates": {"EUR": "n/a"}}))
        with pytest.raises(RateSourceError, match="non-numeric"):
            await provider.fetch_current_rates()

    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RateSourceError):
            await _http_provider(handler).fetch_current_rates()


# ── Refresh service ───────────────────────────────────────────────────────────


class TestRefreshService:

    async def test_refresh_saves_seed_rates_and_publishes(self, bus):
        normalizer = CurrencyNormalizer(InMemoryExchangeRateStore())
        service = ExchangeRateRefreshService(StaticExchangeRateProvider(), normalizer, bus)

        saved = await service.refresh_rates()

        assert {r.currency for r in saved} == set(SEED_RATES)
        assert await normalizer.to_usd(Decimal("100"), "EUR") == Decimal("108.50")
        assert bus.event_count(RATES_REFRESHED) == 1
        assert set(bus.last_event(RATES_REFRESHED).payload["currencies"]) == set(SEED_RATES)

    async def test_publish_failure_does_not_undo_refresh(self):
        normalizer = CurrencyNormalizer(InMemoryExchangeRateStore())
        service = ExchangeRateRefreshService(StaticExchangeRateProvider(), normalizer, _ExplodingBus())

        saved = await service.refresh_rates()
        assert len(saved) == len(SEED_RATES)
        assert await normalizer.get("GBP") is not None

    async def test_provider_failure_keeps_previous_rates(self):
        normalizer = CurrencyNormalizer(InMemoryExchangeRateStore())
        await normalizer.save("EUR", "1.05")
        service = ExchangeRateRefreshService(
            _http_provider(lambda request: httpx.Response(500)), normalizer,
        )

        with pytest.raises(RateSourceError):
            await service.refresh_rates()
        assert (await normalizer.get("EUR")).rate_to_usd == Decimal("1.05")

    async def test_refresh_if_stale_runs_when_empty(self):
        normalizer = CurrencyNormalizer(InMemoryExchangeRateStore())
        service = ExchangeRateRefreshService(StaticExchangeRateProvider(), normalizer)
        assert await service.refresh_if_stale() is True
        assert await normalizer.list_rates()

    async def test_refresh_if_stale_skips_fresh_rates(self):
        normalizer = CurrencyNormalizer(InMemoryExchangeRateStore())
        service = ExchangeRateRefreshService(
            StaticExchangeRateProvider({"EUR": Decimal("1.20")}), normalizer,
        )
        await normalizer.save("EUR", "1.08")
        assert await service.refresh_if_stale() is False
        assert (await normalizer.get("EUR")).rate_to_usd == Decimal("1.08")

    async def test_refresh_if_stale_runs_after_threshold(self):
        normalizer = CurrencyNormalizer(InMemoryExchangeRateStore())
        service = ExchangeRateRefreshService(
            StaticExchangeRateProvider({"EUR": Decimal("1.20")}), normalizer,
        )
        with freeze_time("2026-03-02 08:00:00+00:00") as frozen:
            await normalizer.save("EUR", "1.08")
            frozen.move_to("2026-03-02 21:00:00+00:00")
            assert await service.refresh_if_stale() is True
        assert (await normalizer.get("EUR")).rate_to_usd == Decimal("1.20")


# ── Held settlements replayed on refresh ──────────────────────────────────────


class TestHeldReplayOnRefresh:

    async def test_refresh_event_releases_held_settlement(self, engine, bus, request_factory):
        await engine.start()
        await bus.start()

        with pytest.raises(RateNotFoundError):
            await engine.ingest(request_factory(currency="EUR", amount="1000.00"))
        assert len(await engine.held_requests()) == 1

        service = ExchangeRateRefreshService(StaticExchangeRateProvider(), engine.normalizer, bus)
        await service.refresh_rates()

        assert await engine.held_requests() == []
        status = await engine.query_status("SETT-001", 1)
        assert status["group_info"]["running_total"] == Decimal("1085.00")
