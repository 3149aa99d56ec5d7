"""
Payment Limit Monitor — combined runner.

Starts the FastAPI API, the exposure engine and the rate-refresh scheduler in
one process sharing a single event bus.

Usage:
    python run.py
    PLM_PORT=3001 python run.py
    PLM_BUS_TYPE=redis PLM_REDIS_URL=redis://localhost:6379/0 python run.py

What runs:
  - FastAPI API                 → http://localhost:3001/api/v1
  - ExposureEngine              → ingestion, aggregation, approval workflow
  - APScheduler                 → rate refresh every 12h, staleness check every 30 min
"""

from __future__ import annotations

import asyncio
import logging
import sys

import structlog
import uvicorn

# ── Logging setup ──────────────────────────────────────────────────────────────
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
    stream=sys.stdout,
)

log = structlog.get_logger("plm.run")


def _make_bus(settings):
    from config.settings import BusType

    if settings.bus_type == BusType.REDIS:
        from bus.redis_bus import RedisBus
        return RedisBus(settings.redis_url)
    from bus.memory_bus import InMemoryBus
    return InMemoryBus()


async def main() -> None:
    from config.settings import settings
    from exposure.engine import build_engine
    from services.rate_refresh import (
        ExchangeRateRefreshService,
        HttpExchangeRateProvider,
        StaticExchangeRateProvider,
    )

    log.info("payment limit monitor starting", bus=settings.bus_type.value)

    bus    = _make_bus(settings)
    engine = build_engine(bus=bus)
    await engine.start()
    await bus.start()

    if settings.rate_source_url:
        provider = HttpExchangeRateProvider(settings.rate_source_url)
    else:
        provider = StaticExchangeRateProvider()
        log.warning("PLM_RATE_SOURCE_URL not set, using static seed rates")
    refresher = ExchangeRateRefreshService(provider, engine.normalizer, bus)

    try:
        await refresher.refresh_rates()
    except Exception as exc:
        log.error("initial rate refresh failed", error=str(exc))

    # ── Scheduler ─────────────────────────────────────────────────────────────
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    async def _check_staleness() -> None:
        if await refresher.refresh_if_stale():
            log.warning("stale exchange rates refreshed outside the regular schedule")

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        refresher.refresh_rates, trigger="interval", hours=settings.rate_refresh_interval_hours,
        id="rate_refresh", name="Exchange rate refresh",
    )
    scheduler.add_job(
        _check_staleness, trigger="interval", minutes=settings.rate_staleness_check_min,
        id="rate_staleness", name="Exchange rate staleness check",
    )
    scheduler.start()
    log.info(
        "scheduler started",
        refresh_hours=settings.rate_refresh_interval_hours,
        staleness_check_min=settings.rate_staleness_check_min,
    )

    # ── API in the same event loop ─────────────────────────────────────────────
    from api.app import create_app
    app = create_app(engine, bus)

    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=settings.port,
        log_level="info",
        loop="none",
    )
    server = uvicorn.Server(config)
    log.info("api server starting", port=settings.port)

    try:
        await server.serve()
    finally:
        scheduler.shutdown(wait=False)
        await bus.stop()
        log.info("payment limit monitor stopped")


if __name__ == "__main__":
    asyncio.run(main())
