"""
FastAPI application factory for the payment limit monitor API.

Usage:
    uvicorn api.app:app --reload --port 3001   # engine + rate seed via lifespan
    python run.py                               # combined runner with scheduler
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routers import events, health, rates, recalculate, settlements


def create_app(engine, bus, lifespan=None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The engine and bus are stored on app.state so routers can retrieve them
    via request.app.state.<name>.
    """
    app = FastAPI(
        title="Payment Limit Monitor API",
        version="1.0",
        lifespan=lifespan,
    )

    app.state.engine = engine
    app.state.bus    = bus

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    PREFIX = "/api/v1"
    app.include_router(settlements.router, prefix=PREFIX)
    app.include_router(recalculate.router, prefix=PREFIX)
    app.include_router(rates.router,       prefix=PREFIX)
    app.include_router(events.router,      prefix=PREFIX)
    app.include_router(health.router)

    return app


# ── Module-level app for `uvicorn api.app:app` ────────────────────────────────

def _make_default_app() -> FastAPI:
    import logging

    from bus.memory_bus import InMemoryBus
    from config.settings import settings
    from exposure.engine import build_engine
    from services.rate_refresh import (
        ExchangeRateRefreshService,
        HttpExchangeRateProvider,
        StaticExchangeRateProvider,
    )

    log = logging.getLogger("plm.app")

    bus    = InMemoryBus()
    engine = build_engine(bus=bus)
    provider = (
        HttpExchangeRateProvider(settings.rate_source_url)
        if settings.rate_source_url else StaticExchangeRateProvider()
    )
    refresher = ExchangeRateRefreshService(provider, engine.normalizer, bus)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await engine.start()
        await bus.start()
        await refresher.refresh_rates()
        log.info("exposure engine started via lifespan")
        yield
        await bus.stop()

    return create_app(engine, bus, lifespan=lifespan)


app = _make_default_app()
