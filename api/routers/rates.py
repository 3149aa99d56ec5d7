"""
Rates router — list, upsert and staleness of exchange rates.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.auth import require_auth
from api.errors import to_http
from api.schemas import RateOut, RatesIn, StalenessOut, rate_out
from models.errors import ExposureError

router = APIRouter(prefix="/rates", tags=["rates"])


@router.get("", response_model=list[RateOut], dependencies=[Depends(require_auth)])
async def list_rates(request: Request) -> list[RateOut]:
    engine = request.app.state.engine
    return [rate_out(r) for r in await engine.normalizer.list_rates()]


@router.put("", response_model=list[RateOut], dependencies=[Depends(require_auth)])
async def save_rates(body: RatesIn, request: Request) -> list[RateOut]:
    """Upsert rates. Publishes fx.rates.refreshed, which retries held settlements."""
    engine = request.app.state.engine
    try:
        saved = await engine.save_rates(body.rates)
    except ExposureError as exc:
        raise to_http(exc)
    return [rate_out(r) for r in saved]


@router.get("/staleness", response_model=StalenessOut, dependencies=[Depends(require_auth)])
async def staleness(request: Request) -> StalenessOut:
    engine = request.app.state.engine
    return StalenessOut(
        stale=await engine.rates_stale(),
        rate_count=len(await engine.normalizer.list_rates()),
        held_settlements=len(await engine.held_requests()),
    )
