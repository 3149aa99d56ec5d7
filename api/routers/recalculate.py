"""
Recalculate router — POST /recalculate rebuilds running totals for every
group in a PTS / processing entity / date range.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.auth import require_auth
from api.errors import to_http
from api.schemas import RecalculatedGroupOut, RecalculateIn, RecalculateOut, _dec
from models.errors import ExposureError

router = APIRouter(prefix="/recalculate", tags=["recalculate"])


@router.post("", response_model=RecalculateOut, dependencies=[Depends(require_auth)])
async def recalculate(body: RecalculateIn, request: Request) -> RecalculateOut:
    engine = request.app.state.engine
    try:
        result = await engine.recalculate(
            pts=body.pts,
            processing_entity=body.processing_entity,
            counterparty_id=body.counterparty_id,
            value_date_from=body.value_date_from,
            value_date_to=body.value_date_to,
            user_id=body.user_id,
            reason=body.reason,
            user_name=body.user_name,
        )
    except ExposureError as exc:
        raise to_http(exc)

    return RecalculateOut(
        groups_recalculated=result["groups_recalculated"],
        groups=[
            RecalculatedGroupOut(
                **r.group.to_dict(),
                previous_total=_dec(r.previous_total),
                new_total=_dec(r.new_total),
            )
            for r in result["groups"]
        ],
    )
