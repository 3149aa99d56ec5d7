"""
Settlements router — ingestion, status queries, search and the release
workflow (request-release / authorise).
"""

from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.auth import require_auth
from api.errors import to_http
from api.schemas import (
    GroupInfoOut,
    IngestionOut,
    SearchOut,
    SettlementIn,
    SettlementStatusOut,
    SettlementSummaryOut,
    WorkflowActionIn,
    WorkflowActionOut,
    _dec,
    approval_out,
    settlement_out,
)
from models.domain import BusinessStatus, SettlementDirection
from models.errors import ExposureError

router = APIRouter(prefix="/settlements", tags=["settlements"])


def _workflow_out(result: dict) -> WorkflowActionOut:
    return WorkflowActionOut(
        settlement_id=result["settlement_id"],
        settlement_version=result["settlement_version"],
        status=result["status"].value,
        approval_info=approval_out(result["approval_info"]),
    )


@router.post("", response_model=IngestionOut, status_code=201, dependencies=[Depends(require_auth)])
async def ingest_settlement(body: SettlementIn, request: Request) -> IngestionOut:
    engine = request.app.state.engine
    try:
        result = await engine.ingest(body.to_request())
    except ExposureError as exc:
        raise to_http(exc)
    return IngestionOut(
        accepted=result["accepted"],
        status=result["status"].value,
        settlement=settlement_out(result["settlement"]),
        running_total=_dec(result["running_total"]),
        exposure_through=_dec(result["exposure_through"]),
        exposure_limit=_dec(result["exposure_limit"]),
        superseded_versions=result["superseded_versions"],
        counterparty_changed=result["counterparty_changed"],
    )


@router.get("", response_model=SearchOut, dependencies=[Depends(require_auth)])
async def search_settlements(
    request: Request,
    pts: str | None = None,
    processing_entity: str | None = None,
    counterparty_id: str | None = None,
    value_date_from: date | None = None,
    value_date_to: date | None = None,
    direction: SettlementDirection | None = None,
    business_status: BusinessStatus | None = None,
    include_old: bool = False,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
) -> SearchOut:
    engine = request.app.state.engine
    result = await engine.search(
        pts=pts,
        processing_entity=processing_entity,
        counterparty_id=counterparty_id,
        value_date_from=value_date_from,
        value_date_to=value_date_to,
        direction=direction,
        business_status=business_status,
        include_old=include_old,
        page=page,
        page_size=page_size,
    )
    return SearchOut(
        items=[
            SettlementSummaryOut(
                settlement=settlement_out(item["settlement"]),
                calculated_status=item["calculated_status"].value,
            )
            for item in result["items"]
        ],
        total_count=result["total_count"],
        page=result["page"],
        total_pages=result["total_pages"],
    )


@router.get("/{settlement_id}", response_model=SettlementStatusOut, dependencies=[Depends(require_auth)])
async def get_settlement(
    settlement_id: str,
    request: Request,
    version: int | None = None,
) -> SettlementStatusOut:
    engine = request.app.state.engine
    try:
        result = await engine.query_status(settlement_id, version)
    except ExposureError as exc:
        raise to_http(exc)

    info  = result["group_info"]
    group = info["group"]
    return SettlementStatusOut(
        settlement=settlement_out(result["settlement"]),
        calculated_status=result["calculated_status"].value,
        group_info=GroupInfoOut(
            pts=group.pts,
            processing_entity=group.processing_entity,
            counterparty_id=group.counterparty_id,
            value_date=group.value_date.isoformat(),
            running_total=_dec(info["running_total"]),
            exposure_limit=_dec(info["exposure_limit"]),
            percentage_used=_dec(info["percentage_used"]),
            settlement_count=info["settlement_count"],
            exposure_through=_dec(info["exposure_through"]),
        ),
        approval_info=approval_out(result["approval_info"]),
    )


@router.post(
    "/{settlement_id}/versions/{version}/request-release",
    response_model=WorkflowActionOut,
    dependencies=[Depends(require_auth)],
)
async def request_release(
    settlement_id: str,
    version: int,
    body: WorkflowActionIn,
    request: Request,
) -> WorkflowActionOut:
    engine = request.app.state.engine
    if not body.user_id.strip():
        raise HTTPException(status_code=422, detail={"errors": ["user_id is required"]})
    try:
        result = await engine.request_release(
            settlement_id, version, body.user_id, body.user_name, body.comment,
        )
    except ExposureError as exc:
        raise to_http(exc)
    return _workflow_out(result)


@router.post(
    "/{settlement_id}/versions/{version}/authorise",
    response_model=WorkflowActionOut,
    dependencies=[Depends(require_auth)],
)
async def authorise(
    settlement_id: str,
    version: int,
    body: WorkflowActionIn,
    request: Request,
) -> WorkflowActionOut:
    engine = request.app.state.engine
    if not body.user_id.strip():
        raise HTTPException(status_code=422, detail={"errors": ["user_id is required"]})
    try:
        result = await engine.authorise(
            settlement_id, version, body.user_id, body.user_name, body.comment,
        )
    except ExposureError as exc:
        raise to_http(exc)
    return _workflow_out(result)
