"""
Pydantic request/response schemas for the exposure API.

Amounts are serialised as strings to avoid JSON float precision loss.
Timestamps are ISO-8601 UTC strings.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from models.domain import SettlementIngestionRequest


# ── Helpers ───────────────────────────────────────────────────────────────────

def _dt(dt: datetime | None) -> str | None:
    """Convert datetime | None → ISO-8601 UTC string or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _dec(d: Decimal | None) -> str:
    if d is None:
        return "0"
    return str(d)


# ── Settlement schemas ────────────────────────────────────────────────────────

class SettlementIn(BaseModel):
    """Inbound settlement. Types are loose; the engine validates every field."""
    settlement_id: Any = None
    settlement_version: Any = None
    pts: Any = None
    processing_entity: Any = None
    counterparty_id: Any = None
    value_date: Any = None
    currency: Any = None
    amount: Any = None
    direction: Any = None
    settlement_type: Any = None
    business_status: Any = None

    def to_request(self) -> SettlementIngestionRequest:
        return SettlementIngestionRequest(**self.model_dump())


class SettlementOut(BaseModel):
    settlement_id: str
    settlement_version: int
    sequence_id: int | None
    pts: str
    processing_entity: str
    counterparty_id: str
    value_date: str
    currency: str
    amount: str
    direction: str
    settlement_type: str
    business_status: str
    is_old: bool
    created_at: str | None
    updated_at: str | None


class IngestionOut(BaseModel):
    accepted: bool
    status: str
    settlement: SettlementOut
    running_total: str
    exposure_through: str
    exposure_limit: str
    superseded_versions: list[int] = []
    counterparty_changed: bool = False


# ── Status / workflow schemas ─────────────────────────────────────────────────

class ReleaseRequestOut(BaseModel):
    user_id: str
    user_name: str | None
    requested_at: str | None
    comment: str | None


class ApprovalInfoOut(BaseModel):
    requests: list[ReleaseRequestOut] = []
    authoriser_id: str | None = None
    authoriser_name: str | None = None
    authorised_at: str | None = None
    authorise_comment: str | None = None


class GroupInfoOut(BaseModel):
    pts: str
    processing_entity: str
    counterparty_id: str
    value_date: str
    running_total: str
    exposure_limit: str
    percentage_used: str
    settlement_count: int
    exposure_through: str


class SettlementStatusOut(BaseModel):
    settlement: SettlementOut
    calculated_status: str
    group_info: GroupInfoOut
    approval_info: ApprovalInfoOut


class SettlementSummaryOut(BaseModel):
    settlement: SettlementOut
    calculated_status: str


class SearchOut(BaseModel):
    items: list[SettlementSummaryOut]
    total_count: int
    page: int
    total_pages: int


class WorkflowActionIn(BaseModel):
    user_id: str
    user_name: str | None = None
    comment: str | None = None


class WorkflowActionOut(BaseModel):
    settlement_id: str
    settlement_version: int
    status: str
    approval_info: ApprovalInfoOut


# ── Recalculation schemas ─────────────────────────────────────────────────────

class RecalculateIn(BaseModel):
    pts: str
    processing_entity: str
    counterparty_id: str | None = None
    value_date_from: date
    value_date_to: date
    user_id: str
    user_name: str | None = None
    reason: str | None = None


class RecalculatedGroupOut(BaseModel):
    pts: str
    processing_entity: str
    counterparty_id: str
    value_date: str
    previous_total: str
    new_total: str


class RecalculateOut(BaseModel):
    groups_recalculated: int
    groups: list[RecalculatedGroupOut]


# ── Rate schemas ──────────────────────────────────────────────────────────────

class RateOut(BaseModel):
    currency: str
    rate_to_usd: str
    updated_at: str | None


class RatesIn(BaseModel):
    rates: dict[str, str]


class StalenessOut(BaseModel):
    stale: bool
    rate_count: int
    held_settlements: int


# ── Events ────────────────────────────────────────────────────────────────────

class EventSummary(BaseModel):
    event_id: str
    event_type: str
    source: str
    timestamp_utc: str
    correlation_id: str
    payload: dict[str, Any]


# ── Converters ────────────────────────────────────────────────────────────────

def settlement_out(s) -> SettlementOut:
    return SettlementOut(
        settlement_id=s.settlement_id,
        settlement_version=s.settlement_version,
        sequence_id=s.sequence_id,
        pts=s.pts,
        processing_entity=s.processing_entity,
        counterparty_id=s.counterparty_id,
        value_date=s.value_date.isoformat(),
        currency=s.currency,
        amount=_dec(s.amount),
        direction=s.direction.value,
        settlement_type=s.settlement_type.value,
        business_status=s.business_status.value,
        is_old=s.is_old,
        created_at=_dt(s.created_at),
        updated_at=_dt(s.updated_at),
    )


def approval_out(info) -> ApprovalInfoOut:
    return ApprovalInfoOut(
        requests=[
            ReleaseRequestOut(
                user_id=r.user_id,
                user_name=r.user_name,
                requested_at=_dt(r.requested_at),
                comment=r.comment,
            )
            for r in info.requests
        ],
        authoriser_id=info.authoriser_id,
        authoriser_name=info.authoriser_name,
        authorised_at=_dt(info.authorised_at),
        authorise_comment=info.authorise_comment,
    )


def rate_out(rate) -> RateOut:
    return RateOut(
        currency=rate.currency,
        rate_to_usd=_dec(rate.rate_to_usd),
        updated_at=_dt(rate.updated_at),
    )
