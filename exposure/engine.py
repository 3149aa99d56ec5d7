"""
ExposureEngine — the operations the HTTP layer and the runner call.

Wires ingestion, aggregation, the approval workflow and the audit trail
together, and publishes a bus event after each committed change. The bus is
a notification side channel: a publish failure is logged and the committed
operation stands.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping, Optional

from bus.base import EventBus
from bus.events import (
    GROUP_RECALCULATED,
    RATES_REFRESHED,
    RELEASE_AUTHORISED,
    RELEASE_REQUESTED,
    SETTLEMENT_BLOCKED,
    SETTLEMENT_INGESTED,
    create_event,
)
from config.limits import ExposureLimitConfig
from models.domain import (
    BusinessStatus,
    ExchangeRate,
    ExposureGroup,
    SettlementDirection,
    SettlementIngestionRequest,
    WorkflowStatus,
)
from models.errors import SettlementNotFoundError, ValidationError
from services.audit_trail import AuditTrail
from services.currency_normalizer import CurrencyNormalizer
from storage.memory import InMemoryStorage

from exposure.aggregator import ExposureAggregator
from exposure.ingestion import RetrySummary, SettlementIngestion
from exposure.validator import SettlementValidator
from exposure.workflow import ApprovalWorkflow, StatusView

logger = logging.getLogger("plm.exposure.engine")

_PCT = Decimal("0.01")


class ExposureEngine:
    def __init__(
        self,
        storage: InMemoryStorage,
        normalizer: CurrencyNormalizer,
        aggregator: ExposureAggregator,
        workflow: ApprovalWorkflow,
        audit: AuditTrail,
        ingestion: SettlementIngestion,
        limits: ExposureLimitConfig,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.storage    = storage
        self.normalizer = normalizer
        self.aggregator = aggregator
        self.workflow   = workflow
        self.audit      = audit
        self.ingestion  = ingestion
        self.limits     = limits
        self.bus        = bus

    async def start(self) -> None:
        """Subscribe to rate refreshes so held settlements are retried."""
        if self.bus is not None:
            await self.bus.subscribe(RATES_REFRESHED, "exposure-engine", self._on_rates_refreshed)

    # ── Ingestion ─────────────────────────────────────────────────────────────

    async def ingest(self, request: SettlementIngestionRequest) -> dict[str, Any]:
        result = await self.ingestion.ingest(request)
        view = result.status
        running = await self.aggregator.get_running_total(result.settlement.group)

        payload = {
            **result.settlement.to_dict(),
            "status": view.status.value,
            "exposure_through": str(view.exposure_through),
            "exposure_limit": str(view.exposure_limit),
            "running_total": str(running.total_usd),
        }
        await self._emit(SETTLEMENT_INGESTED, "ingestion", payload)
        if view.status == WorkflowStatus.BLOCKED:
            await self._emit(SETTLEMENT_BLOCKED, "ingestion", payload)

        return {
            "accepted": True,
            "settlement": result.settlement,
            "status": view.status,
            "exposure_through": view.exposure_through,
            "exposure_limit": view.exposure_limit,
            "running_total": running.total_usd,
            "superseded_versions": [s.settlement_version for s in result.superseded],
            "counterparty_changed": result.counterparty_changed,
        }

    async def retry_held(self) -> RetrySummary:
        summary = await self.ingestion.retry_held()
        for result in summary.ingested:
            await self._emit(SETTLEMENT_INGESTED, "ingestion", {
                **result.settlement.to_dict(),
                "status": result.status.status.value,
                "retried": True,
            })
        if summary.ingested or summary.rejected:
            logger.info(
                "held retry: %d ingested, %d still held, %d rejected",
                len(summary.ingested), summary.still_held, summary.rejected,
            )
        return summary

    async def held_requests(self) -> list:
        return await self.storage.held.list_all()

    # ── Workflow ──────────────────────────────────────────────────────────────

    async def request_release(
        self,
        settlement_id: str,
        version: int,
        user_id: str,
        user_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> dict[str, Any]:
        view = await self.workflow.request_release(settlement_id, version, user_id, user_name, comment)
        await self._emit(RELEASE_REQUESTED, "workflow", {
            "settlement_id": settlement_id,
            "settlement_version": version,
            "user_id": user_id,
            "requesters": view.workflow_info.requester_ids,
        })
        return self._workflow_result(view)

    async def authorise(
        self,
        settlement_id: str,
        version: int,
        authoriser_id: str,
        user_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> dict[str, Any]:
        view = await self.workflow.authorise(settlement_id, version, authoriser_id, user_name, comment)
        await self._emit(RELEASE_AUTHORISED, "workflow", {
            "settlement_id": settlement_id,
            "settlement_version": version,
            "authoriser_id": authoriser_id,
            "requesters": view.workflow_info.requester_ids,
        })
        return self._workflow_result(view)

    # ── Recalculation ─────────────────────────────────────────────────────────

    async def recalculate(
        self,
        pts: str,
        processing_entity: str,
        counterparty_id: Optional[str],
        value_date_from: date,
        value_date_to: date,
        user_id: str,
        reason: Optional[str] = None,
        user_name: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Recompute every group matching the filter. Each group is recomputed and
        its RECALCULATE record written in one transaction; groups are independent.
        """
        errors = []
        if not pts:
            errors.append("pts is required")
        if not processing_entity:
            errors.append("processing_entity is required")
        if not user_id:
            errors.append("user_id is required")
        if value_date_from is None or value_date_to is None:
            errors.append("value_date_from and value_date_to are required")
        elif value_date_from > value_date_to:
            errors.append("value_date_from must not be after value_date_to")
        if errors:
            raise ValidationError(errors)

        groups = await self.storage.settlements.distinct_groups(
            pts=pts,
            processing_entity=processing_entity,
            counterparty_id=counterparty_id,
            value_date_from=value_date_from,
            value_date_to=value_date_to,
        )

        results = []
        for group in groups:
            async with self.storage.transaction():
                aggregation = await self.aggregator.recalculate(group)
                await self.workflow.record_recalculation(group, user_id, user_name, reason)
            results.append(aggregation)
            await self._emit(GROUP_RECALCULATED, "recalculate", {
                **group.to_dict(),
                "previous_total": str(aggregation.previous_total),
                "new_total": str(aggregation.new_total),
                "user_id": user_id,
                "reason": reason,
            })

        logger.info("recalculated %d group(s)", len(results), extra={
            "pts": pts,
            "processing_entity": processing_entity,
            "counterparty_id": counterparty_id,
            "user_id": user_id,
        })
        return {"groups_recalculated": len(results), "groups": results}

    # ── Queries ───────────────────────────────────────────────────────────────

    async def query_status(self, settlement_id: str, version: Optional[int] = None) -> dict[str, Any]:
        if version is None:
            settlement = await self.storage.settlements.latest_version(settlement_id)
        else:
            settlement = await self.storage.settlements.get(settlement_id, version)
        if settlement is None:
            raise SettlementNotFoundError(settlement_id, version)

        view = await self.workflow.status_of(settlement)
        return {
            "settlement": settlement,
            "calculated_status": view.status,
            "group_info": await self._group_info(settlement.group, view),
            "approval_info": view.workflow_info,
        }

    async def search(
        self,
        pts: Optional[str] = None,
        processing_entity: Optional[str] = None,
        counterparty_id: Optional[str] = None,
        value_date_from: Optional[date] = None,
        value_date_to: Optional[date] = None,
        direction: Optional[SettlementDirection] = None,
        business_status: Optional[BusinessStatus] = None,
        include_old: bool = False,
        page: int = 1,
        page_size: int = 50,
    ) -> dict[str, Any]:
        rows = await self.storage.settlements.search(
            pts=pts,
            processing_entity=processing_entity,
            counterparty_id=counterparty_id,
            value_date_from=value_date_from,
            value_date_to=value_date_to,
            direction=direction,
            business_status=business_status,
            include_old=include_old,
        )
        total = len(rows)
        start = (page - 1) * page_size
        items = []
        for settlement in rows[start:start + page_size]:
            view = await self.workflow.status_of(settlement)
            items.append({"settlement": settlement, "calculated_status": view.status})
        return {
            "items": items,
            "total_count": total,
            "page": page,
            "total_pages": (total + page_size - 1) // page_size,
        }

    # ── Rates ─────────────────────────────────────────────────────────────────

    async def save_rate(self, currency: str, rate: Decimal | str) -> ExchangeRate:
        return await self.normalizer.save(currency, rate)

    async def save_rates(self, rates: Mapping[str, Decimal | str]) -> list[ExchangeRate]:
        saved = await self.normalizer.save_many(rates)
        await self._emit(RATES_REFRESHED, "rates", {
            "currencies": [r.currency for r in saved],
        })
        return saved

    async def rates_stale(self) -> bool:
        return await self.normalizer.are_rates_stale()

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _group_info(self, group: ExposureGroup, view: StatusView) -> dict[str, Any]:
        running = await self.aggregator.get_running_total(group)
        rows = await self.storage.settlements.list_group(group)
        limit = view.exposure_limit
        pct = (
            (running.total_usd / limit * 100).quantize(_PCT, rounding=ROUND_HALF_UP)
            if limit else Decimal("0")
        )
        return {
            "group": group,
            "running_total": running.total_usd,
            "exposure_limit": limit,
            "percentage_used": pct,
            "settlement_count": sum(1 for s in rows if s.in_scope),
            "exposure_through": view.exposure_through,
        }

    @staticmethod
    def _workflow_result(view: StatusView) -> dict[str, Any]:
        return {
            "settlement_id": view.settlement.settlement_id,
            "settlement_version": view.settlement.settlement_version,
            "status": view.status,
            "approval_info": view.workflow_info,
        }

    async def _on_rates_refreshed(self, event) -> None:
        await self.retry_held()

    async def _emit(self, event_type: str, source: str, payload: dict[str, Any]) -> None:
        if self.bus is None:
            return
        try:
            await self.bus.publish(create_event(event_type, source, payload))
        except Exception as exc:
            logger.error("failed to publish %s: %s", event_type, exc, exc_info=True)


def build_engine(
    bus: Optional[EventBus] = None,
    limits: Optional[ExposureLimitConfig] = None,
    storage: Optional[InMemoryStorage] = None,
) -> ExposureEngine:
    storage    = storage or InMemoryStorage()
    limits     = limits or ExposureLimitConfig()
    normalizer = CurrencyNormalizer(storage.exchange_rates)
    audit      = AuditTrail(storage.activities)
    aggregator = ExposureAggregator(storage, normalizer)
    workflow   = ApprovalWorkflow(storage, audit, aggregator, limits)
    ingestion  = SettlementIngestion(storage, SettlementValidator(), aggregator, workflow)
    return ExposureEngine(
        storage=storage,
        normalizer=normalizer,
        aggregator=aggregator,
        workflow=workflow,
        audit=audit,
        ingestion=ingestion,
        limits=limits,
        bus=bus,
    )
