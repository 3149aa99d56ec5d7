"""
SettlementIngestion — accepts settlement versions from trading systems.

Steps, all inside one transaction:
    1. Validate (every violation reported at once).
    2. Lock the settlement id; reject a version not newer than the stored one.
    3. Lock the new group and, when the counterparty or group changed, the
       prior version's group. Group locks are taken in sorted order.
    4. Persist, mark prior versions old, then update the running totals:
       first in-scope version  -> apply_increment
       supersedes an in-scope  -> recalculate each affected group, so the
                                  superseded amount leaves the total
    5. Derive the settlement's status.

A missing exchange rate rolls the transaction back and parks the request in
the held queue; retry_held() replays parked requests once rates arrive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from models.domain import Settlement, SettlementIngestionRequest
from models.errors import RateNotFoundError, StaleVersionError, ValidationError

from exposure.aggregator import AggregationResult
from exposure.workflow import StatusView

logger = logging.getLogger("plm.exposure.ingestion")


@dataclass(frozen=True)
class IngestionResult:
    settlement: Settlement
    status: StatusView
    aggregations: list[AggregationResult] = field(default_factory=list)
    superseded: list[Settlement] = field(default_factory=list)

    @property
    def counterparty_changed(self) -> bool:
        return any(s.group != self.settlement.group for s in self.superseded)


@dataclass
class RetrySummary:
    ingested: list[IngestionResult] = field(default_factory=list)
    still_held: int = 0
    rejected: int = 0


class SettlementIngestion:
    def __init__(self, storage, validator, aggregator, workflow) -> None:
        self.storage    = storage
        self.validator  = validator
        self.aggregator = aggregator
        self.workflow   = workflow

    async def ingest(self, request: SettlementIngestionRequest) -> IngestionResult:
        settlement = self.validator.validate(request)
        try:
            result = await self._persist(settlement)
        except RateNotFoundError as exc:
            held = await self.storage.held.hold(request, str(exc))
            logger.warning("settlement held: %s", exc, extra={
                "settlement_id": settlement.settlement_id,
                "version": settlement.settlement_version,
                "currency": exc.currency,
                "attempts": held.attempts,
            })
            raise

        await self.storage.held.release(request)
        logger.info("settlement ingested", extra={
            "settlement_id": settlement.settlement_id,
            "version": settlement.settlement_version,
            "sequence_id": settlement.sequence_id,
            "group": settlement.group.key,
            "status": result.status.status.value,
        })
        return result

    async def retry_held(self) -> RetrySummary:
        summary = RetrySummary()
        for held in await self.storage.held.list_all():
            try:
                summary.ingested.append(await self.ingest(held.request))
            except RateNotFoundError:
                summary.still_held += 1
            except (ValidationError, StaleVersionError) as exc:
                await self.storage.held.release(held.request)
                summary.rejected += 1
                logger.warning("held settlement dropped on retry: %s", exc)
        return summary

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _persist(self, settlement: Settlement) -> IngestionResult:
        store = self.storage.settlements

        async with self.storage.transaction() as tx:
            await tx.lock(("settlement", settlement.settlement_id))
            prior = await store.latest_version(settlement.settlement_id)
            if prior is not None and settlement.settlement_version <= prior.settlement_version:
                raise StaleVersionError(
                    settlement.settlement_id,
                    settlement.settlement_version,
                    prior.settlement_version,
                )

            groups = {settlement.group}
            if prior is not None:
                groups.add(prior.group)
            await tx.lock_many(g.lock_key for g in groups)

            prior_in_scope = prior is not None and prior.in_scope
            await store.insert(settlement)
            superseded = await store.mark_old(settlement.settlement_id, settlement.settlement_version)

            if prior_in_scope:
                aggregations = [
                    await self.aggregator.recalculate(group, settlement.sequence_id)
                    for group in sorted(groups)
                ]
            else:
                aggregations = [await self.aggregator.apply_increment(settlement)]

            status = await self.workflow.status_of(settlement)

        if prior is not None and prior.group != settlement.group:
            logger.info(
                "settlement %s moved group %s -> %s",
                settlement.settlement_id, prior.group.key, settlement.group.key,
            )
        return IngestionResult(
            settlement=settlement,
            status=status,
            aggregations=aggregations,
            superseded=superseded,
        )
