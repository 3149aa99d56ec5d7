"""
ExposureAggregator — maintains the USD running total per exposure group.

Invariant: total_usd equals the sum of USD-converted in-scope settlements of
the group with sequence_id <= last_included_ref, each counted exactly once.
last_included_ref never decreases.

Mutual exclusion per group comes from the storage row lock (held until the
enclosing transaction ends) backed by a compare-and-swap on
last_included_ref. Different groups never share a lock.

apply_increment
    sequence_id above the watermark: add the converted amount (zero when the
    settlement is out of scope) and advance the watermark.
    sequence_id at or below the watermark: a replay. Nothing is written.
    Sequence ids are allocated under the group lock, so an id below the
    watermark has always been folded in already.

recalculate
    Recompute from scratch. The only path that may lower a total.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from models.domain import ExposureGroup, RunningTotal, Settlement

logger = logging.getLogger("plm.exposure.aggregator")

_ZERO = Decimal("0")


@dataclass(frozen=True)
class AggregationResult:
    group: ExposureGroup
    previous_total: Decimal
    new_total: Decimal
    last_included_ref: int
    applied: bool
    mode: str               # "increment" | "replay" | "recalculated"

    @property
    def delta(self) -> Decimal:
        return self.new_total - self.previous_total


class ExposureAggregator:
    def __init__(self, storage, normalizer) -> None:
        self.storage    = storage
        self.normalizer = normalizer

    # ── Writes ────────────────────────────────────────────────────────────────

    async def apply_increment(self, settlement: Settlement) -> AggregationResult:
        if settlement.sequence_id is None:
            raise ValueError(
                f"Settlement {settlement.settlement_id} v{settlement.settlement_version} "
                "has no sequence_id; persist it before aggregating"
            )
        group = settlement.group

        async with self.storage.transaction() as tx:
            await tx.lock(group.lock_key)
            current = await self._load(group)

            if settlement.sequence_id <= current.last_included_ref:
                logger.debug("replay %s seq=%s ignored", group.key, settlement.sequence_id)
                return AggregationResult(
                    group=group,
                    previous_total=current.total_usd,
                    new_total=current.total_usd,
                    last_included_ref=current.last_included_ref,
                    applied=False,
                    mode="replay",
                )

            delta = (
                await self.normalizer.to_usd(settlement.amount, settlement.currency)
                if settlement.in_scope else _ZERO
            )
            updated = RunningTotal(
                group=group,
                total_usd=current.total_usd + delta,
                last_included_ref=settlement.sequence_id,
            )
            await self.storage.running_totals.compare_and_swap(updated, current.last_included_ref)

        logger.debug(
            "increment %s seq=%s delta=%s total=%s",
            group.key, settlement.sequence_id, delta, updated.total_usd,
        )
        return AggregationResult(
            group=group,
            previous_total=current.total_usd,
            new_total=updated.total_usd,
            last_included_ref=updated.last_included_ref,
            applied=True,
            mode="increment",
        )

    async def recalculate(
        self,
        group: ExposureGroup,
        as_of_sequence_id: Optional[int] = None,
    ) -> AggregationResult:
        """
        Recompute the group's total over in-scope settlements.

        The watermark becomes max(as_of_sequence_id, current watermark) and the
        total is summed up to that watermark, so the invariant holds even when
        as_of lags behind increments already applied.
        """
        async with self.storage.transaction() as tx:
            await tx.lock(group.lock_key)
            current = await self._load(group)
            if as_of_sequence_id is None:
                as_of_sequence_id = await self.storage.settlements.max_sequence_id()
            watermark = max(as_of_sequence_id, current.last_included_ref)

            total = await self._sum(await self.storage.settlements.list_group(group, watermark))
            updated = RunningTotal(group=group, total_usd=total, last_included_ref=watermark)
            await self.storage.running_totals.compare_and_swap(updated, current.last_included_ref)

        logger.info(
            "recalculated %s: %s -> %s (ref %s)",
            group.key, current.total_usd, total, watermark,
        )
        return AggregationResult(
            group=group,
            previous_total=current.total_usd,
            new_total=total,
            last_included_ref=watermark,
            applied=True,
            mode="recalculated",
        )

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get_running_total(self, group: ExposureGroup) -> RunningTotal:
        return await self._load(group)

    async def total_through(self, group: ExposureGroup, sequence_id: int) -> Decimal:
        """
        Exposure of the group up to and including the settlement stored at
        `sequence_id`.

        Settlements are ordered by the first arrival of their settlement id,
        so a re-sent version keeps its original place ahead of settlements
        that arrived after it.
        """
        store   = self.storage.settlements
        current = await self._load(group)
        target  = await store.get_by_sequence(sequence_id)
        position = (
            await store.first_sequence_id(target.settlement_id)
            if target is not None else sequence_id
        )

        rows = [s for s in await store.list_group(group, current.last_included_ref) if s.in_scope]
        arrivals = {s.settlement_id: await store.first_sequence_id(s.settlement_id) for s in rows}
        if all(arrival <= position for arrival in arrivals.values()):
            return current.total_usd
        return await self._sum(s for s in rows if arrivals[s.settlement_id] <= position)

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _load(self, group: ExposureGroup) -> RunningTotal:
        row = await self.storage.running_totals.get(group)
        return row if row is not None else RunningTotal(group=group)

    async def _sum(self, settlements: Iterable[Settlement]) -> Decimal:
        total = _ZERO
        for s in settlements:
            if s.in_scope:
                total += await self.normalizer.to_usd(s.amount, s.currency)
        return total
