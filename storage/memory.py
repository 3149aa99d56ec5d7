"""
In-memory transactional storage for settlements, running totals, activity
records and exchange rates.

Semantics mirror what the engine needs from a relational store:
  - transaction() gives an atomic unit. Every write registers an undo action;
    on any exception (including task cancellation) the undo log is replayed
    in reverse, so no partial numeric or audit effect survives.
  - Transactions nest by joining: an inner transaction() inside an active one
    of the same task is the same unit and only the outermost commits or rolls
    back. A task spawned from inside a transaction starts its own.
  - tx.lock(key) is a row lock held until the outermost transaction ends.
    Locks are re-entrant within a transaction; lock_many() acquires in sorted
    order so two transactions can never wait on each other in a cycle.
  - Sequence ids are never reused, even after rollback.

The active transaction travels in a ContextVar, so concurrent asyncio tasks
each see their own.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import AsyncIterator, Callable, Hashable, Iterable, Optional

from models.domain import (
    ActionType,
    ActivityRecord,
    BusinessStatus,
    ExchangeRate,
    ExposureGroup,
    RunningTotal,
    Settlement,
    SettlementDirection,
    SettlementIngestionRequest,
)
from models.errors import ConcurrencyConflictError, StorageError

logger = logging.getLogger("plm.storage.memory")

LockKey = tuple[Hashable, ...]

_current_tx: ContextVar[Optional["Transaction"]] = ContextVar("plm_current_tx", default=None)


def current_transaction() -> Optional["Transaction"]:
    tx = _current_tx.get()
    return tx if tx is not None and tx.owner is asyncio.current_task() else None


def _register_undo(action: Callable[[], None]) -> None:
    tx = current_transaction()
    if tx is not None:
        tx.on_rollback(action)


# ── Row locks ─────────────────────────────────────────────────────────────────


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class LockRegistry:
    """
    Row locks by key. An entry exists only while some transaction holds or
    waits on it, so the registry is bounded by in-flight work rather than by
    every key ever locked.
    """

    def __init__(self) -> None:
        self._entries: dict[LockKey, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def acquire(self, key: LockKey) -> None:
        entry = self._entries.setdefault(key, _LockEntry())
        entry.users += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            self._forget(key, entry)
            raise

    def release(self, key: LockKey) -> None:
        entry = self._entries[key]
        entry.lock.release()
        self._forget(key, entry)

    def _forget(self, key: LockKey, entry: _LockEntry) -> None:
        entry.users -= 1
        if entry.users == 0:
            del self._entries[key]


# ── Transaction ───────────────────────────────────────────────────────────────


class Transaction:
    """One atomic unit of work: an undo log plus the row locks it holds."""

    def __init__(self, locks: LockRegistry) -> None:
        self.owner  = asyncio.current_task()
        self._locks = locks
        self._held:  list[LockKey]            = []
        self._undo:  list[Callable[[], None]] = []

    @property
    def held_locks(self) -> list[LockKey]:
        return list(self._held)

    async def lock(self, key: LockKey) -> None:
        if key in self._held:
            return
        await self._locks.acquire(key)
        self._held.append(key)

    async def lock_many(self, keys: Iterable[LockKey]) -> None:
        for key in sorted(set(keys)):
            await self.lock(key)

    def on_rollback(self, action: Callable[[], None]) -> None:
        self._undo.append(action)

    def _rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    def _release(self) -> None:
        for key in reversed(self._held):
            self._locks.release(key)
        self._held.clear()
        self._undo.clear()


# ── Settlements ───────────────────────────────────────────────────────────────


class InMemorySettlementStore:
    """Settlement rows keyed by sequence id, indexed by business key."""

    def __init__(self) -> None:
        self._rows:  dict[int, Settlement]   = {}
        self._by_id: dict[str, list[int]]    = defaultdict(list)
        self._seq = itertools.count(1)

    async def insert(self, settlement: Settlement) -> Settlement:
        if await self.get(settlement.settlement_id, settlement.settlement_version) is not None:
            raise StorageError(
                f"Settlement {settlement.settlement_id} version "
                f"{settlement.settlement_version} already persisted"
            )
        seq = next(self._seq)
        settlement.sequence_id = seq
        self._rows[seq] = settlement
        self._by_id[settlement.settlement_id].append(seq)

        def _undo() -> None:
            self._rows.pop(seq, None)
            ids = self._by_id.get(settlement.settlement_id, [])
            if seq in ids:
                ids.remove(seq)

        _register_undo(_undo)
        return settlement

    async def get(self, settlement_id: str, version: int) -> Settlement | None:
        for seq in self._by_id.get(settlement_id, []):
            row = self._rows[seq]
            if row.settlement_version == version:
                return row
        return None

    async def get_by_sequence(self, sequence_id: int) -> Settlement | None:
        return self._rows.get(sequence_id)

    async def first_sequence_id(self, settlement_id: str) -> int | None:
        """Sequence id of the earliest stored version of `settlement_id`."""
        return min(self._by_id.get(settlement_id, []), default=None)

    async def versions(self, settlement_id: str) -> list[Settlement]:
        rows = [self._rows[s] for s in self._by_id.get(settlement_id, [])]
        return sorted(rows, key=lambda s: s.settlement_version)

    async def latest_version(self, settlement_id: str) -> Settlement | None:
        rows = await self.versions(settlement_id)
        return rows[-1] if rows else None

    async def mark_old(self, settlement_id: str, below_version: int) -> list[Settlement]:
        """Flag every version older than `below_version` as superseded."""
        marked: list[Settlement] = []
        for row in await self.versions(settlement_id):
            if row.settlement_version < below_version and not row.is_old:
                row.is_old = True
                row.touch()
                marked.append(row)

        def _undo() -> None:
            for row in marked:
                row.is_old = False

        if marked:
            _register_undo(_undo)
        return marked

    async def list_group(
        self,
        group: ExposureGroup,
        max_sequence_id: int | None = None,
    ) -> list[Settlement]:
        rows = [
            s for s in self._rows.values()
            if s.group == group
            and (max_sequence_id is None or s.sequence_id <= max_sequence_id)
        ]
        return sorted(rows, key=lambda s: s.sequence_id)

    async def max_sequence_id(self) -> int:
        return max(self._rows, default=0)

    async def distinct_groups(
        self,
        pts: str | None = None,
        processing_entity: str | None = None,
        counterparty_id: str | None = None,
        value_date_from: date | None = None,
        value_date_to: date | None = None,
    ) -> list[ExposureGroup]:
        rows = await self.search(
            pts=pts,
            processing_entity=processing_entity,
            counterparty_id=counterparty_id,
            value_date_from=value_date_from,
            value_date_to=value_date_to,
        )
        return sorted({s.group for s in rows})

    async def search(
        self,
        pts: str | None = None,
        processing_entity: str | None = None,
        counterparty_id: str | None = None,
        value_date_from: date | None = None,
        value_date_to: date | None = None,
        direction: SettlementDirection | None = None,
        business_status: BusinessStatus | None = None,
        include_old: bool = True,
    ) -> list[Settlement]:
        result = []
        for s in self._rows.values():
            if pts and s.pts != pts:
                continue
            if processing_entity and s.processing_entity != processing_entity:
                continue
            if counterparty_id and s.counterparty_id != counterparty_id:
                continue
            if value_date_from and s.value_date < value_date_from:
                continue
            if value_date_to and s.value_date > value_date_to:
                continue
            if direction and s.direction != direction:
                continue
            if business_status and s.business_status != business_status:
                continue
            if not include_old and s.is_old:
                continue
            result.append(s)
        return sorted(result, key=lambda s: s.sequence_id)


# ── Running totals ────────────────────────────────────────────────────────────


class InMemoryRunningTotalStore:
    """
    One row per exposure group. Writes go through compare_and_swap so a writer
    that read a stale watermark can never overwrite a newer one.
    """

    def __init__(self) -> None:
        self._rows: dict[ExposureGroup, RunningTotal] = {}

    async def get(self, group: ExposureGroup) -> RunningTotal | None:
        row = self._rows.get(group)
        return replace(row) if row is not None else None

    async def compare_and_swap(self, total: RunningTotal, expected_ref: int) -> None:
        previous = self._rows.get(total.group)
        actual_ref = previous.last_included_ref if previous is not None else 0
        if actual_ref != expected_ref:
            raise ConcurrencyConflictError(total.group.key, expected_ref, actual_ref)

        total.updated_at = datetime.now(timezone.utc)
        self._rows[total.group] = replace(total)

        def _undo() -> None:
            if previous is None:
                self._rows.pop(total.group, None)
            else:
                self._rows[total.group] = previous

        _register_undo(_undo)

    async def list_all(self) -> list[RunningTotal]:
        return [replace(r) for r in sorted(self._rows.values(), key=lambda r: r.group)]


# ── Activity records ──────────────────────────────────────────────────────────


class InMemoryActivityStore:
    """Insert-only activity log with an index on (settlement_id, version)."""

    def __init__(self) -> None:
        self._records: list[ActivityRecord] = []
        self._by_settlement: dict[tuple[str, int], list[ActivityRecord]] = defaultdict(list)
        self._ids = itertools.count(1)

    async def insert(self, record: ActivityRecord) -> ActivityRecord:
        stored = replace(record, record_id=next(self._ids))
        self._records.append(stored)
        key = (stored.settlement_id, stored.settlement_version)
        if stored.settlement_id is not None:
            self._by_settlement[key].append(stored)

        def _undo() -> None:
            self._records.remove(stored)
            if stored.settlement_id is not None:
                self._by_settlement[key].remove(stored)

        _register_undo(_undo)
        return stored

    async def find(
        self,
        settlement_id: str,
        version: int,
        action_type: ActionType | None = None,
    ) -> list[ActivityRecord]:
        records = self._by_settlement.get((settlement_id, version), [])
        if action_type is not None:
            records = [r for r in records if r.action_type == action_type]
        return list(records)

    async def list_all(self) -> list[ActivityRecord]:
        return list(self._records)


# ── Exchange rates ────────────────────────────────────────────────────────────


class InMemoryExchangeRateStore:
    def __init__(self) -> None:
        self._rates: dict[str, ExchangeRate] = {}

    async def get(self, currency: str) -> ExchangeRate | None:
        return self._rates.get(currency.upper())

    async def save(self, rate: ExchangeRate) -> None:
        key = rate.currency.upper()
        previous = self._rates.get(key)
        self._rates[key] = rate

        def _undo() -> None:
            if previous is None:
                self._rates.pop(key, None)
            else:
                self._rates[key] = previous

        _register_undo(_undo)

    async def list_all(self) -> list[ExchangeRate]:
        return sorted(self._rates.values(), key=lambda r: r.currency)


# ── Held settlements ──────────────────────────────────────────────────────────


@dataclass
class HeldSettlement:
    request: SettlementIngestionRequest
    reason: str
    held_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 1


class InMemoryHeldSettlementStore:
    """
    Settlements that could not be ingested for a recoverable reason (missing
    exchange rate). Written outside the failed transaction so they survive
    its rollback.
    """

    def __init__(self) -> None:
        self._held: dict[tuple[str, str], HeldSettlement] = {}

    async def hold(self, request: SettlementIngestionRequest, reason: str) -> HeldSettlement:
        existing = self._held.get(request.identity)
        if existing is not None:
            existing.attempts += 1
            existing.reason = reason
            return existing
        held = HeldSettlement(request=request, reason=reason)
        self._held[request.identity] = held
        return held

    async def release(self, request: SettlementIngestionRequest) -> bool:
        return self._held.pop(request.identity, None) is not None

    async def list_all(self) -> list[HeldSettlement]:
        return sorted(self._held.values(), key=lambda h: h.held_at)


# ── Storage facade ────────────────────────────────────────────────────────────


class InMemoryStorage:
    """Bundle of stores sharing one lock registry and transaction boundary."""

    def __init__(self) -> None:
        self.settlements    = InMemorySettlementStore()
        self.running_totals = InMemoryRunningTotalStore()
        self.activities     = InMemoryActivityStore()
        self.exchange_rates = InMemoryExchangeRateStore()
        self.held           = InMemoryHeldSettlementStore()
        self.locks          = LockRegistry()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        outer = current_transaction()
        if outer is not None:
            yield outer
            return

        tx = Transaction(self.locks)
        token = _current_tx.set(tx)
        try:
            yield tx
        except BaseException:
            tx._rollback()
            logger.debug("transaction rolled back", extra={"locks": tx.held_locks})
            raise
        finally:
            tx._release()
            _current_tx.reset(token)
