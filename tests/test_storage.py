"""
Tests for the in-memory transactional storage.

Categories:
    A  Commit / rollback of every store
    B  Nested transactions and cancellation
    C  Row locks
    D  Settlement store queries
    E  Running-total compare-and-swap
"""

from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from models.domain import (
    ActionType,
    ActivityRecord,
    BusinessStatus,
    ExchangeRate,
    ExposureGroup,
    RunningTotal,
    Settlement,
    SettlementDirection,
    SettlementType,
)
from models.errors import ConcurrencyConflictError, StorageError
from storage.memory import InMemoryStorage, current_transaction

GROUP = ExposureGroup("PTS-A", "PE-001", "CP-ABC", date(2026, 3, 2))


def _settlement(sid="S-1", version=1, counterparty="CP-ABC", value_date=date(2026, 3, 2),
                status=BusinessStatus.VERIFIED, amount="100.00") -> Settlement:
    return Settlement(
        settlement_id=sid,
        settlement_version=version,
        pts="PTS-A",
        processing_entity="PE-001",
        counterparty_id=counterparty,
        value_date=value_date,
        currency="USD",
        amount=Decimal(amount),
        direction=SettlementDirection.PAY,
        settlement_type=SettlementType.GROSS,
        business_status=status,
    )


class _Boom(Exception):
    pass


# ═══════════════════════════════════════════════════════════════════════════════
# A. Commit / rollback
# ═══════════════════════════════════════════════════════════════════════════════


class TestCommitRollback:

    async def test_committed_writes_are_visible(self):
        storage = InMemoryStorage()
        async with storage.transaction():
            await storage.settlements.insert(_settlement())
            await storage.exchange_rates.save(ExchangeRate("EUR", Decimal("1.1")))

        assert await storage.settlements.get("S-1", 1) is not None
        assert (await storage.exchange_rates.get("EUR")).rate_to_usd == Decimal("1.1")

    async def test_failure_rolls_back_every_store(self):
        storage = InMemoryStorage()
        with pytest.raises(_Boom):
            async with storage.transaction():
                await storage.settlements.insert(_settlement())
                await storage.running_totals.compare_and_swap(
                    RunningTotal(GROUP, Decimal("100.00"), 1), expected_ref=0,
                )
                await storage.activities.insert(ActivityRecord(
                    pts="PTS-A", processing_entity="PE-001",
                    settlement_id="S-1", settlement_version=1,
                    action_type=ActionType.REQUEST_RELEASE, user_id="alice",
                ))
                await storage.exchange_rates.save(ExchangeRate("EUR", Decimal("1.1")))
                raise _Boom()

        assert await storage.settlements.get("S-1", 1) is None
        assert await storage.running_totals.get(GROUP) is None
        assert await storage.activities.list_all() == []
        assert await storage.exchange_rates.get("EUR") is None

    async def test_rollback_restores_previous_rate(self):
        storage = InMemoryStorage()
        await storage.exchange_rates.save(ExchangeRate("EUR", Decimal("1.1")))
        with pytest.raises(_Boom):
            async with storage.transaction():
                await storage.exchange_rates.save(ExchangeRate("EUR", Decimal("2.0")))
                raise _Boom()
        assert (await storage.exchange_rates.get("EUR")).rate_to_usd == Decimal("1.1")

    async def test_rollback_unmarks_old_versions(self):
        storage = InMemoryStorage()
        await storage.settlements.insert(_settlement(version=1))
        with pytest.raises(_Boom):
            async with storage.transaction():
                await storage.settlements.insert(_settlement(version=2))
                marked = await storage.settlements.mark_old("S-1", 2)
                assert [s.settlement_version for s in marked] == [1]
                raise _Boom()

        v1 = await storage.settlements.get("S-1", 1)
        assert v1.is_old is False
        assert await storage.settlements.get("S-1", 2) is None

    async def test_sequence_ids_not_reused_after_rollback(self):
        storage = InMemoryStorage()
        with pytest.raises(_Boom):
            async with storage.transaction():
                await storage.settlements.insert(_settlement(sid="S-1"))
                raise _Boom()
        s2 = await storage.settlements.insert(_settlement(sid="S-2"))
        assert s2.sequence_id == 2

    async def test_duplicate_version_rejected(self):
        storage = InMemoryStorage()
        await storage.settlements.insert(_settlement())
        with pytest.raises(StorageError):
            await storage.settlements.insert(_settlement())


# ═══════════════════════════════════════════════════════════════════════════════
# B. Nesting and cancellation
# ═══════════════════════════════════════════════════════════════════════════════


class TestNestingAndCancellation:

    async def test_inner_transaction_joins_outer(self):
        storage = InMemoryStorage()
        async with storage.transaction() as outer:
            async with storage.transaction() as inner:
                assert inner is outer
            assert current_transaction() is outer
        assert current_transaction() is None

    async def test_outer_failure_undoes_inner_writes(self):
        storage = InMemoryStorage()
        with pytest.raises(_Boom):
            async with storage.transaction():
                async with storage.transaction():
                    await storage.settlements.insert(_settlement())
                raise _Boom()
        assert await storage.settlements.get("S-1", 1) is None

    async def test_cancelled_task_rolls_back(self):
        storage = InMemoryStorage()
        inserted = asyncio.Event()

        async def slow_ingest():
            async with storage.transaction():
                await storage.settlements.insert(_settlement())
                inserted.set()
                await asyncio.Event().wait()

        task = asyncio.create_task(slow_ingest())
        await inserted.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await storage.settlements.get("S-1", 1) is None


# ═══════════════════════════════════════════════════════════════════════════════
# C. Row locks
# ═══════════════════════════════════════════════════════════════════════════════


class TestLocks:

    async def test_lock_is_reentrant_within_transaction(self):
        storage = InMemoryStorage()
        async with storage.transaction() as tx:
            await tx.lock(GROUP.lock_key)
            await tx.lock(GROUP.lock_key)
            assert tx.held_locks == [GROUP.lock_key]

    async def test_lock_held_until_transaction_ends(self):
        storage = InMemoryStorage()
        order: list[str] = []
        first_locked = asyncio.Event()
        release_first = asyncio.Event()

        async def first():
            async with storage.transaction() as tx:
                await tx.lock(GROUP.lock_key)
                first_locked.set()
                await release_first.wait()
                order.append("first")

        async def second():
            await first_locked.wait()
            async with storage.transaction() as tx:
                await tx.lock(GROUP.lock_key)
                order.append("second")

        t1 = asyncio.create_task(first())
        t2 = asyncio.create_task(second())
        await first_locked.wait()
        await asyncio.sleep(0)
        assert order == []
        release_first.set()
        await asyncio.gather(t1, t2)
        assert order == ["first", "second"]

    async def test_lock_released_after_failure(self):
        storage = InMemoryStorage()
        with pytest.raises(_Boom):
            async with storage.transaction() as tx:
                await tx.lock(GROUP.lock_key)
                raise _Boom()
        async with storage.transaction() as tx:
            await asyncio.wait_for(tx.lock(GROUP.lock_key), timeout=1)

    async def test_different_groups_do_not_block(self):
        storage = InMemoryStorage()
        other = ExposureGroup("PTS-A", "PE-001", "CP-XYZ", date(2026, 3, 2))
        async with storage.transaction() as tx:
            await tx.lock(GROUP.lock_key)

            async def lock_other():
                async with storage.transaction() as tx2:
                    await tx2.lock(other.lock_key)
                    return True

            assert await asyncio.wait_for(asyncio.create_task(lock_other()), timeout=1)

    async def test_idle_locks_are_dropped(self):
        storage = InMemoryStorage()
        for i in range(20):
            async with storage.transaction() as tx:
                await tx.lock(("settlement", f"S-{i}"))
                await tx.lock(GROUP.lock_key)
                assert len(storage.locks) == 2
        assert len(storage.locks) == 0

    async def test_waiter_keeps_lock_alive(self):
        storage = InMemoryStorage()
        locked, unlock = asyncio.Event(), asyncio.Event()

        async def holder():
            async with storage.transaction() as tx:
                await tx.lock(GROUP.lock_key)
                locked.set()
                await unlock.wait()

        async def waiter():
            async with storage.transaction() as tx:
                await tx.lock(GROUP.lock_key)

        t1 = asyncio.create_task(holder())
        await locked.wait()
        t2 = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        assert len(storage.locks) == 1
        unlock.set()
        await asyncio.gather(t1, t2)
        assert len(storage.locks) == 0

    async def test_cancelled_waiter_leaves_no_entry(self):
        storage = InMemoryStorage()
        locked, unlock = asyncio.Event(), asyncio.Event()

        async def holder():
            async with storage.transaction() as tx:
                await tx.lock(GROUP.lock_key)
                locked.set()
                await unlock.wait()

        async def waiter():
            async with storage.transaction() as tx:
                await tx.lock(GROUP.lock_key)

        t1 = asyncio.create_task(holder())
        await locked.wait()
        t2 = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        t2.cancel()
        with pytest.raises(asyncio.CancelledError):
            await t2
        unlock.set()
        await t1
        assert len(storage.locks) == 0


# ═══════════════════════════════════════════════════════════════════════════════
# D. Settlement queries
# ═══════════════════════════════════════════════════════════════════════════════


class TestSettlementQueries:

    async def test_latest_version(self):
        storage = InMemoryStorage()
        await storage.settlements.insert(_settlement(version=1))
        await storage.settlements.insert(_settlement(version=3))
        latest = await storage.settlements.latest_version("S-1")
        assert latest.settlement_version == 3
        assert await storage.settlements.latest_version("missing") is None

    async def test_first_sequence_id_tracks_earliest_version(self):
        storage = InMemoryStorage()
        first = await storage.settlements.insert(_settlement(version=1))
        await storage.settlements.insert(_settlement(sid="OTHER"))
        second = await storage.settlements.insert(_settlement(version=2))
        assert await storage.settlements.first_sequence_id("S-1") == first.sequence_id
        assert await storage.settlements.get_by_sequence(second.sequence_id) is second
        assert await storage.settlements.first_sequence_id("missing") is None

    async def test_list_group_respects_max_sequence(self):
        storage = InMemoryStorage()
        for sid in ("A", "B", "C"):
            await storage.settlements.insert(_settlement(sid=sid))
        rows = await storage.settlements.list_group(GROUP, max_sequence_id=2)
        assert [r.settlement_id for r in rows] == ["A", "B"]

    async def test_distinct_groups_filters_by_date_and_counterparty(self):
        storage = InMemoryStorage()
        await storage.settlements.insert(_settlement(sid="A", counterparty="CP-1", value_date=date(2026, 3, 1)))
        await storage.settlements.insert(_settlement(sid="B", counterparty="CP-1", value_date=date(2026, 3, 1)))
        await storage.settlements.insert(_settlement(sid="C", counterparty="CP-2", value_date=date(2026, 3, 2)))
        await storage.settlements.insert(_settlement(sid="D", counterparty="CP-2", value_date=date(2026, 4, 1)))

        groups = await storage.settlements.distinct_groups(
            "PTS-A", "PE-001", None, date(2026, 3, 1), date(2026, 3, 31),
        )
        assert [(g.counterparty_id, g.value_date.day) for g in groups] == [("CP-1", 1), ("CP-2", 2)]

        only_cp2 = await storage.settlements.distinct_groups(
            "PTS-A", "PE-001", "CP-2", date(2026, 1, 1), date(2026, 12, 31),
        )
        assert len(only_cp2) == 2

    async def test_search_excludes_old_versions_on_request(self):
        storage = InMemoryStorage()
        await storage.settlements.insert(_settlement(version=1))
        await storage.settlements.insert(_settlement(version=2))
        await storage.settlements.mark_old("S-1", 2)

        current = await storage.settlements.search(include_old=False)
        assert [s.settlement_version for s in current] == [2]
        assert len(await storage.settlements.search()) == 2


# ═══════════════════════════════════════════════════════════════════════════════
# E. Compare-and-swap
# ═══════════════════════════════════════════════════════════════════════════════


class TestCompareAndSwap:

    async def test_stale_expected_ref_rejected(self):
        storage = InMemoryStorage()
        await storage.running_totals.compare_and_swap(RunningTotal(GROUP, Decimal("10"), 5), 0)
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            await storage.running_totals.compare_and_swap(RunningTotal(GROUP, Decimal("20"), 6), 3)
        assert exc_info.value.actual_ref == 5
        assert (await storage.running_totals.get(GROUP)).total_usd == Decimal("10")

    async def test_get_returns_copy(self):
        storage = InMemoryStorage()
        await storage.running_totals.compare_and_swap(RunningTotal(GROUP, Decimal("10"), 1), 0)
        row = await storage.running_totals.get(GROUP)
        row.total_usd = Decimal("999")
        assert (await storage.running_totals.get(GROUP)).total_usd == Decimal("10")
