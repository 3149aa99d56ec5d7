"""
Domain model contract tests.

Covers the properties the rest of the engine relies on: exposure group keys
and ordering, settlement scope, timezone-aware timestamps, Decimal amounts,
and the workflow projection helpers.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from models.domain import (
    BusinessStatus,
    ExposureGroup,
    ReleaseRequest,
    Settlement,
    SettlementDirection,
    SettlementIngestionRequest,
    SettlementType,
    WorkflowInfo,
    WorkflowStatus,
)


# ── helpers ───────────────────────────────────────────────────────────────────

def _settlement(**overrides) -> Settlement:
    defaults = dict(
        settlement_id="SETT-001",
        settlement_version=1,
        pts="PTS-A",
        processing_entity="PE-001",
        counterparty_id="CP-ABC",
        value_date=date(2026, 3, 2),
        currency="EUR",
        amount=Decimal("1000.00"),
        direction=SettlementDirection.PAY,
        settlement_type=SettlementType.GROSS,
        business_status=BusinessStatus.VERIFIED,
    )
    defaults.update(overrides)
    return Settlement(**defaults)


# ── ExposureGroup ─────────────────────────────────────────────────────────────

class TestExposureGroup:

    def test_key_joins_fields(self):
        group = ExposureGroup("PTS-A", "PE-001", "CP-ABC", date(2026, 3, 2))
        assert group.key == "PTS-A|PE-001|CP-ABC|2026-03-02"

    def test_groups_sort_deterministically(self):
        a = ExposureGroup("PTS-A", "PE-001", "CP-1", date(2026, 3, 2))
        b = ExposureGroup("PTS-A", "PE-001", "CP-2", date(2026, 3, 1))
        assert sorted([b, a]) == [a, b]
        assert sorted([b.lock_key, a.lock_key]) == [a.lock_key, b.lock_key]

    def test_group_is_hashable_and_frozen(self):
        group = ExposureGroup("PTS-A", "PE-001", "CP-1", date(2026, 3, 2))
        assert {group: 1}[ExposureGroup("PTS-A", "PE-001", "CP-1", date(2026, 3, 2))] == 1
        with pytest.raises((AttributeError, TypeError)):
            group.pts = "PTS-B"  # type: ignore[misc]


# ── Settlement ────────────────────────────────────────────────────────────────

class TestSettlement:

    def test_group_derived_from_fields(self):
        s = _settlement()
        assert s.group == ExposureGroup("PTS-A", "PE-001", "CP-ABC", date(2026, 3, 2))

    @pytest.mark.parametrize("status,is_old,expected", [
        (BusinessStatus.VERIFIED,  False, True),
        (BusinessStatus.VERIFIED,  True,  False),
        (BusinessStatus.PENDING,   False, False),
        (BusinessStatus.INVALID,   False, False),
        (BusinessStatus.CANCELLED, False, False),
    ])
    def test_in_scope(self, status, is_old, expected):
        assert _settlement(business_status=status, is_old=is_old).in_scope is expected

    def test_receive_direction_still_in_scope(self):
        assert _settlement(direction=SettlementDirection.RECEIVE).in_scope

    def test_timestamps_are_utc_aware(self):
        s = _settlement()
        assert s.created_at.tzinfo is not None
        assert s.created_at.utcoffset().total_seconds() == 0

    def test_touch_advances_updated_at(self):
        s = _settlement()
        before = s.updated_at
        s.touch()
        assert s.updated_at >= before

    def test_to_dict_keeps_amount_as_string(self):
        d = _settlement(amount=Decimal("1000.10")).to_dict()
        assert d["amount"] == "1000.10"
        assert d["value_date"] == "2026-03-02"
        assert d["business_status"] == "VERIFIED"


# ── Ingestion request ─────────────────────────────────────────────────────────

class TestIngestionRequest:

    def test_all_fields_optional(self):
        req = SettlementIngestionRequest()
        assert req.settlement_id is None and req.amount is None

    def test_identity_stringifies(self):
        assert SettlementIngestionRequest(settlement_id="S", settlement_version=3).identity == ("S", "3")


# ── Workflow projection ───────────────────────────────────────────────────────

class TestWorkflowInfo:

    def test_empty_info(self):
        info = WorkflowInfo()
        assert not info.is_requested
        assert not info.is_authorised
        assert info.requester_ids == []

    def test_requesters_and_authoriser(self):
        now = datetime.now(timezone.utc)
        info = WorkflowInfo(
            requests=[ReleaseRequest("alice", "Alice", now), ReleaseRequest("carol", None, now)],
            authoriser_id="bob",
        )
        assert info.requester_ids == ["alice", "carol"]
        assert info.is_requested and info.is_authorised

    def test_workflow_status_values(self):
        assert [s.value for s in WorkflowStatus] == [
            "CREATED", "BLOCKED", "PENDING_AUTHORISE", "AUTHORISED",
        ]
