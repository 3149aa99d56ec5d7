"""Shared fixtures: a fresh engine over in-memory storage for every test."""

from __future__ import annotations

from decimal import Decimal

import pytest

from bus.memory_bus import InMemoryBus
from config.limits import ExposureLimitConfig
from exposure.engine import build_engine
from models.domain import SettlementIngestionRequest


def make_request(**overrides) -> SettlementIngestionRequest:
    fields = dict(
        settlement_id="SETT-001",
        settlement_version=1,
        pts="PTS-A",
        processing_entity="PE-001",
        counterparty_id="CP-ABC",
        value_date="2026-03-02",
        currency="USD",
        amount="600000.00",
        direction="PAY",
        settlement_type="GROSS",
        business_status="VERIFIED",
    )
    fields.update(overrides)
    return SettlementIngestionRequest(**fields)


@pytest.fixture()
def request_factory():
    return make_request


@pytest.fixture()
def bus() -> InMemoryBus:
    return InMemoryBus()


@pytest.fixture()
def limits() -> ExposureLimitConfig:
    return ExposureLimitConfig(default_limit=Decimal("1000000.00"), overrides={})


@pytest.fixture()
def engine(bus, limits):
    return build_engine(bus=bus, limits=limits)
