"""
Core domain models for the payment limit monitor.

These are plain dataclasses used throughout the engine. Persistence is behind
the store contracts in storage/memory.py; nothing here touches I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


# ── Enums ─────────────────────────────────────────────────────────────────────

class SettlementDirection(str, Enum):
    PAY     = "PAY"
    RECEIVE = "RECEIVE"


class SettlementType(str, Enum):
    GROSS = "GROSS"
    NET   = "NET"


class BusinessStatus(str, Enum):
    """Upstream business validity, reported by the trading system."""
    PENDING   = "PENDING"
    VERIFIED  = "VERIFIED"
    INVALID   = "INVALID"
    CANCELLED = "CANCELLED"


class WorkflowStatus(str, Enum):
    """
    Derived approval status. Never stored; always projected from the running
    total, the exposure limit and the activity trail.
    """
    CREATED           = "CREATED"
    BLOCKED           = "BLOCKED"
    PENDING_AUTHORISE = "PENDING_AUTHORISE"
    AUTHORISED        = "AUTHORISED"


class ActionType(str, Enum):
    REQUEST_RELEASE = "REQUEST_RELEASE"
    AUTHORISE       = "AUTHORISE"
    RECALCULATE     = "RECALCULATE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Exposure group ────────────────────────────────────────────────────────────

@dataclass(frozen=True, order=True)
class ExposureGroup:
    """Aggregation key: (PTS, processing entity, counterparty, value date)."""
    pts: str
    processing_entity: str
    counterparty_id: str
    value_date: date

    @property
    def key(self) -> str:
        return f"{self.pts}|{self.processing_entity}|{self.counterparty_id}|{self.value_date.isoformat()}"

    @property
    def lock_key(self) -> tuple[str, ...]:
        return ("group", self.pts, self.processing_entity, self.counterparty_id, self.value_date.isoformat())

    def to_dict(self) -> dict[str, str]:
        return {
            "pts":               self.pts,
            "processing_entity": self.processing_entity,
            "counterparty_id":   self.counterparty_id,
            "value_date":        self.value_date.isoformat(),
        }


# ── Settlement ────────────────────────────────────────────────────────────────

@dataclass
class Settlement:
    """
    A single payment instruction, one row per (settlement_id, settlement_version).

    sequence_id is assigned by the store on insert and is the unit the
    aggregator's watermark counts in.
    """
    settlement_id: str
    settlement_version: int
    pts: str
    processing_entity: str
    counterparty_id: str
    value_date: date
    currency: str                        # ISO 4217 e.g. "EUR"
    amount: Decimal                      # Always Decimal, never float
    direction: SettlementDirection
    settlement_type: SettlementType
    business_status: BusinessStatus
    is_old: bool = False
    sequence_id: Optional[int] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def group(self) -> ExposureGroup:
        return ExposureGroup(self.pts, self.processing_entity, self.counterparty_id, self.value_date)

    @property
    def in_scope(self) -> bool:
        """Only the current VERIFIED version counts towards exposure."""
        return self.business_status == BusinessStatus.VERIFIED and not self.is_old

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "settlement_id":      self.settlement_id,
            "settlement_version": self.settlement_version,
            "sequence_id":        self.sequence_id,
            "pts":                self.pts,
            "processing_entity":  self.processing_entity,
            "counterparty_id":    self.counterparty_id,
            "value_date":         self.value_date.isoformat(),
            "currency":           self.currency,
            "amount":             str(self.amount),
            "direction":          self.direction.value,
            "settlement_type":    self.settlement_type.value,
            "business_status":    self.business_status.value,
            "is_old":             self.is_old,
        }


@dataclass
class SettlementIngestionRequest:
    """
    Raw inbound settlement as received from a trading system.

    Fields are deliberately loose (strings, numbers or None); the validator
    reports every problem at once before anything is converted.
    """
    settlement_id: Optional[str] = None
    settlement_version: Any = None
    pts: Optional[str] = None
    processing_entity: Optional[str] = None
    counterparty_id: Optional[str] = None
    value_date: Any = None
    currency: Optional[str] = None
    amount: Any = None
    direction: Optional[str] = None
    settlement_type: Optional[str] = None
    business_status: Optional[str] = None

    @property
    def identity(self) -> tuple[str, str]:
        return (str(self.settlement_id), str(self.settlement_version))


# ── Running total / rates ─────────────────────────────────────────────────────

@dataclass
class RunningTotal:
    """One row per exposure group, owned by the aggregator."""
    group: ExposureGroup
    total_usd: Decimal = Decimal("0")
    last_included_ref: int = 0
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ExchangeRate:
    currency: str
    rate_to_usd: Decimal
    updated_at: datetime = field(default_factory=_utcnow)


# ── Activity trail ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActivityRecord:
    """
    Append-only workflow fact.

    RECALCULATE records are about a group, not a settlement: settlement_id and
    settlement_version are None and the group is carried in counterparty_id /
    value_date alongside pts / processing_entity.
    """
    pts: str
    processing_entity: str
    settlement_id: Optional[str]
    settlement_version: Optional[int]
    action_type: ActionType
    user_id: str
    user_name: Optional[str] = None
    comment: Optional[str] = None
    counterparty_id: Optional[str] = None
    value_date: Optional[date] = None
    timestamp: datetime = field(default_factory=_utcnow)
    record_id: Optional[int] = None
    checksum: Optional[str] = None


@dataclass(frozen=True)
class ReleaseRequest:
    user_id: str
    user_name: Optional[str]
    requested_at: datetime
    comment: Optional[str] = None


@dataclass
class WorkflowInfo:
    """Projection of the activity trail for one (settlement_id, version)."""
    requests: list[ReleaseRequest] = field(default_factory=list)
    authoriser_id: Optional[str] = None
    authoriser_name: Optional[str] = None
    authorised_at: Optional[datetime] = None
    authorise_comment: Optional[str] = None

    @property
    def requester_ids(self) -> list[str]:
        return [r.user_id for r in self.requests]

    @property
    def is_requested(self) -> bool:
        return bool(self.requests)

    @property
    def is_authorised(self) -> bool:
        return self.authoriser_id is not None
