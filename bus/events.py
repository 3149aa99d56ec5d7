"""
Event definitions for the payment limit monitor's notification bus.

The engine publishes an Event after each committed change; downstream
consumers (dashboards, alerting, the rate-refresh listener) subscribe by type.
Stream key format for RedisBus: plm:<event_type>
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any


# ── Event model ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Event:
    event_id: str               # UUID, unique per event
    event_type: str             # e.g. "settlement.blocked"
    source: str                 # emitting component, e.g. "ingestion"
    timestamp_utc: datetime     # timezone-aware UTC datetime
    payload: dict[str, Any]     # JSON-serialisable; amounts as strings
    correlation_id: str         # ties together events of one operation
    version: str = "1.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id":       self.event_id,
            "event_type":     self.event_type,
            "source":         self.source,
            "timestamp_utc":  self.timestamp_utc.isoformat(),
            "payload":        self.payload,
            "correlation_id": self.correlation_id,
            "version":        self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            event_id=data["event_id"],
            event_type=data["event_type"],
            source=data["source"],
            timestamp_utc=datetime.fromisoformat(data["timestamp_utc"]),
            payload=data["payload"],
            correlation_id=data["correlation_id"],
            version=data.get("version", "1.0"),
        )


def create_event(
    event_type: str,
    source: str,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> Event:
    """Build an Event with fresh ids and the current UTC time."""
    return Event(
        event_id=str(uuid.uuid4()),
        event_type=event_type,
        source=source,
        timestamp_utc=datetime.now(timezone.utc),
        payload=payload,
        correlation_id=correlation_id or str(uuid.uuid4()),
    )


# ── Event type constants ───────────────────────────────────────────────────────

# Ingestion
SETTLEMENT_INGESTED  = "settlement.ingested"
SETTLEMENT_BLOCKED   = "settlement.blocked"

# Approval workflow
RELEASE_REQUESTED    = "workflow.release.requested"
RELEASE_AUTHORISED   = "workflow.authorised"

# Manual recalculation
GROUP_RECALCULATED   = "exposure.group.recalculated"

# Rate refresh job
RATES_REFRESHED      = "fx.rates.refreshed"

ALL_EVENT_TYPES: list[str] = [
    SETTLEMENT_INGESTED,
    SETTLEMENT_BLOCKED,
    RELEASE_REQUESTED,
    RELEASE_AUTHORISED,
    GROUP_RECALCULATED,
    RATES_REFRESHED,
]
