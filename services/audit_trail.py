"""
AuditTrail — append-only, tamper-evident record of workflow actions.

Every REQUEST_RELEASE, AUTHORISE and RECALCULATE is stored with:
  - Timestamp (UTC)
  - Acting user id and display name
  - Settlement (id, version) or, for RECALCULATE, the exposure group
  - Free-text comment / reason
  - SHA-256 checksum over the record's content (for tamper detection)

The trail is the single source of truth for workflow status. Nothing caches a
"current status"; every read re-derives it from these records, so a failed
write must surface to the caller rather than be logged and forgotten.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import replace
from typing import Any

from models.domain import ActionType, ActivityRecord, ReleaseRequest, WorkflowInfo

logger = logging.getLogger("plm.services.audit")


def _checksum_payload(record: ActivityRecord) -> dict[str, Any]:
    return {
        "pts":                record.pts,
        "processing_entity":  record.processing_entity,
        "settlement_id":      record.settlement_id,
        "settlement_version": record.settlement_version,
        "action_type":        record.action_type.value,
        "user_id":            record.user_id,
        "user_name":          record.user_name,
        "comment":            record.comment,
        "counterparty_id":    record.counterparty_id,
        "value_date":         record.value_date.isoformat() if record.value_date else None,
        "timestamp":          record.timestamp.isoformat(),
    }


def compute_checksum(record: ActivityRecord) -> str:
    payload = json.dumps(_checksum_payload(record), sort_keys=True).encode()
    return hashlib.sha256(payload).hexdigest()


class AuditTrail:
    """
    Persists activity records.

    `store` must expose:
        async insert(record: ActivityRecord) -> ActivityRecord
        async find(settlement_id, version, action_type=None) -> list[ActivityRecord]
    """

    def __init__(self, store) -> None:
        self.store = store

    async def append(self, record: ActivityRecord) -> ActivityRecord:
        """
        Write an immutable activity record and return it with its record_id
        and checksum populated. Write failures are logged at CRITICAL and
        re-raised.
        """
        record = replace(record, checksum=compute_checksum(record))
        try:
            stored = await self.store.insert(record)
        except Exception as exc:
            logger.critical(
                "AUDIT TRAIL WRITE FAILED",
                extra={
                    "action_type":        record.action_type.value,
                    "settlement_id":      record.settlement_id,
                    "settlement_version": record.settlement_version,
                    "user_id":            record.user_id,
                    "error":              str(exc),
                },
                exc_info=True,
            )
            raise
        logger.info(
            "audit %s by %s on %s v%s",
            record.action_type.value, record.user_id,
            record.settlement_id, record.settlement_version,
        )
        return stored

    # ── Queries ───────────────────────────────────────────────────────────────

    async def has_user_requested(self, settlement_id: str, version: int, user_id: str) -> bool:
        requests = await self.store.find(settlement_id, version, ActionType.REQUEST_RELEASE)
        return any(r.user_id == user_id for r in requests)

    async def is_authorised(self, settlement_id: str, version: int) -> bool:
        return bool(await self.store.find(settlement_id, version, ActionType.AUTHORISE))

    async def requesters(self, settlement_id: str, version: int) -> list[str]:
        requests = await self.store.find(settlement_id, version, ActionType.REQUEST_RELEASE)
        return [r.user_id for r in requests]

    async def workflow_info(self, settlement_id: str, version: int) -> WorkflowInfo:
        info = WorkflowInfo()
        for record in await self.history(settlement_id, version):
            if record.action_type == ActionType.REQUEST_RELEASE:
                info.requests.append(ReleaseRequest(
                    user_id=record.user_id,
                    user_name=record.user_name,
                    requested_at=record.timestamp,
                    comment=record.comment,
                ))
            elif record.action_type == ActionType.AUTHORISE and info.authoriser_id is None:
                info.authoriser_id     = record.user_id
                info.authoriser_name   = record.user_name
                info.authorised_at     = record.timestamp
                info.authorise_comment = record.comment
        return info

    async def history(self, settlement_id: str, version: int) -> list[ActivityRecord]:
        records = await self.store.find(settlement_id, version)
        return sorted(records, key=lambda r: (r.timestamp, r.record_id or 0))

    def verify(self, record: ActivityRecord) -> bool:
        """Re-compute the checksum and compare. True if the record is unmodified."""
        return compute_checksum(record) == record.checksum
