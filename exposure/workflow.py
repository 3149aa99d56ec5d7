"""
ApprovalWorkflow — release gate for settlements that breach their group limit.

Lifecycle (status is derived, never stored):
    CREATED            exposure through this settlement is within the limit
    BLOCKED            in scope and exposure through this settlement > limit
    PENDING_AUTHORISE  at least one REQUEST_RELEASE on the trail
    AUTHORISED         an AUTHORISE on the trail (terminal)

Precedence: AUTHORISED > PENDING_AUTHORISE > BLOCKED > CREATED. Trail facts
are permanent: a recalculation that brings the group back under its limit
leaves pending and authorised settlements as they are.

Segregation of duties: nobody who requested release of a settlement version
may authorise it. Several users may request the same version; each only once.

Guards for one (settlement_id, version) run under a storage lock so two
concurrent requests from the same user cannot both pass the duplicate check.
The group lock is taken next, so a guard never reads a running total that an
uncommitted ingestion or recalculation is still writing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from models.domain import (
    ActionType,
    ActivityRecord,
    ExposureGroup,
    Settlement,
    WorkflowInfo,
    WorkflowStatus,
)
from models.errors import (
    DuplicateRequestError,
    InvalidTransitionError,
    SelfAuthorisationError,
    SettlementNotFoundError,
)

logger = logging.getLogger("plm.exposure.workflow")


def derive_status(
    exposure: Decimal,
    limit: Decimal,
    info: WorkflowInfo,
    in_scope: bool = True,
) -> WorkflowStatus:
    if info.is_authorised:
        return WorkflowStatus.AUTHORISED
    if info.is_requested:
        return WorkflowStatus.PENDING_AUTHORISE
    if in_scope and exposure > limit:
        return WorkflowStatus.BLOCKED
    return WorkflowStatus.CREATED


@dataclass(frozen=True)
class StatusView:
    """A settlement's derived status plus the inputs it was derived from."""
    settlement: Settlement
    status: WorkflowStatus
    exposure_through: Decimal
    exposure_limit: Decimal
    workflow_info: WorkflowInfo


class ApprovalWorkflow:
    """
    Dependencies injected:
        storage     — InMemoryStorage (settlement lookup, transactions, locks)
        audit       — AuditTrail; this class is its only writer
        aggregator  — ExposureAggregator, for the exposure through a settlement
        limits      — ExposureLimitConfig
    """

    def __init__(self, storage, audit, aggregator, limits) -> None:
        self.storage    = storage
        self.audit      = audit
        self.aggregator = aggregator
        self.limits     = limits

    # ── Status ────────────────────────────────────────────────────────────────

    async def status_of(self, settlement: Settlement) -> StatusView:
        group    = settlement.group
        exposure = await self.aggregator.total_through(group, settlement.sequence_id)
        limit    = self.limits.exposure_limit(group)
        info     = await self.audit.workflow_info(settlement.settlement_id, settlement.settlement_version)
        return StatusView(
            settlement=settlement,
            status=derive_status(exposure, limit, info, settlement.in_scope),
            exposure_through=exposure,
            exposure_limit=limit,
            workflow_info=info,
        )

    async def current_status(self, settlement_id: str, version: int) -> StatusView:
        return await self.status_of(await self._get(settlement_id, version))

    # ── Public API ────────────────────────────────────────────────────────────

    async def request_release(
        self,
        settlement_id: str,
        version: int,
        user_id: str,
        user_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> StatusView:
        async with self.storage.transaction() as tx:
            await tx.lock(("workflow", settlement_id, version))
            settlement = await self._get(settlement_id, version)
            await tx.lock(settlement.group.lock_key)
            view = await self.status_of(settlement)

            if view.workflow_info.is_authorised:
                raise InvalidTransitionError(settlement_id, version, "already authorised")
            if await self.audit.has_user_requested(settlement_id, version, user_id):
                raise DuplicateRequestError(settlement_id, version, user_id)
            if view.status == WorkflowStatus.CREATED:
                raise InvalidTransitionError(settlement_id, version, "not currently blocked")

            await self.audit.append(self._record(settlement, ActionType.REQUEST_RELEASE,
                                                 user_id, user_name, comment))
            view = await self.status_of(settlement)

        logger.info("release requested", extra={
            "settlement_id": settlement_id,
            "version": version,
            "user_id": user_id,
            "requesters": view.workflow_info.requester_ids,
        })
        return view

    async def authorise(
        self,
        settlement_id: str,
        version: int,
        authoriser_id: str,
        user_name: Optional[str] = None,
        comment: Optional[str] = None,
    ) -> StatusView:
        async with self.storage.transaction() as tx:
            await tx.lock(("workflow", settlement_id, version))
            settlement = await self._get(settlement_id, version)
            await tx.lock(settlement.group.lock_key)
            view = await self.status_of(settlement)

            if authoriser_id in await self.audit.requesters(settlement_id, version):
                raise SelfAuthorisationError(settlement_id, version, authoriser_id)
            if view.status == WorkflowStatus.AUTHORISED:
                raise InvalidTransitionError(settlement_id, version, "already authorised")
            if view.status != WorkflowStatus.PENDING_AUTHORISE:
                raise InvalidTransitionError(
                    settlement_id, version,
                    f"no pending release request (status {view.status.value})",
                )

            await self.audit.append(self._record(settlement, ActionType.AUTHORISE,
                                                 authoriser_id, user_name, comment))
            view = await self.status_of(settlement)

        logger.info("release authorised", extra={
            "settlement_id": settlement_id,
            "version": version,
            "authoriser_id": authoriser_id,
        })
        return view

    async def record_recalculation(
        self,
        group: ExposureGroup,
        user_id: str,
        user_name: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> ActivityRecord:
        return await self.audit.append(ActivityRecord(
            pts=group.pts,
            processing_entity=group.processing_entity,
            settlement_id=None,
            settlement_version=None,
            action_type=ActionType.RECALCULATE,
            user_id=user_id,
            user_name=user_name,
            comment=reason,
            counterparty_id=group.counterparty_id,
            value_date=group.value_date,
        ))

    # ── Internal ──────────────────────────────────────────────────────────────

    async def _get(self, settlement_id: str, version: int) -> Settlement:
        settlement = await self.storage.settlements.get(settlement_id, version)
        if settlement is None:
            raise SettlementNotFoundError(settlement_id, version)
        return settlement

    @staticmethod
    def _record(
        settlement: Settlement,
        action: ActionType,
        user_id: str,
        user_name: Optional[str],
        comment: Optional[str],
    ) -> ActivityRecord:
        return ActivityRecord(
            pts=settlement.pts,
            processing_entity=settlement.processing_entity,
            settlement_id=settlement.settlement_id,
            settlement_version=settlement.settlement_version,
            action_type=action,
            user_id=user_id,
            user_name=user_name,
            comment=comment,
            counterparty_id=settlement.counterparty_id,
            value_date=settlement.value_date,
        )
