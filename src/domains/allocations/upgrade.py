"""Upgrade handling when a student buys more sessions for a live allocation.

The current trainer is re-checked for the extra date range. If they pass,
the allocation is extended in place. If not, a replacement trainer gets a
second allocation holding only the new sessions, cross-linked to the
original. If nobody qualifies the original is extended anyway with a
warning for manual follow-up.
"""
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select

from src.domains.allocations.errors import AllocationError
from src.domains.allocations.fallback import TIER_HIGHEST_RATED
from src.domains.allocations.models import AllocationStatus, TrainerAllocation
from src.domains.allocations.schemas import AllocationDetails, AutoAssignRequest, PurchaseMetadata
from src.domains.courses.models import PURCHASE_TIERS
from src.domains.courses.purchases import PurchaseRecord
from src.domains.sessions.calendar import schedule_end_date
from src.domains.sessions.models import TutoringSession

if TYPE_CHECKING:
    from src.domains.allocations.service import AllocationService, AssignmentResult

logger = structlog.get_logger(__name__)

DEFAULT_ADDITIONAL_SESSIONS = 10


def infer_additional_sessions(
    purchase: PurchaseRecord | None,
    existing_total: int,
    requested: PurchaseMetadata | None = None,
) -> int:
    """Sessions bought on top of what the allocations already hold.

    Order: explicit value on the request, explicit value on the stored
    purchase, tier minus previous tier, tier minus the sessions already
    allocated, then the next tier step.
    """
    stored = purchase.metadata if purchase is not None else None
    for metadata in (requested, stored):
        if metadata is not None and metadata.additional_sessions is not None:
            return metadata.additional_sessions

    if purchase is not None:
        previous = next(
            (
                m.previous_purchase_tier
                for m in (requested, stored)
                if m is not None and m.previous_purchase_tier is not None
            ),
            None,
        )
        if previous is not None:
            return purchase.purchase_tier - previous
        return purchase.purchase_tier - existing_total

    for tier in PURCHASE_TIERS:
        if tier > existing_total:
            return tier - existing_total
    return DEFAULT_ADDITIONAL_SESSIONS


class UpgradeCoordinator:
    def __init__(self, service: "AllocationService"):
        self.service = service
        self.db = service.db
        self.config = service.config

    async def upgrade(
        self,
        allocation: TrainerAllocation,
        data: AutoAssignRequest,
        actor_id: uuid.UUID,
    ) -> "AssignmentResult":
        from src.domains.allocations.service import AssignmentResult

        allocation = await self.service._lock_allocation(allocation.id)
        details = AllocationDetails.load(allocation.details)
        linked_ids = list(details.upgraded_to or [])

        purchase = await self.service._purchase(data.student_id, data.course_id)
        applied = {entry.get("purchase_id") for entry in details.upgrade_history or []}
        if purchase is not None and str(purchase.purchase_id) in applied:
            logger.info(
                "upgrade_already_applied",
                allocation_id=str(allocation.id),
                purchase_id=str(purchase.purchase_id),
            )
            return AssignmentResult(outcome="no_change", allocation=allocation)

        existing_total = allocation.session_count + await self._linked_session_count(linked_ids)
        additional = infer_additional_sessions(purchase, existing_total, data.purchase_metadata)
        if additional <= 0:
            logger.info(
                "upgrade_no_additional_sessions",
                allocation_id=str(allocation.id),
                existing_total=existing_total,
            )
            return AssignmentResult(outcome="no_change", allocation=allocation)

        start = await self._extension_start(allocation, linked_ids, data, purchase)
        end = schedule_end_date(
            start, additional, allocation.recurrence_mode, self.config, self.service.today_provider()
        )
        request = await self.service.slot_request_for(allocation, start_date=start, end_date=end)
        history_entry = {
            "purchase_id": str(purchase.purchase_id) if purchase else None,
            "additional_sessions": additional,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "at": datetime.now(timezone.utc).isoformat(),
        }

        try:
            await self.service.verify_locked(allocation.trainer_id, request, exclude_allocation_id=allocation.id)
        except AllocationError as e:
            current_failure = e.message
        else:
            return await self._extend(allocation, details, additional, start, end, history_entry, warnings=None)

        logger.info(
            "upgrade_current_trainer_unavailable",
            allocation_id=str(allocation.id),
            trainer_id=str(allocation.trainer_id),
            reason=current_failure,
        )

        replacement_request = await self.service.slot_request_for(
            allocation,
            start_date=start,
            end_date=end,
            exclude_trainer_ids=frozenset({allocation.trainer_id}),
        )
        outcome = await self.service.selector.select(replacement_request, exclude_allocation_id=allocation.id)
        if not outcome.requires_manual_review:
            try:
                await self.service.verify_locked(
                    outcome.trainer_id,
                    replacement_request,
                    check_travel=outcome.tier != TIER_HIGHEST_RATED,
                )
            except AllocationError as e:
                logger.warning(
                    "upgrade_replacement_recheck_failed",
                    allocation_id=str(allocation.id),
                    trainer_id=str(outcome.trainer_id),
                    error=e.message,
                )
            else:
                return await self._replace(
                    allocation, details, outcome.trainer_id, actor_id, additional, start, end, history_entry
                )

        warnings = [current_failure]
        for reasons in outcome.rejections.values():
            warnings.extend(r for r in reasons if r not in warnings)
        return await self._extend(allocation, details, additional, start, end, history_entry, warnings=warnings)

    async def _extend(
        self,
        allocation: TrainerAllocation,
        details: AllocationDetails,
        additional: int,
        start: date,
        end: date,
        history_entry: dict,
        warnings: list[str] | None,
    ) -> "AssignmentResult":
        from src.domains.allocations.service import AssignmentResult

        first_number = allocation.session_count + 1
        allocation.session_count += additional
        allocation.schedule_end = max(end, allocation.schedule_end or end)

        details.additional_sessions = (details.additional_sessions or 0) + additional
        details.upgrade_history = [*(details.upgrade_history or []), {**history_entry, "mode": "extended"}]
        if warnings:
            details.trainer_availability_warning = warnings
        allocation.details = details.dump()

        self.service.outbox.generate_sessions(
            allocation.id,
            session_count=additional,
            start_date=start,
            start_number=first_number,
            total_sessions=allocation.session_count,
        )
        self.service.outbox.notify(allocation.id, "allocation.extended", [allocation.student_id, allocation.trainer_id])
        await self.db.commit()

        log = logger.warning if warnings else logger.info
        log(
            "allocation_extended",
            allocation_id=str(allocation.id),
            additional_sessions=additional,
            session_count=allocation.session_count,
            warnings=warnings,
        )
        allocation = await self.service._run_effects(allocation)
        return AssignmentResult(outcome="extended", allocation=allocation, warnings=warnings or [])

    async def _replace(
        self,
        original: TrainerAllocation,
        details: AllocationDetails,
        trainer_id: uuid.UUID,
        actor_id: uuid.UUID,
        additional: int,
        start: date,
        end: date,
        history_entry: dict,
    ) -> "AssignmentResult":
        from src.domains.allocations.service import AssignmentResult

        now = datetime.now(timezone.utc)
        replacement = TrainerAllocation(
            id=uuid.uuid4(),
            student_id=original.student_id,
            course_id=original.course_id,
            trainer_id=trainer_id,
            status=AllocationStatus.APPROVED,
            requested_by=actor_id,
            requested_at=now,
            allocated_by=actor_id,
            allocated_at=now,
            time_slot=original.time_slot,
            recurrence_mode=original.recurrence_mode,
            schedule_start=start,
            schedule_end=end,
            session_count=additional,
            session_duration_minutes=original.session_duration_minutes,
            details=AllocationDetails(
                upgrade_of=original.id,
                additional_sessions=additional,
                matching=details.matching,
            ).dump(),
        )
        self.db.add(replacement)

        details.upgraded_to = [*(details.upgraded_to or []), replacement.id]
        details.upgrade_history = [
            *(details.upgrade_history or []),
            {**history_entry, "mode": "replaced", "allocation_id": str(replacement.id)},
        ]
        original.details = details.dump()
        await self.db.flush()

        self.service.record_approval_effects(
            replacement,
            session_count=additional,
            start_date=start,
            start_number=1,
            total_sessions=additional,
        )
        await self.db.commit()

        logger.info(
            "allocation_upgrade_replaced",
            original_allocation_id=str(original.id),
            allocation_id=str(replacement.id),
            trainer_id=str(trainer_id),
            additional_sessions=additional,
        )
        original_id = original.id
        replacement = await self.service._run_effects(replacement)
        return AssignmentResult(outcome="replaced", allocation=replacement, original_allocation_id=original_id)

    async def _linked_session_count(self, linked_ids: list[uuid.UUID]) -> int:
        if not linked_ids:
            return 0
        result = await self.db.execute(
            select(func.coalesce(func.sum(TrainerAllocation.session_count), 0)).where(
                TrainerAllocation.id.in_(linked_ids)
            )
        )
        return int(result.scalar() or 0)

    async def _extension_start(
        self,
        allocation: TrainerAllocation,
        linked_ids: list[uuid.UUID],
        data: AutoAssignRequest,
        purchase: PurchaseRecord | None,
    ) -> date:
        """Day after the last scheduled session, or a later preferred start."""
        result = await self.db.execute(
            select(func.max(TutoringSession.scheduled_date)).where(
                TutoringSession.allocation_id.in_([allocation.id, *linked_ids])
            )
        )
        last = result.scalar()
        if last is None:
            last = allocation.schedule_end or self.service.today_provider()
        start = max(last + timedelta(days=1), self.service.today_provider())

        preferred = (
            data.start_date
            or data.purchase_metadata.start_date
            or (purchase.metadata.start_date if purchase else None)
        )
        if preferred is not None and preferred > start:
            start = preferred
        return start
