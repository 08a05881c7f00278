"""Allocation lifecycle: create, approve, reject, activate, cancel, complete.

State machine::

    pending --approve--> approved --activate--> active
    pending --reject---> rejected
    approved|active --cancel|complete--> cancelled|completed

Transitions lock the rows they depend on, re-check trainer eligibility,
record their side effects in the outbox and commit once. Effects run after
the commit (see ``effects.EffectRunner``).
"""
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

import structlog
from sqlalchemy import and_, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.scheduling import SchedulingConfig
from src.core.redis import EventChannel
from src.domains.allocations.candidates import SlotRequest
from src.domains.allocations.capacity import CapacitySnapshot, get_capacity_snapshot
from src.domains.allocations.effects import (
    SESSIONS_GENERATED,
    STATUS_CHANGED,
    TRAINER_ALLOCATED,
    EffectOutbox,
    EffectRunner,
    to_jsonable,
)
from src.domains.allocations.eligibility import EligibilityResult
from src.domains.allocations.errors import (
    AllocationError,
    CapacityExhaustedError,
    ConflictError,
    DependencyDegradedError,
    NotFoundError,
    ValidationError,
)
from src.domains.allocations.fallback import TIER_HIGHEST_RATED
from src.domains.allocations.models import (
    LIVE_STATUSES,
    OPEN_STATUSES,
    AllocationStatus,
    RecurrenceMode,
    TrainerAllocation,
)
from src.domains.allocations.schemas import (
    AllocationCreate,
    AllocationDetails,
    AllocationUpdate,
    AutoAssignRequest,
    ScheduleConfig,
)
from src.domains.allocations.selector import SelectionOutcome, TrainerSelector
from src.domains.allocations.specialty import course_specialties
from src.domains.allocations.timeslots import format_time_slot, matches_preferred_slot, parse_time_slot
from src.domains.courses.models import Course
from src.domains.courses.purchases import PurchaseProvider, PurchaseRecord
from src.domains.notifications.dispatcher import NotificationDispatcher
from src.domains.payroll.ledger import PayrollLedger
from src.domains.sessions.calendar import schedule_end_date, session_duration
from src.domains.sessions.generator import GenerationResult, SessionScheduleGenerator
from src.domains.sessions.models import SessionStatus, TutoringSession
from src.domains.students.models import StudentProfile
from src.domains.trainers.models import (
    TrainerApprovalStatus,
    TrainerAvailabilitySlot,
    TrainerProfile,
)
from src.domains.users.models import Gender, User

logger = structlog.get_logger(__name__)


@dataclass
class ResolvedSchedule:
    time_slot: time
    start_date: date
    end_date: date
    recurrence_mode: RecurrenceMode
    session_count: int
    session_duration_minutes: int


@dataclass
class AssignmentResult:
    """Outcome of a purchase-driven assignment or upgrade."""

    outcome: str
    allocation: TrainerAllocation
    original_allocation_id: uuid.UUID | None = None
    reason_code: str | None = None
    warnings: list[str] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AllocationService:
    """Service for the allocation lifecycle and scheduling queries."""

    def __init__(
        self,
        db: AsyncSession,
        config: SchedulingConfig | None = None,
        notifier: NotificationDispatcher | None = None,
        events: type[EventChannel] = EventChannel,
        today_provider: Callable[[], date] = date.today,
    ):
        self.db = db
        self.config = config or SchedulingConfig.from_settings()
        self.today_provider = today_provider
        self.events = events
        self.selector = TrainerSelector(db, self.config)
        self.eligibility = self.selector.eligibility
        self.generator = SessionScheduleGenerator(db, self.config, today_provider)
        self.purchases = PurchaseProvider(db)
        self.payroll = PayrollLedger(db)
        self.outbox = EffectOutbox(db)
        self.runner = EffectRunner(
            db,
            self.config,
            generator=self.generator,
            notifier=notifier,
            payroll=self.payroll,
            events=events,
            today_provider=today_provider,
        )

    # ==================== Lookups ====================

    async def get_allocation(self, allocation_id: uuid.UUID) -> TrainerAllocation:
        allocation = await self.db.get(TrainerAllocation, allocation_id)
        if allocation is None:
            raise NotFoundError(f"Allocation {allocation_id} not found", allocation_id=allocation_id)
        return allocation

    async def list_allocations(
        self,
        student_id: uuid.UUID | None = None,
        trainer_id: uuid.UUID | None = None,
        status: AllocationStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[TrainerAllocation], int]:
        conditions = []
        if student_id is not None:
            conditions.append(TrainerAllocation.student_id == student_id)
        if trainer_id is not None:
            conditions.append(TrainerAllocation.trainer_id == trainer_id)
        if status is not None:
            conditions.append(TrainerAllocation.status == status)

        query = select(TrainerAllocation)
        count_query = select(func.count(TrainerAllocation.id))
        if conditions:
            query = query.where(and_(*conditions))
            count_query = count_query.where(and_(*conditions))

        total = (await self.db.execute(count_query)).scalar() or 0
        result = await self.db.execute(
            query.order_by(TrainerAllocation.created_at.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_sessions(self, allocation_id: uuid.UUID) -> list[TutoringSession]:
        await self.get_allocation(allocation_id)
        result = await self.db.execute(
            select(TutoringSession)
            .where(TutoringSession.allocation_id == allocation_id)
            .order_by(TutoringSession.scheduled_date, TutoringSession.session_number)
        )
        return list(result.scalars().all())

    async def get_capacity_snapshot(self, trainer_id: uuid.UUID) -> CapacitySnapshot:
        profile = await self._trainer_profile(trainer_id)
        return await get_capacity_snapshot(self.db, trainer_id, profile.rating_average)

    # ==================== Create ====================

    async def create_allocation(
        self,
        data: AllocationCreate,
        actor_id: uuid.UUID,
    ) -> tuple[TrainerAllocation, bool]:
        """Create a pending allocation.

        When an open allocation already exists for the same student and
        course, it is returned instead (pending ones absorb the new trainer
        and notes). Returns ``(allocation, created)``.

        Raises:
            ConflictError: The open allocation is bound to a different trainer
        """
        await self._require_user(data.student_id, "Student")
        if data.course_id:
            await self._course(data.course_id)

        existing = await self._find_allocation(data.student_id, data.course_id, OPEN_STATUSES)
        if existing is not None:
            if data.trainer_id and existing.trainer_id and existing.trainer_id != data.trainer_id:
                raise ConflictError(
                    f"Student already has a {existing.status.value} allocation for this course "
                    f"with another trainer",
                    allocation_id=existing.id,
                )
            if existing.status == AllocationStatus.PENDING:
                if data.trainer_id and existing.trainer_id is None:
                    await self._approved_trainer(data.trainer_id)
                    existing.trainer_id = data.trainer_id
                if data.notes:
                    existing.notes = f"{existing.notes}\n{data.notes}" if existing.notes else data.notes
                await self.db.commit()
            logger.info(
                "allocation_create_merged",
                allocation_id=str(existing.id),
                student_id=str(data.student_id),
                status=existing.status.value,
            )
            return existing, False

        if data.trainer_id:
            await self._approved_trainer(data.trainer_id)

        purchase = await self._purchase(data.student_id, data.course_id) if data.course_id else None
        schedule = self.resolve_schedule(data.schedule, purchase)
        allocation = self._new_allocation(
            student_id=data.student_id,
            course_id=data.course_id,
            trainer_id=data.trainer_id,
            actor_id=actor_id,
            schedule=schedule,
            notes=data.notes,
        )
        self.db.add(allocation)
        await self.db.commit()

        logger.info(
            "allocation_created",
            allocation_id=str(allocation.id),
            student_id=str(allocation.student_id),
            trainer_id=str(allocation.trainer_id) if allocation.trainer_id else None,
        )
        return allocation, True

    def resolve_schedule(
        self,
        schedule: ScheduleConfig,
        purchase: PurchaseRecord | None = None,
        current: TrainerAllocation | None = None,
    ) -> ResolvedSchedule:
        """Fill a schedule from, in order: explicit values, the current
        allocation, the purchase record, then configured defaults.
        """
        metadata = purchase.metadata if purchase else None
        explicit = schedule.model_fields_set

        if "recurrence_mode" in explicit:
            mode = schedule.recurrence_mode
        elif current is not None:
            mode = current.recurrence_mode
        elif metadata and metadata.recurrence_mode:
            mode = metadata.recurrence_mode
        else:
            mode = RecurrenceMode.DAILY

        slot = (
            schedule.time_slot
            or (current.time_slot if current else None)
            or (metadata.time_slot if metadata else None)
            or parse_time_slot(self.config.default_time_slot)
        )
        start = (
            schedule.start_date
            or (current.schedule_start if current else None)
            or (metadata.start_date if metadata else None)
            or self.today_provider() + timedelta(days=1)
        )
        count = (
            schedule.session_count
            or (current.session_count if current else None)
            or (purchase.purchase_tier if purchase else None)
            or self.config.default_session_count
        )
        explicit_duration = schedule.session_duration_minutes
        if explicit_duration is None and current is not None and "recurrence_mode" not in explicit:
            explicit_duration = current.session_duration_minutes
        duration = session_duration(mode, self.config, explicit_duration)

        return ResolvedSchedule(
            time_slot=slot,
            start_date=start,
            end_date=schedule_end_date(start, count, mode, self.config, self.today_provider()),
            recurrence_mode=mode,
            session_count=count,
            session_duration_minutes=duration,
        )

    # ==================== Transitions ====================

    async def approve_allocation(
        self,
        allocation_id: uuid.UUID,
        actor_id: uuid.UUID,
        trainer_id: uuid.UUID | None = None,
    ) -> TrainerAllocation:
        """Approve a pending allocation, picking a trainer when none is set.

        Raises:
            ConflictError: Not pending, or the trainer fails a schedule check
            CapacityExhaustedError: The trainer (or every candidate) is at cap
        """
        allocation = await self._lock_allocation(allocation_id)
        if allocation.status != AllocationStatus.PENDING:
            raise ConflictError(
                f"Only pending allocations can be approved (status is {allocation.status.value})",
                allocation_id=allocation_id,
            )
        await self._approve_locked(allocation, actor_id, trainer_id)
        await self.db.commit()
        return await self._run_effects(allocation)

    async def reject_allocation(
        self,
        allocation_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: str,
    ) -> TrainerAllocation:
        allocation = await self._lock_allocation(allocation_id)
        if allocation.status != AllocationStatus.PENDING:
            raise ConflictError(
                f"Only pending allocations can be rejected (status is {allocation.status.value})",
                allocation_id=allocation_id,
            )
        allocation.status = AllocationStatus.REJECTED
        allocation.rejected_by = actor_id
        allocation.rejected_at = _now()
        allocation.rejection_reason = reason

        self.outbox.notify(allocation.id, "allocation.rejected", [allocation.student_id, allocation.trainer_id])
        self._record_status_event(allocation, AllocationStatus.PENDING)
        await self.db.commit()
        logger.info("allocation_rejected", allocation_id=str(allocation.id), actor_id=str(actor_id))
        return await self._run_effects(allocation)

    async def activate_allocation(self, allocation_id: uuid.UUID, actor_id: uuid.UUID) -> TrainerAllocation:
        allocation = await self._lock_allocation(allocation_id)
        if allocation.status != AllocationStatus.APPROVED:
            raise ConflictError(
                f"Only approved allocations can be activated (status is {allocation.status.value})",
                allocation_id=allocation_id,
            )
        allocation.status = AllocationStatus.ACTIVE
        self._record_status_event(allocation, AllocationStatus.APPROVED)
        await self.db.commit()
        logger.info("allocation_activated", allocation_id=str(allocation.id), actor_id=str(actor_id))
        return await self._run_effects(allocation)

    async def cancel_allocation(
        self,
        allocation_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: str | None = None,
    ) -> TrainerAllocation:
        return await self._close(allocation_id, actor_id, AllocationStatus.CANCELLED, reason)

    async def complete_allocation(
        self,
        allocation_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason: str | None = None,
    ) -> TrainerAllocation:
        return await self._close(allocation_id, actor_id, AllocationStatus.COMPLETED, reason)

    async def _close(
        self,
        allocation_id: uuid.UUID,
        actor_id: uuid.UUID,
        target: AllocationStatus,
        reason: str | None,
    ) -> TrainerAllocation:
        allocation = await self._lock_allocation(allocation_id)
        if allocation.status not in LIVE_STATUSES:
            raise ConflictError(
                f"Only approved or active allocations can be {target.value} "
                f"(status is {allocation.status.value})",
                allocation_id=allocation_id,
            )
        previous = allocation.status

        # The payroll period closes before the status flips
        await self.payroll.end(allocation, self.today_provider())

        allocation.status = target
        if reason:
            details = AllocationDetails.load(allocation.details)
            details.status_reason = reason
            allocation.details = details.dump()

        if target == AllocationStatus.CANCELLED:
            cancelled = await self._cancel_future_sessions(allocation)
            self.outbox.notify(allocation.id, "allocation.cancelled", [allocation.student_id, allocation.trainer_id])
        else:
            cancelled = 0
        self._record_status_event(allocation, previous)
        await self.db.commit()
        logger.info(
            "allocation_closed",
            allocation_id=str(allocation.id),
            status=target.value,
            actor_id=str(actor_id),
            sessions_cancelled=cancelled,
        )
        return await self._run_effects(allocation)

    async def update_allocation(
        self,
        allocation_id: uuid.UUID,
        data: AllocationUpdate,
        actor_id: uuid.UUID,
    ) -> TrainerAllocation:
        """Edit notes at any time and the schedule while pending.

        Moving an approved/active allocation to another trainer re-runs the
        eligibility checks against that trainer.
        """
        allocation = await self._lock_allocation(allocation_id)

        if data.schedule is not None:
            if allocation.status != AllocationStatus.PENDING:
                raise ConflictError(
                    "Schedule can only change while the allocation is pending",
                    allocation_id=allocation_id,
                )
            schedule = self.resolve_schedule(data.schedule, current=allocation)
            self._apply_schedule(allocation, schedule)

        if data.trainer_id is not None and data.trainer_id != allocation.trainer_id:
            if allocation.status == AllocationStatus.PENDING:
                await self._approved_trainer(data.trainer_id)
                allocation.trainer_id = data.trainer_id
            elif allocation.status in LIVE_STATUSES:
                await self._reassign_trainer(allocation, data.trainer_id, actor_id)
            else:
                raise ConflictError(
                    f"Cannot change the trainer of a {allocation.status.value} allocation",
                    allocation_id=allocation_id,
                )

        if data.notes is not None:
            allocation.notes = data.notes

        await self.db.commit()
        logger.info("allocation_updated", allocation_id=str(allocation.id), actor_id=str(actor_id))
        return await self._run_effects(allocation)

    # ==================== Purchase entry ====================

    async def auto_assign_after_purchase(
        self,
        data: AutoAssignRequest,
        actor_id: uuid.UUID,
    ) -> AssignmentResult:
        """Entry point for a completed purchase.

        Live allocation for the course -> upgrade. Pending one -> returned as
        is. Otherwise a trainer is selected and the allocation approved in one
        transaction; when the ladder finds nobody the allocation stays pending
        with a reason code.
        """
        from src.domains.allocations.upgrade import UpgradeCoordinator

        await self._require_user(data.student_id, "Student")
        await self._course(data.course_id)

        live = await self._find_allocation(data.student_id, data.course_id, LIVE_STATUSES)
        if live is not None:
            return await UpgradeCoordinator(self).upgrade(live, data, actor_id)

        pending = await self._find_allocation(data.student_id, data.course_id, (AllocationStatus.PENDING,))
        if pending is not None:
            return AssignmentResult(outcome="existing", allocation=pending, reason_code=self._reason(pending))

        purchase = await self._purchase(data.student_id, data.course_id)
        requested = {
            key: value
            for key, value in {
                "time_slot": data.time_slot or data.purchase_metadata.time_slot,
                "start_date": data.start_date or data.purchase_metadata.start_date,
                "recurrence_mode": data.purchase_metadata.recurrence_mode,
            }.items()
            if value is not None
        }
        schedule = self.resolve_schedule(ScheduleConfig(**requested), purchase)
        allocation = self._new_allocation(
            student_id=data.student_id,
            course_id=data.course_id,
            trainer_id=None,
            actor_id=actor_id,
            schedule=schedule,
            gender_preference=data.gender_preference,
        )
        self.db.add(allocation)
        await self.db.flush()

        request = await self.slot_request_for(allocation)
        outcome = await self.selector.select(request, exclude_allocation_id=allocation.id)
        if not outcome.requires_manual_review:
            try:
                await self._approve_locked(allocation, actor_id, outcome.trainer_id, outcome)
            except (ConflictError, CapacityExhaustedError) as e:
                logger.warning(
                    "auto_assign_recheck_failed",
                    allocation_id=str(allocation.id),
                    trainer_id=str(outcome.trainer_id),
                    error=e.message,
                )
                outcome = SelectionOutcome(
                    trainer_id=None,
                    reason_code="no_eligible_trainers_after_checks",
                    candidates_considered=outcome.candidates_considered,
                    rejections={outcome.trainer_id: [e.message]},
                )

        if outcome.requires_manual_review:
            audit = outcome.details()
            details = AllocationDetails.load(allocation.details)
            details.reason_code = outcome.reason_code
            details.rejections = audit.get("rejections")
            details.matching = {**(details.matching or {}), **audit["matching"]}
            allocation.details = details.dump()
            self._record_status_event(allocation, None)
            await self.db.commit()
            logger.warning(
                "allocation_pending_manual_review",
                allocation_id=str(allocation.id),
                student_id=str(allocation.student_id),
                reason_code=outcome.reason_code,
            )
            allocation = await self._run_effects(allocation)
            return AssignmentResult(
                outcome="pending_manual_review",
                allocation=allocation,
                reason_code=outcome.reason_code,
            )

        await self.db.commit()
        allocation = await self._run_effects(allocation)
        return AssignmentResult(outcome="assigned", allocation=allocation)

    # ==================== Availability ====================

    async def check_time_slot_availability(
        self,
        time_slot: time,
        start_date: date,
        session_count: int,
        recurrence_mode: RecurrenceMode = RecurrenceMode.DAILY,
        course_id: uuid.UUID | None = None,
        gender_preference: Gender | None = None,
        student_id: uuid.UUID | None = None,
    ) -> dict:
        """How many trainers could take this slot, and why the rest cannot."""
        end_date = schedule_end_date(start_date, session_count, recurrence_mode, self.config, self.today_provider())
        category, subcategory = await self._course_specialties(course_id)
        latitude, longitude = await self._student_coordinates(student_id)
        request = SlotRequest(
            student_id=student_id or uuid.UUID(int=0),
            time_slot=time_slot,
            start_date=start_date,
            end_date=end_date,
            gender_preference=gender_preference,
            category=category,
            subcategory=subcategory,
            student_latitude=latitude,
            student_longitude=longitude,
        )
        candidates = await self.selector.query.find(request, match_specialty=True, limit=0)
        eligible: list[uuid.UUID] = []
        rejected: list[dict] = []
        for candidate in candidates:
            result = await self.eligibility.check(candidate.profile, request)
            if result.eligible:
                eligible.append(candidate.trainer_id)
            else:
                rejected.append({"trainer_id": candidate.trainer_id, "reasons": result.reasons})

        return {
            "time_slot": format_time_slot(time_slot),
            "start_date": start_date,
            "end_date": end_date,
            "candidates": len(candidates),
            "eligible": len(eligible),
            "eligible_trainer_ids": eligible,
            "rejected": rejected,
        }

    async def check_trainer_availability(
        self,
        trainer_id: uuid.UUID,
        time_slot: time,
        start_date: date,
        session_count: int,
        recurrence_mode: RecurrenceMode = RecurrenceMode.DAILY,
        student_id: uuid.UUID | None = None,
    ) -> dict:
        """Whether one trainer passes every check for a slot and range."""
        profile = await self._trainer_profile(trainer_id)
        end_date = schedule_end_date(start_date, session_count, recurrence_mode, self.config, self.today_provider())
        latitude, longitude = await self._student_coordinates(student_id)
        request = SlotRequest(
            student_id=student_id or uuid.UUID(int=0),
            time_slot=time_slot,
            start_date=start_date,
            end_date=end_date,
            student_latitude=latitude,
            student_longitude=longitude,
        )

        reasons: list[str] = []
        if profile.approval_status != TrainerApprovalStatus.APPROVED:
            reasons.append(f"not_approved: trainer is {profile.approval_status.value}")
        if not await self._offers_slot(profile, time_slot):
            reasons.append(f"slot_not_offered: {format_time_slot(time_slot)} is not in the trainer's availability")
        result = await self.eligibility.check(profile, request)
        reasons.extend(result.reasons)

        return {
            "trainer_id": trainer_id,
            "time_slot": format_time_slot(time_slot),
            "start_date": start_date,
            "end_date": end_date,
            "available": not reasons,
            "reasons": reasons,
        }

    # ==================== Sessions ====================

    async def create_sessions_for_allocation(self, allocation_id: uuid.UUID) -> GenerationResult:
        """Generate whatever sessions an allocation is still missing.

        Safe to call repeatedly, e.g. after a student fixed their address.

        Raises:
            GPSMissingError: Student still has no valid coordinates
        """
        allocation = await self.get_allocation(allocation_id)
        existing = await self.generator.count_existing(allocation.id)
        missing = allocation.session_count - existing
        if missing <= 0:
            return GenerationResult(allocation_id=allocation.id, requested=0)

        if existing:
            last = await self.generator.last_session_date(allocation.id)
            start = last + timedelta(days=1)
        else:
            start = allocation.schedule_start
        result = await self.generator.generate(
            allocation,
            session_count=missing,
            start_date=start,
            start_number=existing + 1,
            total_sessions=allocation.session_count,
        )
        await self.db.commit()
        await self.events.publish(SESSIONS_GENERATED, to_jsonable(result.event_payload(allocation)))
        return result

    async def create_sessions_for_pending_allocations(self) -> dict:
        """Backfill sessions for approved/active allocations that have none."""
        result = await self.db.execute(
            select(TrainerAllocation.id).where(
                TrainerAllocation.status.in_(LIVE_STATUSES),
                TrainerAllocation.trainer_id.is_not(None),
                ~exists().where(TutoringSession.allocation_id == TrainerAllocation.id),
            )
        )
        allocation_ids = list(result.scalars().all())

        successful = 0
        errors: dict[str, str] = {}
        for allocation_id in allocation_ids:
            try:
                await self.create_sessions_for_allocation(allocation_id)
                successful += 1
            except AllocationError as e:
                await self.db.rollback()
                errors[str(allocation_id)] = e.message

        logger.info(
            "sessions_backfilled",
            processed=len(allocation_ids),
            successful=successful,
            failed=len(errors),
        )
        return {
            "processed": len(allocation_ids),
            "successful": successful,
            "failed": len(errors),
            "errors": errors,
        }

    async def retry_failed_effects(self, limit: int = 100) -> dict[str, int]:
        return await self.runner.retry_failed(limit)

    # ==================== Internals ====================

    async def slot_request_for(
        self,
        allocation: TrainerAllocation,
        start_date: date | None = None,
        end_date: date | None = None,
        exclude_trainer_ids: frozenset[uuid.UUID] = frozenset(),
    ) -> SlotRequest:
        """Matching request for an allocation's slot, optionally over another range."""
        if allocation.time_slot is None:
            raise ValidationError(f"Allocation {allocation.id} has no time slot", allocation_id=allocation.id)
        category, subcategory = await self._course_specialties(allocation.course_id)
        latitude, longitude = await self._student_coordinates(allocation.student_id)
        matching = AllocationDetails.load(allocation.details).matching or {}
        gender = matching.get("gender_preference")

        start = start_date or allocation.schedule_start or self.today_provider()
        end = end_date or allocation.schedule_end or schedule_end_date(
            start, allocation.session_count, allocation.recurrence_mode, self.config, self.today_provider()
        )
        return SlotRequest(
            student_id=allocation.student_id,
            time_slot=allocation.time_slot,
            start_date=start,
            end_date=end,
            gender_preference=Gender(gender) if gender else None,
            category=category,
            subcategory=subcategory,
            student_latitude=latitude,
            student_longitude=longitude,
            exclude_trainer_ids=exclude_trainer_ids,
        )

    async def lock_trainer(self, trainer_id: uuid.UUID) -> TrainerProfile:
        """Lock the trainer profile row; concurrent approvals for it serialize here."""
        result = await self.db.execute(
            select(TrainerProfile)
            .where(TrainerProfile.trainer_id == trainer_id)
            .with_for_update()
        )
        profile = result.scalar_one_or_none()
        if profile is None:
            raise NotFoundError(f"Trainer {trainer_id} not found", trainer_id=trainer_id)
        if profile.approval_status != TrainerApprovalStatus.APPROVED:
            raise ValidationError(
                f"Trainer {trainer_id} is {profile.approval_status.value}, not approved",
                trainer_id=trainer_id,
            )
        return profile

    async def verify_locked(
        self,
        trainer_id: uuid.UUID,
        request: SlotRequest,
        exclude_allocation_id: uuid.UUID | None = None,
        check_travel: bool = True,
    ) -> EligibilityResult:
        """Lock the trainer and re-run the checks; raise when they fail."""
        profile = await self.lock_trainer(trainer_id)
        result = await self.eligibility.check(
            profile, request, exclude_allocation_id=exclude_allocation_id, check_travel=check_travel
        )
        if result.at_capacity:
            raise CapacityExhaustedError(
                f"Trainer {trainer_id} is at capacity ({result.current_load}/{result.max_capacity})",
                trainer_id=trainer_id,
            )
        if not result.eligible:
            raise ConflictError(
                f"Trainer {trainer_id} is not eligible: {'; '.join(result.reasons)}",
                trainer_id=trainer_id,
            )
        return result

    def record_approval_effects(
        self,
        allocation: TrainerAllocation,
        session_count: int | None = None,
        start_date: date | None = None,
        start_number: int = 1,
        total_sessions: int | None = None,
    ) -> None:
        self.outbox.payroll_start(allocation.id, start_date or allocation.schedule_start or self.today_provider())
        self.outbox.generate_sessions(
            allocation.id,
            session_count=session_count,
            start_date=start_date,
            start_number=start_number,
            total_sessions=total_sessions,
        )
        self.outbox.notify(allocation.id, "allocation.approved", [allocation.trainer_id, allocation.student_id])
        self.outbox.publish(
            allocation.id,
            TRAINER_ALLOCATED,
            {
                "allocation_id": allocation.id,
                "trainer_id": allocation.trainer_id,
                "student_id": allocation.student_id,
                "course_id": allocation.course_id,
                "time_slot": format_time_slot(allocation.time_slot) if allocation.time_slot else None,
                "start_date": start_date or allocation.schedule_start,
                "end_date": allocation.schedule_end,
            },
        )

    async def _approve_locked(
        self,
        allocation: TrainerAllocation,
        actor_id: uuid.UUID,
        trainer_id: uuid.UUID | None = None,
        outcome: SelectionOutcome | None = None,
    ) -> None:
        await self._guard_single_live(allocation)
        self._roll_schedule_forward(allocation)
        request = await self.slot_request_for(allocation)
        details = AllocationDetails.load(allocation.details)

        chosen = trainer_id or allocation.trainer_id
        if chosen is None:
            outcome = await self.selector.select(request, exclude_allocation_id=allocation.id)
            if outcome.requires_manual_review:
                error_class = CapacityExhaustedError if outcome.all_at_capacity else ConflictError
                raise error_class(
                    f"No eligible trainer for {format_time_slot(request.time_slot)} ({outcome.reason_code})",
                    allocation_id=allocation.id,
                    reason_code=outcome.reason_code,
                )
            chosen = outcome.trainer_id

        check_travel = not (outcome and outcome.tier == TIER_HIGHEST_RATED)
        await self.verify_locked(chosen, request, exclude_allocation_id=allocation.id, check_travel=check_travel)

        if outcome is not None:
            details.used_fallback = outcome.used_fallback
            details.fallback_tier = outcome.tier
            details.matching = {
                **(details.matching or {}),
                "candidates_considered": outcome.candidates_considered,
            }
        details.reason_code = None
        details.rejections = None

        allocation.trainer_id = chosen
        allocation.status = AllocationStatus.APPROVED
        allocation.allocated_by = actor_id
        allocation.allocated_at = _now()
        allocation.details = details.dump()
        await self.db.flush()

        self.record_approval_effects(allocation)
        logger.info(
            "allocation_approved",
            allocation_id=str(allocation.id),
            trainer_id=str(chosen),
            student_id=str(allocation.student_id),
            used_fallback=details.used_fallback,
        )

    async def _reassign_trainer(self, allocation: TrainerAllocation, trainer_id: uuid.UUID, actor_id: uuid.UUID) -> None:
        today = self.today_provider()
        request = await self.slot_request_for(allocation, start_date=max(today, allocation.schedule_start or today))
        await self.verify_locked(trainer_id, request, exclude_allocation_id=allocation.id)

        await self.payroll.end(allocation, today)
        previous = allocation.trainer_id
        allocation.trainer_id = trainer_id
        allocation.allocated_by = actor_id
        allocation.allocated_at = _now()

        result = await self.db.execute(
            select(TutoringSession).where(
                TutoringSession.allocation_id == allocation.id,
                TutoringSession.status == SessionStatus.SCHEDULED,
                TutoringSession.scheduled_date >= today,
            )
        )
        moved = 0
        for session in result.scalars().all():
            session.trainer_id = trainer_id
            moved += 1
        await self.db.flush()

        self.outbox.payroll_start(allocation.id, today)
        self.outbox.notify(allocation.id, "allocation.approved", [trainer_id, allocation.student_id])
        self.outbox.publish(
            allocation.id,
            TRAINER_ALLOCATED,
            {
                "allocation_id": allocation.id,
                "trainer_id": trainer_id,
                "previous_trainer_id": previous,
                "student_id": allocation.student_id,
                "course_id": allocation.course_id,
                "sessions_moved": moved,
            },
        )
        logger.info(
            "allocation_trainer_changed",
            allocation_id=str(allocation.id),
            previous_trainer_id=str(previous),
            trainer_id=str(trainer_id),
            sessions_moved=moved,
        )

    async def _guard_single_live(self, allocation: TrainerAllocation) -> None:
        """At most one approved/active allocation per student and course.

        Upgrade-linked allocations are created directly as approved and do
        not pass through here.
        """
        if allocation.course_id is None:
            return
        live = await self._find_allocation(allocation.student_id, allocation.course_id, LIVE_STATUSES)
        if live is not None and live.id != allocation.id:
            raise ConflictError(
                f"Student already has a {live.status.value} allocation for this course",
                allocation_id=live.id,
            )

    async def _cancel_future_sessions(self, allocation: TrainerAllocation) -> int:
        result = await self.db.execute(
            select(TutoringSession).where(
                TutoringSession.allocation_id == allocation.id,
                TutoringSession.status == SessionStatus.SCHEDULED,
                TutoringSession.scheduled_date >= self.today_provider(),
            )
        )
        sessions = list(result.scalars().all())
        for session in sessions:
            session.status = SessionStatus.CANCELLED
        return len(sessions)

    def _record_status_event(self, allocation: TrainerAllocation, previous: AllocationStatus | None) -> None:
        self.outbox.publish(
            allocation.id,
            STATUS_CHANGED,
            {
                "allocation_id": allocation.id,
                "student_id": allocation.student_id,
                "trainer_id": allocation.trainer_id,
                "course_id": allocation.course_id,
                "previous_status": previous.value if previous else None,
                "status": allocation.status.value,
                "reason_code": self._reason(allocation),
            },
        )

    async def _run_effects(self, allocation: TrainerAllocation) -> TrainerAllocation:
        allocation_id = allocation.id
        await self.runner.run_pending(allocation_id)
        # A failed effect rolls back and expires loaded rows
        return await self.get_allocation_fresh(allocation_id)

    async def get_allocation_fresh(self, allocation_id: uuid.UUID) -> TrainerAllocation:
        result = await self.db.execute(
            select(TrainerAllocation)
            .where(TrainerAllocation.id == allocation_id)
            .execution_options(populate_existing=True)
        )
        allocation = result.scalar_one_or_none()
        if allocation is None:
            raise NotFoundError(f"Allocation {allocation_id} not found", allocation_id=allocation_id)
        return allocation

    async def _lock_allocation(self, allocation_id: uuid.UUID) -> TrainerAllocation:
        result = await self.db.execute(
            select(TrainerAllocation)
            .where(TrainerAllocation.id == allocation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        allocation = result.scalar_one_or_none()
        if allocation is None:
            raise NotFoundError(f"Allocation {allocation_id} not found", allocation_id=allocation_id)
        return allocation

    async def _find_allocation(
        self,
        student_id: uuid.UUID,
        course_id: uuid.UUID | None,
        statuses: tuple[AllocationStatus, ...],
    ) -> TrainerAllocation | None:
        """Most recent allocation in ``statuses``; upgrade children are skipped."""
        course_filter = (
            TrainerAllocation.course_id.is_(None)
            if course_id is None
            else TrainerAllocation.course_id == course_id
        )
        result = await self.db.execute(
            select(TrainerAllocation)
            .where(
                TrainerAllocation.student_id == student_id,
                course_filter,
                TrainerAllocation.status.in_(statuses),
            )
            .order_by(TrainerAllocation.created_at.desc())
        )
        for allocation in result.scalars().all():
            if AllocationDetails.load(allocation.details).upgrade_of is None:
                return allocation
        return None

    def _new_allocation(
        self,
        student_id: uuid.UUID,
        course_id: uuid.UUID | None,
        trainer_id: uuid.UUID | None,
        actor_id: uuid.UUID,
        schedule: ResolvedSchedule,
        notes: str | None = None,
        gender_preference: Gender | None = None,
    ) -> TrainerAllocation:
        details = AllocationDetails(
            matching={"gender_preference": gender_preference.value} if gender_preference else None
        )
        allocation = TrainerAllocation(
            id=uuid.uuid4(),
            student_id=student_id,
            course_id=course_id,
            trainer_id=trainer_id,
            status=AllocationStatus.PENDING,
            requested_by=actor_id,
            requested_at=_now(),
            notes=notes,
            details=details.dump(),
        )
        self._apply_schedule(allocation, schedule)
        return allocation

    @staticmethod
    def _apply_schedule(allocation: TrainerAllocation, schedule: ResolvedSchedule) -> None:
        allocation.time_slot = schedule.time_slot
        allocation.recurrence_mode = schedule.recurrence_mode
        allocation.schedule_start = schedule.start_date
        allocation.schedule_end = schedule.end_date
        allocation.session_count = schedule.session_count
        allocation.session_duration_minutes = schedule.session_duration_minutes

    def _roll_schedule_forward(self, allocation: TrainerAllocation) -> None:
        """Recompute the stored range against today.

        Sessions are never planned in the past, so a start that has already
        gone by shifts the whole schedule and with it ``schedule_end``.
        """
        today = self.today_provider()
        start = max(allocation.schedule_start or today, today)
        allocation.schedule_start = start
        allocation.schedule_end = schedule_end_date(
            start, allocation.session_count, allocation.recurrence_mode, self.config, today
        )

    @staticmethod
    def _reason(allocation: TrainerAllocation) -> str | None:
        return AllocationDetails.load(allocation.details).reason_code

    async def _purchase(self, student_id: uuid.UUID, course_id: uuid.UUID) -> PurchaseRecord | None:
        """Purchase record, or None when the provider is degraded (defaults apply)."""
        try:
            return await self.purchases.latest_purchase(student_id, course_id)
        except DependencyDegradedError as e:
            logger.warning(
                "purchase_lookup_degraded",
                student_id=str(student_id),
                course_id=str(course_id),
                error=e.message,
            )
            return None

    async def _require_user(self, user_id: uuid.UUID, label: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"{label} {user_id} not found", user_id=user_id)
        return user

    async def _course(self, course_id: uuid.UUID) -> Course | None:
        """Course row, or None when the catalogue is degraded.

        Raises:
            NotFoundError: The catalogue answered and has no such course
        """
        try:
            course = await self.purchases.get_course(course_id)
        except DependencyDegradedError as e:
            logger.warning("course_lookup_degraded", course_id=str(course_id), error=e.message)
            return None
        if course is None:
            raise NotFoundError(f"Course {course_id} not found", course_id=course_id)
        return course

    async def _course_specialties(self, course_id: uuid.UUID | None) -> tuple[str | None, str | None]:
        """Normalized specialties; none (match any trainer) when unknown or degraded."""
        if course_id is None:
            return None, None
        try:
            course = await self.purchases.get_course(course_id)
        except DependencyDegradedError as e:
            logger.warning("course_lookup_degraded", course_id=str(course_id), error=e.message)
            return None, None
        if course is None:
            return None, None
        return course_specialties(course.category, course.subcategory)

    async def _student_coordinates(self, student_id: uuid.UUID | None) -> tuple[float | None, float | None]:
        if student_id is None:
            return None, None
        result = await self.db.execute(
            select(StudentProfile).where(StudentProfile.student_id == student_id)
        )
        profile = result.scalar_one_or_none()
        if profile is None or not profile.has_valid_location:
            return None, None
        return profile.latitude, profile.longitude

    async def _trainer_profile(self, trainer_id: uuid.UUID) -> TrainerProfile:
        result = await self.db.execute(
            select(TrainerProfile).where(TrainerProfile.trainer_id == trainer_id)
        )
        profile = result.scalar_one_or_none()
        if profile is None:
            raise NotFoundError(f"Trainer {trainer_id} not found", trainer_id=trainer_id)
        return profile

    async def _approved_trainer(self, trainer_id: uuid.UUID) -> TrainerProfile:
        profile = await self._trainer_profile(trainer_id)
        if profile.approval_status != TrainerApprovalStatus.APPROVED:
            raise ValidationError(
                f"Trainer {trainer_id} is {profile.approval_status.value}, not approved",
                trainer_id=trainer_id,
            )
        return profile

    async def _offers_slot(self, profile: TrainerProfile, slot: time) -> bool:
        if matches_preferred_slot(profile.preferred_time_slots, slot):
            return True
        result = await self.db.execute(
            select(TrainerAvailabilitySlot.id).where(
                TrainerAvailabilitySlot.trainer_id == profile.trainer_id,
                TrainerAvailabilitySlot.slot_start == slot,
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None
