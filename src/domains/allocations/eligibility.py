"""Authoritative per-trainer checks run inside an assignment attempt.

The candidate query is only a pre-filter. Before a trainer is bound to a
student, capacity, direct schedule conflicts and the sequential-slot travel
rule are re-checked here against live data.
"""
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.scheduling import SchedulingConfig
from src.core.geo import haversine_km
from src.domains.allocations.candidates import SlotRequest
from src.domains.allocations.capacity import current_loads, max_capacity_for_rating
from src.domains.allocations.models import LIVE_STATUSES, TrainerAllocation
from src.domains.allocations.timeslots import adjacent_slots, format_time_slot
from src.domains.students.models import StudentProfile
from src.domains.trainers.models import ScheduleSlotStatus, TrainerProfile, TrainerScheduleSlot

logger = logging.getLogger(__name__)

# Reason codes, used as prefixes of the human readable reasons
AT_CAPACITY = "at_capacity"
SCHEDULE_CONFLICT = "schedule_conflict"
TRAVEL_DISTANCE = "sequential_distance_exceeded"

OCCUPIED_SLOT_STATUSES = (ScheduleSlotStatus.BOOKED, ScheduleSlotStatus.BLOCKED)


@dataclass
class EligibilityResult:
    trainer_id: uuid.UUID
    current_load: int
    max_capacity: int
    reasons: list[str] = field(default_factory=list)

    @property
    def eligible(self) -> bool:
        return not self.reasons

    @property
    def at_capacity(self) -> bool:
        return any(reason.startswith(AT_CAPACITY) for reason in self.reasons)


class EligibilityFilter:
    def __init__(self, db: AsyncSession, config: SchedulingConfig):
        self.db = db
        self.config = config

    async def check(
        self,
        profile: TrainerProfile,
        request: SlotRequest,
        exclude_allocation_id: uuid.UUID | None = None,
        check_travel: bool = True,
    ) -> EligibilityResult:
        """Run every check and collect all failure reasons.

        ``exclude_allocation_id`` leaves one allocation out of load and
        conflict counts (used when extending that allocation in place).
        """
        trainer_id = profile.trainer_id
        loads = await current_loads(self.db, [trainer_id], exclude_allocation_id)
        result = EligibilityResult(
            trainer_id=trainer_id,
            current_load=loads[trainer_id],
            max_capacity=max_capacity_for_rating(profile.rating_average),
        )

        if result.current_load >= result.max_capacity:
            result.reasons.append(
                f"{AT_CAPACITY}: {result.current_load} of {result.max_capacity} allocations in use"
            )

        result.reasons.extend(await self.conflicts(trainer_id, request, exclude_allocation_id))

        if check_travel:
            result.reasons.extend(await self.travel_violations(trainer_id, request, exclude_allocation_id))

        if result.reasons:
            logger.debug("Trainer %s ineligible for %s: %s", trainer_id, request.time_slot, result.reasons)
        return result

    async def conflicts(
        self,
        trainer_id: uuid.UUID,
        request: SlotRequest,
        exclude_allocation_id: uuid.UUID | None = None,
    ) -> list[str]:
        """Booked/blocked slots and other students' live allocations at the same slot.

        Allocations overlap by date range alone, whatever their recurrence
        mode. A daily allocation therefore blocks a Sunday-only request even
        over holiday Sundays it skips.
        """
        reasons: list[str] = []
        label = format_time_slot(request.time_slot)

        slot_result = await self.db.execute(
            select(TrainerScheduleSlot).where(
                TrainerScheduleSlot.trainer_id == trainer_id,
                TrainerScheduleSlot.time_slot == request.time_slot,
                TrainerScheduleSlot.status.in_(OCCUPIED_SLOT_STATUSES),
                TrainerScheduleSlot.slot_date >= request.start_date,
                TrainerScheduleSlot.slot_date <= request.end_date,
                or_(
                    TrainerScheduleSlot.student_id.is_(None),
                    TrainerScheduleSlot.student_id != request.student_id,
                ),
            ).order_by(TrainerScheduleSlot.slot_date)
        )
        slots = list(slot_result.scalars().all())
        if slots:
            reasons.append(
                f"{SCHEDULE_CONFLICT}: {len(slots)} {slots[0].status.value} slot(s) at {label} "
                f"from {slots[0].slot_date.isoformat()}"
            )

        for allocation in await self._overlapping_allocations(
            trainer_id, [request.time_slot], request, exclude_allocation_id
        ):
            reasons.append(
                f"{SCHEDULE_CONFLICT}: allocation {allocation.id} holds {label} "
                f"until {allocation.schedule_end.isoformat() if allocation.schedule_end else 'open end'}"
            )
        return reasons

    async def travel_violations(
        self,
        trainer_id: uuid.UUID,
        request: SlotRequest,
        exclude_allocation_id: uuid.UUID | None = None,
    ) -> list[str]:
        """Adjacent-hour students must live within the configured distance.

        Skipped when the requesting student has no coordinates. Neighbours
        without coordinates are ignored.
        """
        if not request.has_location:
            return []

        neighbours = await self._overlapping_allocations(
            trainer_id, adjacent_slots(request.time_slot), request, exclude_allocation_id
        )
        neighbour_students = {a.student_id: a.time_slot for a in neighbours}

        slot_result = await self.db.execute(
            select(TrainerScheduleSlot).where(
                TrainerScheduleSlot.trainer_id == trainer_id,
                TrainerScheduleSlot.time_slot.in_(adjacent_slots(request.time_slot)),
                TrainerScheduleSlot.status == ScheduleSlotStatus.BOOKED,
                TrainerScheduleSlot.student_id.is_not(None),
                TrainerScheduleSlot.student_id != request.student_id,
                TrainerScheduleSlot.slot_date >= request.start_date,
                TrainerScheduleSlot.slot_date <= request.end_date,
            )
        )
        for slot in slot_result.scalars().all():
            neighbour_students.setdefault(slot.student_id, slot.time_slot)

        if not neighbour_students:
            return []

        profile_result = await self.db.execute(
            select(StudentProfile).where(StudentProfile.student_id.in_(list(neighbour_students)))
        )
        reasons = []
        limit = self.config.max_sequential_distance_km
        for profile in profile_result.scalars().all():
            if not profile.has_valid_location:
                continue
            distance = haversine_km(
                request.student_latitude, request.student_longitude,
                profile.latitude, profile.longitude,
            )
            if distance > limit:
                reasons.append(
                    f"{TRAVEL_DISTANCE}: student at {format_time_slot(neighbour_students[profile.student_id])} "
                    f"is {distance:.1f} km away (max {limit:g} km)"
                )
        return reasons

    async def _overlapping_allocations(
        self,
        trainer_id: uuid.UUID,
        slots: list,
        request: SlotRequest,
        exclude_allocation_id: uuid.UUID | None,
    ) -> list[TrainerAllocation]:
        if not slots:
            return []
        query = select(TrainerAllocation).where(
            TrainerAllocation.trainer_id == trainer_id,
            TrainerAllocation.status.in_(LIVE_STATUSES),
            TrainerAllocation.time_slot.in_(slots),
            TrainerAllocation.student_id != request.student_id,
            or_(
                TrainerAllocation.schedule_start.is_(None),
                TrainerAllocation.schedule_start <= request.end_date,
            ),
            or_(
                TrainerAllocation.schedule_end.is_(None),
                TrainerAllocation.schedule_end >= request.start_date,
            ),
        )
        if exclude_allocation_id is not None:
            query = query.where(TrainerAllocation.id != exclude_allocation_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())
