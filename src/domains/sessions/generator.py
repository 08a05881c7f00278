"""Expands an approved allocation into dated, timed tutoring sessions."""
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.scheduling import SchedulingConfig
from src.domains.allocations.errors import ConflictError, GPSMissingError, ValidationError
from src.domains.allocations.models import LIVE_STATUSES, TrainerAllocation
from src.domains.sessions.calendar import plan_session_dates, session_duration
from src.domains.sessions.models import SessionStatus, TutoringSession
from src.domains.students.models import StudentProfile

logger = logging.getLogger(__name__)


def generate_otp() -> str:
    """Six-digit visit confirmation code."""
    return f"{secrets.randbelow(1_000_000):06d}"


@dataclass
class GenerationResult:
    """Summary of one generation batch."""

    allocation_id: uuid.UUID
    requested: int
    created_ids: list[uuid.UUID] = field(default_factory=list)
    duplicates: int = 0
    dates: list[date] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.created_ids) + self.duplicates

    @property
    def is_short(self) -> bool:
        return self.total < self.requested

    def event_payload(self, allocation: TrainerAllocation) -> dict[str, Any]:
        return {
            "allocation_id": allocation.id,
            "trainer_id": allocation.trainer_id,
            "student_id": allocation.student_id,
            "course_id": allocation.course_id,
            "session_ids": self.created_ids,
            "count": len(self.created_ids),
            "duplicates": self.duplicates,
            "first_date": self.dates[0] if self.dates else None,
            "last_date": self.dates[-1] if self.dates else None,
        }


class SessionScheduleGenerator:
    """Creates session rows for an approved or active allocation.

    Re-running with the same parameters is safe: a session that already
    exists for (allocation, student, trainer, date, time) counts toward the
    target instead of being inserted again. The allocation's ``schedule_end``
    is pushed out to the last planned date when the plan runs past it.
    """

    def __init__(
        self,
        db: AsyncSession,
        config: SchedulingConfig,
        today_provider: Callable[[], date] = date.today,
    ):
        self.db = db
        self.config = config
        self.today_provider = today_provider

    async def generate(
        self,
        allocation: TrainerAllocation,
        session_count: int | None = None,
        start_date: date | None = None,
        start_number: int = 1,
        total_sessions: int | None = None,
    ) -> GenerationResult:
        """Generate sessions and flush them. The caller commits.

        Args:
            allocation: Approved/active allocation with a trainer and time slot
            session_count: Sessions to produce (defaults to the allocation's count)
            start_date: First candidate date (defaults to schedule_start, then tomorrow)
            start_number: Ordinal of the first session in this batch
            total_sessions: Denominator written to every session

        Raises:
            GPSMissingError: Student has no valid home coordinates
            ConflictError: Allocation is not approved/active or has no trainer
        """
        if allocation.status not in LIVE_STATUSES:
            raise ConflictError(
                f"Allocation {allocation.id} is {allocation.status.value}; sessions need approved or active",
                allocation_id=allocation.id,
            )
        if allocation.trainer_id is None:
            raise ConflictError(f"Allocation {allocation.id} has no trainer", allocation_id=allocation.id)
        if allocation.time_slot is None:
            raise ValidationError(f"Allocation {allocation.id} has no time slot", allocation_id=allocation.id)

        location = await self._student_location(allocation.student_id)

        today = self.today_provider()
        count = session_count or allocation.session_count or self.config.default_session_count
        start = start_date or allocation.schedule_start or today + timedelta(days=1)
        duration = session_duration(
            allocation.recurrence_mode, self.config, allocation.session_duration_minutes
        )
        plan = plan_session_dates(
            start, count, allocation.recurrence_mode, self.config.holiday_window, today
        )
        total = total_sessions or (start_number - 1 + count)

        result = GenerationResult(allocation_id=allocation.id, requested=count, dates=plan.dates)
        for index, day in enumerate(plan.dates):
            if await self._exists(allocation, day):
                result.duplicates += 1
                continue
            session = TutoringSession(
                allocation_id=allocation.id,
                student_id=allocation.student_id,
                trainer_id=allocation.trainer_id,
                course_id=allocation.course_id,
                scheduled_date=day,
                scheduled_time=allocation.time_slot,
                duration_minutes=duration,
                status=SessionStatus.SCHEDULED,
                student_home_location=location,
                otp=generate_otp(),
                session_number=start_number + index,
                total_sessions=total,
            )
            self.db.add(session)
            await self.db.flush()
            result.created_ids.append(session.id)

        # Conflict checks read schedule_end, so it must cover every session
        if plan.last_date and (allocation.schedule_end is None or plan.last_date > allocation.schedule_end):
            allocation.schedule_end = plan.last_date
            await self.db.flush()

        if result.is_short:
            logger.warning(
                "Under-generated sessions for allocation %s: %d of %d after %d attempts (start=%s mode=%s)",
                allocation.id, result.total, count, plan.attempts, start, allocation.recurrence_mode.value,
            )
        else:
            logger.info(
                "Generated %d sessions for allocation %s (%d already existed)",
                len(result.created_ids), allocation.id, result.duplicates,
            )
        return result

    async def count_existing(self, allocation_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(TutoringSession.id).where(TutoringSession.allocation_id == allocation_id)
        )
        return len(result.scalars().all())

    async def last_session_date(self, allocation_id: uuid.UUID) -> date | None:
        result = await self.db.execute(
            select(TutoringSession.scheduled_date)
            .where(TutoringSession.allocation_id == allocation_id)
            .order_by(TutoringSession.scheduled_date.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _student_location(self, student_id: uuid.UUID) -> dict[str, Any]:
        result = await self.db.execute(
            select(StudentProfile).where(StudentProfile.student_id == student_id)
        )
        profile = result.scalar_one_or_none()
        if profile is None or not profile.has_valid_location:
            raise GPSMissingError(
                "Student home location is missing or invalid. Ask the student to update their "
                "address with a valid map pin, then regenerate sessions for this allocation.",
                student_id=student_id,
            )
        return {
            "latitude": profile.latitude,
            "longitude": profile.longitude,
            "address": profile.address,
        }

    async def _exists(self, allocation: TrainerAllocation, day: date) -> bool:
        result = await self.db.execute(
            select(TutoringSession.id).where(
                TutoringSession.allocation_id == allocation.id,
                TutoringSession.student_id == allocation.student_id,
                TutoringSession.trainer_id == allocation.trainer_id,
                TutoringSession.scheduled_date == day,
                TutoringSession.scheduled_time == allocation.time_slot,
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None
