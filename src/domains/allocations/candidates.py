"""Coarse trainer candidate lookup and ranking."""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, time

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.config.scheduling import SchedulingConfig
from src.domains.allocations.capacity import current_loads, max_capacity_for_rating
from src.domains.allocations.specialty import specialty_match_rank
from src.domains.allocations.timeslots import matches_preferred_slot
from src.domains.trainers.models import (
    TrainerApprovalStatus,
    TrainerAvailabilitySlot,
    TrainerProfile,
)
from src.domains.users.models import Gender

logger = logging.getLogger(__name__)

NO_SPECIALTY_MATCH = 3


@dataclass(frozen=True)
class SlotRequest:
    """One student asking for one recurring slot over a date range."""

    student_id: uuid.UUID
    time_slot: time
    start_date: date
    end_date: date
    gender_preference: Gender | None = None
    category: str | None = None
    subcategory: str | None = None
    student_latitude: float | None = None
    student_longitude: float | None = None
    exclude_trainer_ids: frozenset[uuid.UUID] = field(default_factory=frozenset)

    @property
    def has_specialty(self) -> bool:
        return self.category is not None or self.subcategory is not None

    @property
    def has_location(self) -> bool:
        return self.student_latitude is not None and self.student_longitude is not None


@dataclass
class Candidate:
    profile: TrainerProfile
    current_load: int
    max_capacity: int
    specialty_rank: int = NO_SPECIALTY_MATCH

    @property
    def trainer_id(self) -> uuid.UUID:
        return self.profile.trainer_id

    @property
    def rating(self) -> float:
        return self.profile.rating_average or 0.0

    @property
    def has_room(self) -> bool:
        return self.current_load < self.max_capacity


class CandidateQuery:
    """Read-only: approved trainers free at the slot, ranked for assignment."""

    def __init__(self, db: AsyncSession, config: SchedulingConfig):
        self.db = db
        self.config = config

    async def find(
        self,
        request: SlotRequest,
        match_specialty: bool = True,
        limit: int | None = None,
    ) -> list[Candidate]:
        """Candidates in priority order.

        Availability is the union of the free-form preferred slot list and the
        structured availability table. When ``match_specialty`` is set and the
        course carries a specialty, trainers without a matching tag are dropped.
        ``limit=0`` returns every candidate.
        """
        profiles = await self._approved_profiles(request)
        if not profiles:
            return []

        structured = await self._structured_slot_trainers(
            [p.trainer_id for p in profiles], request.time_slot
        )
        available = [
            p for p in profiles
            if p.trainer_id in structured
            or matches_preferred_slot(p.preferred_time_slots, request.time_slot)
        ]

        candidates: list[Candidate] = []
        loads = await current_loads(self.db, [p.trainer_id for p in available])
        for profile in available:
            rank = specialty_match_rank(profile.specialties, request.category, request.subcategory)
            if match_specialty and request.has_specialty and rank is None:
                continue
            candidates.append(
                Candidate(
                    profile=profile,
                    current_load=loads.get(profile.trainer_id, 0),
                    max_capacity=max_capacity_for_rating(profile.rating_average),
                    specialty_rank=rank or NO_SPECIALTY_MATCH,
                )
            )

        candidates.sort(key=self.priority)
        if limit is None:
            limit = self.config.candidate_limit
        logger.debug(
            "Candidate query slot=%s specialty=%s/%s: %d of %d approved trainers",
            request.time_slot, request.category, request.subcategory,
            len(candidates), len(profiles),
        )
        return candidates[:limit] if limit else candidates

    def priority(self, candidate: Candidate) -> tuple:
        """Below-floor first, then rating, specialty exactness, load, experience."""
        return (
            0 if candidate.current_load < self.config.capacity_floor else 1,
            -candidate.rating,
            candidate.specialty_rank,
            candidate.current_load,
            -(candidate.profile.years_of_experience or 0),
        )

    async def _approved_profiles(self, request: SlotRequest) -> list[TrainerProfile]:
        query = select(TrainerProfile).where(
            TrainerProfile.approval_status == TrainerApprovalStatus.APPROVED
        )
        if request.gender_preference is not None:
            query = query.where(
                or_(
                    TrainerProfile.gender.is_(None),
                    TrainerProfile.gender == request.gender_preference,
                )
            )
        if request.exclude_trainer_ids:
            query = query.where(TrainerProfile.trainer_id.notin_(list(request.exclude_trainer_ids)))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _structured_slot_trainers(
        self, trainer_ids: list[uuid.UUID], slot: time
    ) -> set[uuid.UUID]:
        result = await self.db.execute(
            select(TrainerAvailabilitySlot.trainer_id).where(
                TrainerAvailabilitySlot.trainer_id.in_(trainer_ids),
                TrainerAvailabilitySlot.slot_start == slot,
            )
        )
        return set(result.scalars().all())
