"""Trainer capacity tiers and live load."""
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.domains.allocations.models import LIVE_STATUSES, TrainerAllocation

# (minimum rating, max simultaneous allocations), highest band first
CAPACITY_TIERS: tuple[tuple[float, int], ...] = (
    (4.6, 8),
    (4.1, 7),
    (3.6, 6),
    (3.1, 5),
)
BASE_CAPACITY = 4


def max_capacity_for_rating(rating: float | None) -> int:
    """Step function from rating average to capacity. Unrated trainers get the base tier."""
    if rating is None:
        return BASE_CAPACITY
    for threshold, capacity in CAPACITY_TIERS:
        if rating >= threshold:
            return capacity
    return BASE_CAPACITY


@dataclass(frozen=True)
class CapacitySnapshot:
    trainer_id: uuid.UUID
    current_load: int
    max_capacity: int

    @property
    def has_room(self) -> bool:
        return self.current_load < self.max_capacity

    @property
    def remaining(self) -> int:
        return max(self.max_capacity - self.current_load, 0)


async def current_loads(
    db: AsyncSession,
    trainer_ids: list[uuid.UUID],
    exclude_allocation_id: uuid.UUID | None = None,
) -> dict[uuid.UUID, int]:
    """Count approved/active allocations per trainer in one query."""
    if not trainer_ids:
        return {}
    query = (
        select(TrainerAllocation.trainer_id, func.count(TrainerAllocation.id))
        .where(
            TrainerAllocation.trainer_id.in_(trainer_ids),
            TrainerAllocation.status.in_(LIVE_STATUSES),
        )
        .group_by(TrainerAllocation.trainer_id)
    )
    if exclude_allocation_id is not None:
        query = query.where(TrainerAllocation.id != exclude_allocation_id)
    result = await db.execute(query)
    loads = {trainer_id: 0 for trainer_id in trainer_ids}
    for trainer_id, count in result.all():
        loads[trainer_id] = count
    return loads


async def get_capacity_snapshot(
    db: AsyncSession,
    trainer_id: uuid.UUID,
    rating: float | None,
    exclude_allocation_id: uuid.UUID | None = None,
) -> CapacitySnapshot:
    loads = await current_loads(db, [trainer_id], exclude_allocation_id)
    return CapacitySnapshot(
        trainer_id=trainer_id,
        current_load=loads[trainer_id],
        max_capacity=max_capacity_for_rating(rating),
    )
