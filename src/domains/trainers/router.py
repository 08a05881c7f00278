"""Trainer router - capacity and availability lookups used by admins and checkout."""
from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query

from src.domains.allocations.dependencies import Service
from src.domains.allocations.models import RecurrenceMode
from src.domains.allocations.schemas import (
    CapacityResponse,
    SlotAvailabilityResponse,
    TrainerAvailabilityResponse,
)
from src.domains.allocations.timeslots import parse_time_slot
from src.domains.users.models import Gender

router = APIRouter()


@router.get("/time-slots/availability", response_model=SlotAvailabilityResponse)
async def check_time_slot_availability(
    service: Service,
    time_slot: Annotated[str, Query(description='e.g. "4:00 PM" or "16:00"')],
    start_date: Annotated[date, Query()],
    session_count: Annotated[int, Query(ge=1, le=120)] = 30,
    recurrence_mode: Annotated[RecurrenceMode, Query()] = RecurrenceMode.DAILY,
    course_id: Annotated[UUID | None, Query()] = None,
    gender: Annotated[Gender | None, Query()] = None,
    student_id: Annotated[UUID | None, Query()] = None,
) -> SlotAvailabilityResponse:
    """Count trainers who could take a slot, with reasons for the rest."""
    result = await service.check_time_slot_availability(
        time_slot=parse_time_slot(time_slot),
        start_date=start_date,
        session_count=session_count,
        recurrence_mode=recurrence_mode,
        course_id=course_id,
        gender_preference=gender,
        student_id=student_id,
    )
    return SlotAvailabilityResponse(**result)


@router.get("/{trainer_id}/capacity", response_model=CapacityResponse)
async def get_trainer_capacity(
    trainer_id: UUID,
    service: Service,
) -> CapacityResponse:
    snapshot = await service.get_capacity_snapshot(trainer_id)
    return CapacityResponse(
        trainer_id=snapshot.trainer_id,
        current_load=snapshot.current_load,
        max_capacity=snapshot.max_capacity,
        remaining=snapshot.remaining,
        has_room=snapshot.has_room,
    )


@router.get("/{trainer_id}/availability", response_model=TrainerAvailabilityResponse)
async def check_trainer_availability(
    trainer_id: UUID,
    service: Service,
    time_slot: Annotated[str, Query()],
    start_date: Annotated[date, Query()],
    session_count: Annotated[int, Query(ge=1, le=120)] = 30,
    recurrence_mode: Annotated[RecurrenceMode, Query()] = RecurrenceMode.DAILY,
    student_id: Annotated[UUID | None, Query()] = None,
) -> TrainerAvailabilityResponse:
    """Whether one trainer can take a slot for a date range, and why not."""
    result = await service.check_trainer_availability(
        trainer_id=trainer_id,
        time_slot=parse_time_slot(time_slot),
        start_date=start_date,
        session_count=session_count,
        recurrence_mode=recurrence_mode,
        student_id=student_id,
    )
    return TrainerAvailabilityResponse(**result)
