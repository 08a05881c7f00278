"""Tutoring session schemas."""
from datetime import date, datetime, time
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from src.domains.sessions.models import SessionStatus


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    allocation_id: UUID
    student_id: UUID
    trainer_id: UUID
    course_id: UUID | None = None
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int
    status: SessionStatus
    student_home_location: dict[str, Any] | None = None
    session_number: int
    total_sessions: int
    notes: str | None = None
    created_at: datetime


class GenerationResponse(BaseModel):
    """Result of a session generation batch."""

    allocation_id: UUID
    requested: int
    created: int
    duplicates: int
    session_ids: list[UUID]
    first_date: date | None = None
    last_date: date | None = None
    short: bool = False
