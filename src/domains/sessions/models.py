"""Tutoring session models."""
import enum
import uuid
from datetime import date, time
from typing import Any

from sqlalchemy import Date, Enum, ForeignKey, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.config.database import Base
from src.core.models import TimestampMixin, UUIDMixin


class SessionStatus(str, enum.Enum):
    """Execution status. Only SCHEDULED is written by the generator."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TutoringSession(Base, UUIDMixin, TimestampMixin):
    """One dated, timed home visit generated from an allocation."""

    __tablename__ = "tutoring_sessions"
    __table_args__ = (
        UniqueConstraint(
            "allocation_id",
            "student_id",
            "trainer_id",
            "scheduled_date",
            "scheduled_time",
            name="uq_tutoring_session_slot",
        ),
    )

    allocation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("trainer_allocations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    trainer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    course_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("courses.id", ondelete="SET NULL"),
        nullable=True,
    )
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    scheduled_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=40)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, create_constraint=False, native_enum=False),
        default=SessionStatus.SCHEDULED,
        nullable=False,
    )
    student_home_location: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)  # {latitude, longitude, address}
    otp: Mapped[str] = mapped_column(String(6), nullable=False)
    session_number: Mapped[int] = mapped_column(Integer, nullable=False)
    total_sessions: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)
