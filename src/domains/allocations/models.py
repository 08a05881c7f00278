"""Trainer allocation models and the post-commit effect outbox."""
import enum
import uuid
from datetime import date, datetime, time
from typing import Any

from sqlalchemy import Date, DateTime, Enum, ForeignKey, Integer, Text, Time
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.config.database import Base
from src.core.models import TimestampMixin, UUIDMixin


class AllocationStatus(str, enum.Enum):
    """Lifecycle of a teaching relationship."""

    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


# Statuses that hold trainer capacity and schedule occupancy
LIVE_STATUSES = (AllocationStatus.APPROVED, AllocationStatus.ACTIVE)
OPEN_STATUSES = (AllocationStatus.PENDING, AllocationStatus.APPROVED, AllocationStatus.ACTIVE)


class RecurrenceMode(str, enum.Enum):
    """How sessions repeat."""

    DAILY = "daily"
    SUNDAY_ONLY = "sunday_only"


class TrainerAllocation(Base, UUIDMixin, TimestampMixin):
    """A (student, course, trainer) relationship. Never physically deleted."""

    __tablename__ = "trainer_allocations"

    student_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Null only while pending manual assignment
    trainer_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    course_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("courses.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    status: Mapped[AllocationStatus] = mapped_column(
        Enum(AllocationStatus, create_constraint=False, native_enum=False),
        default=AllocationStatus.PENDING,
        nullable=False,
        index=True,
    )

    requested_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    allocated_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    allocated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Schedule
    time_slot: Mapped[time | None] = mapped_column(Time, nullable=True)
    recurrence_mode: Mapped[RecurrenceMode] = mapped_column(
        Enum(RecurrenceMode, create_constraint=False, native_enum=False),
        default=RecurrenceMode.DAILY,
        nullable=False,
    )
    schedule_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    schedule_end: Mapped[date | None] = mapped_column(Date, nullable=True)  # last planned session date
    session_count: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    session_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=40)

    # Audit / upgrade lineage, see schemas.AllocationDetails
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSON, nullable=True)

    # Relationships
    student = relationship("User", foreign_keys=[student_id], lazy="selectin")
    trainer = relationship("User", foreign_keys=[trainer_id], lazy="selectin")
    course = relationship("Course", lazy="selectin")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


class EffectKind(str, enum.Enum):
    """Side effects recorded on a lifecycle transition."""

    GENERATE_SESSIONS = "generate_sessions"
    NOTIFY = "notify"
    PAYROLL_START = "payroll_start"
    PUBLISH_EVENT = "publish_event"


class EffectStatus(str, enum.Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class AllocationEffect(Base, UUIDMixin, TimestampMixin):
    """Outbox row: one side effect that must run after the transition commits."""

    __tablename__ = "allocation_effects"

    allocation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("trainer_allocations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[EffectKind] = mapped_column(
        Enum(EffectKind, create_constraint=False, native_enum=False),
        nullable=False,
    )
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[EffectStatus] = mapped_column(
        Enum(EffectStatus, create_constraint=False, native_enum=False),
        default=EffectStatus.PENDING,
        nullable=False,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
