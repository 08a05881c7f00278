"""Trainer domain models: profile, availability and schedule occupancy."""
import enum
import uuid
from datetime import date, time

from sqlalchemy import Date, Enum, Float, ForeignKey, Integer, Text, Time, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.config.database import Base
from src.core.models import TimestampMixin, UUIDMixin
from src.domains.users.models import Gender


class TrainerApprovalStatus(str, enum.Enum):
    """Onboarding status of a trainer application."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class ScheduleSlotStatus(str, enum.Enum):
    """Occupancy of a concrete trainer slot."""

    BOOKED = "booked"
    BLOCKED = "blocked"
    AVAILABLE = "available"


class TrainerProfile(Base, UUIDMixin, TimestampMixin):
    """Teaching profile used for matching."""

    __tablename__ = "trainer_profiles"

    trainer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    approval_status: Mapped[TrainerApprovalStatus] = mapped_column(
        Enum(TrainerApprovalStatus, create_constraint=False, native_enum=False),
        default=TrainerApprovalStatus.PENDING,
        nullable=False,
        index=True,
    )
    gender: Mapped[Gender | None] = mapped_column(
        Enum(Gender, create_constraint=False, native_enum=False),
        nullable=True,
    )
    specialties: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)  # ["AI", "Robotics"]
    preferred_time_slots: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)  # ["4:00 PM - 5:00 PM"]
    rating_average: Mapped[float | None] = mapped_column(Float, nullable=True)
    years_of_experience: Mapped[int | None] = mapped_column(Integer, nullable=True)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Relationships
    trainer = relationship("User", lazy="selectin")


class TrainerAvailabilitySlot(Base, UUIDMixin, TimestampMixin):
    """Structured availability: one row per hour-slot the trainer teaches."""

    __tablename__ = "trainer_availability"
    __table_args__ = (
        UniqueConstraint("trainer_id", "slot_start", name="uq_trainer_availability_slot"),
    )

    trainer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot_start: Mapped[time] = mapped_column(Time, nullable=False)
    slot_end: Mapped[time | None] = mapped_column(Time, nullable=True)


class TrainerScheduleSlot(Base, UUIDMixin, TimestampMixin):
    """A dated slot that is booked or blocked (leave, training, etc)."""

    __tablename__ = "schedule_slots"

    trainer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slot_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    time_slot: Mapped[time] = mapped_column(Time, nullable=False)
    status: Mapped[ScheduleSlotStatus] = mapped_column(
        Enum(ScheduleSlotStatus, create_constraint=False, native_enum=False),
        default=ScheduleSlotStatus.BLOCKED,
        nullable=False,
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    student_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
