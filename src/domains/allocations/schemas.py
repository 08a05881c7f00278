"""Allocation schemas for API validation and typed metadata."""
from datetime import date, datetime, time
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from src.domains.allocations.errors import ValidationError
from src.domains.allocations.models import AllocationStatus, RecurrenceMode
from src.domains.allocations.timeslots import format_time_slot, parse_time_slot
from src.domains.users.models import Gender


def _coerce_slot(value: Any) -> Any:
    if value is None or isinstance(value, time):
        return value
    try:
        return parse_time_slot(value)
    except ValidationError as e:
        raise ValueError(e.message) from e


# Accepts "4:00 PM", "16:00" or a time
TimeSlot = Annotated[time, BeforeValidator(_coerce_slot)]


class ScheduleConfig(BaseModel):
    """Schedule chosen for an allocation. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    time_slot: TimeSlot | None = None
    start_date: date | None = None
    recurrence_mode: RecurrenceMode = RecurrenceMode.DAILY
    session_count: int | None = Field(default=None, ge=1, le=120)
    session_duration_minutes: int | None = Field(default=None, ge=15, le=240)


class PurchaseMetadata(BaseModel):
    """Checkout metadata attached to a course purchase.

    The checkout client sends camelCase keys; only the fields below are read.
    """

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    time_slot: TimeSlot | None = None
    start_date: date | None = None
    recurrence_mode: RecurrenceMode | None = None
    additional_sessions: int | None = Field(default=None, ge=0)
    previous_purchase_tier: int | None = Field(default=None, ge=0)


class AllocationDetails(BaseModel):
    """Audit and upgrade lineage stored in the allocation ``metadata`` column."""

    model_config = ConfigDict(extra="ignore")

    used_fallback: bool = False
    fallback_tier: str | None = None
    reason_code: str | None = None
    matching: dict[str, Any] | None = None
    rejections: dict[str, list[str]] | None = None
    upgrade_of: UUID | None = None
    upgraded_to: list[UUID] | None = None
    additional_sessions: int | None = None
    trainer_availability_warning: list[str] | None = None
    upgrade_history: list[dict[str, Any]] | None = None
    status_reason: str | None = None

    @classmethod
    def load(cls, raw: dict[str, Any] | None) -> "AllocationDetails":
        return cls.model_validate(raw or {})

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ==================== Requests ====================


class AllocationCreate(BaseModel):
    """Schema for creating an allocation."""

    student_id: UUID
    course_id: UUID | None = None
    trainer_id: UUID | None = None
    notes: str | None = None
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)


class AllocationApprove(BaseModel):
    trainer_id: UUID | None = None


class AllocationReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class AllocationStatusChange(BaseModel):
    reason: str | None = None


class AllocationUpdate(BaseModel):
    """Notes are always editable; schedule only while pending."""

    notes: str | None = None
    trainer_id: UUID | None = None
    schedule: ScheduleConfig | None = None


class AutoAssignRequest(BaseModel):
    """Purchase completion payload."""

    student_id: UUID
    course_id: UUID
    time_slot: TimeSlot | None = None
    start_date: date | None = None
    gender_preference: Gender | None = None
    purchase_metadata: PurchaseMetadata = Field(default_factory=PurchaseMetadata)


# ==================== Responses ====================


class AllocationResponse(BaseModel):
    """Schema for allocation response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    student_id: UUID
    trainer_id: UUID | None
    course_id: UUID | None
    status: AllocationStatus
    requested_by: UUID
    requested_at: datetime
    allocated_by: UUID | None = None
    allocated_at: datetime | None = None
    rejected_by: UUID | None = None
    rejected_at: datetime | None = None
    rejection_reason: str | None = None
    notes: str | None = None
    time_slot: time | None = None
    time_slot_label: str | None = None
    recurrence_mode: RecurrenceMode
    schedule_start: date | None = None
    schedule_end: date | None = None
    session_count: int
    session_duration_minutes: int
    details: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, allocation) -> "AllocationResponse":
        response = cls.model_validate(allocation)
        if allocation.time_slot is not None:
            response.time_slot_label = format_time_slot(allocation.time_slot)
        return response


class AllocationListResponse(BaseModel):
    items: list[AllocationResponse]
    total: int


class AutoAssignResponse(BaseModel):
    outcome: Literal["assigned", "pending_manual_review", "existing", "extended", "replaced", "no_change"]
    allocation: AllocationResponse
    original_allocation_id: UUID | None = None
    reason_code: str | None = None
    warnings: list[str] = []


class TrainerRejection(BaseModel):
    trainer_id: UUID
    reasons: list[str]


class SlotAvailabilityResponse(BaseModel):
    time_slot: str
    start_date: date
    end_date: date
    candidates: int
    eligible: int
    eligible_trainer_ids: list[UUID]
    rejected: list[TrainerRejection]


class TrainerAvailabilityResponse(BaseModel):
    trainer_id: UUID
    time_slot: str
    start_date: date
    end_date: date
    available: bool
    reasons: list[str]


class CapacityResponse(BaseModel):
    trainer_id: UUID
    current_load: int
    max_capacity: int
    remaining: int
    has_room: bool


class BackfillResponse(BaseModel):
    processed: int
    successful: int
    failed: int
    errors: dict[str, str] = {}


class EffectRetryResponse(BaseModel):
    retried: int
    succeeded: int
    failed: int
