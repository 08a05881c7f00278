"""Test configuration and fixtures for TutorLink API."""

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.config.database import Base, get_db
from src.config.scheduling import HolidayWindow, SchedulingConfig
from src.domains.allocations.dependencies import get_allocation_service
from src.domains.allocations.service import AllocationService
from src.domains.notifications.dispatcher import NotificationDispatcher
from src.main import create_app

# Test database URL - use SQLite in-memory for tests
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Wednesday; the following Monday is 2026-10-19
TODAY = date(2026, 10, 14)
NEXT_MONDAY = date(2026, 10, 19)
FOUR_PM = time(16, 0)


class RecordingEvents:
    """Stands in for EventChannel and keeps what was published."""

    def __init__(self):
        self.published: list[tuple[str, dict[str, Any]]] = []

    async def publish(self, event_type: str, payload: dict[str, Any]) -> bool:
        self.published.append((event_type, payload))
        return True

    def types(self) -> list[str]:
        return [event_type for event_type, _ in self.published]


@pytest.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )

    # Import all models to register them
    from src.domains import models  # noqa: F401

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session


@pytest.fixture
def scheduling_config() -> SchedulingConfig:
    """Default knobs with no holiday window, so every Sunday is a working day."""
    return SchedulingConfig(holiday_window=HolidayWindow())


@pytest.fixture
def events() -> RecordingEvents:
    return RecordingEvents()


@pytest.fixture
def service(
    db_session: AsyncSession,
    scheduling_config: SchedulingConfig,
    events: RecordingEvents,
) -> AllocationService:
    """Allocation service pinned to TODAY with notifications disabled."""
    return AllocationService(
        db_session,
        scheduling_config,
        notifier=NotificationDispatcher(base_url=""),
        events=events,
        today_provider=lambda: TODAY,
    )


@pytest.fixture(scope="function")
async def client(test_engine, db_session, service) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""
    app = create_app()

    # Override the database dependency
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_allocation_service] = lambda: service

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def actor_id() -> uuid.UUID:
    """Id of the acting admin."""
    return uuid.uuid4()


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def create_student(db_session: AsyncSession) -> Callable[..., Awaitable[uuid.UUID]]:
    """Create a student user with a home location (Bengaluru by default)."""
    from src.domains.students.models import StudentProfile
    from src.domains.users.models import User

    async def _create(
        latitude: float | None = 12.9716,
        longitude: float | None = 77.5946,
        gender=None,
        name: str = "Test Student",
    ) -> uuid.UUID:
        student_id = uuid.uuid4()
        db_session.add(
            User(
                id=student_id,
                email=f"student-{student_id}@example.com",
                name=name,
                gender=gender,
                is_active=True,
            )
        )
        db_session.add(
            StudentProfile(
                student_id=student_id,
                gender=gender,
                address="12 MG Road, Bengaluru",
                latitude=latitude,
                longitude=longitude,
            )
        )
        await db_session.commit()
        return student_id

    return _create


@pytest.fixture
def create_trainer(db_session: AsyncSession) -> Callable[..., Awaitable[uuid.UUID]]:
    """Create an approved trainer teaching at 4:00 PM."""
    from src.domains.trainers.models import (
        TrainerApprovalStatus,
        TrainerAvailabilitySlot,
        TrainerProfile,
    )
    from src.domains.users.models import User

    async def _create(
        rating: float | None = 4.5,
        specialties: list[str] | None = None,
        preferred_time_slots: list[str] | None = None,
        structured_slots: list[time] | None = None,
        gender=None,
        years_of_experience: int = 3,
        approval_status: TrainerApprovalStatus = TrainerApprovalStatus.APPROVED,
        name: str = "Test Trainer",
    ) -> uuid.UUID:
        trainer_id = uuid.uuid4()
        db_session.add(
            User(
                id=trainer_id,
                email=f"trainer-{trainer_id}@example.com",
                name=name,
                gender=gender,
                is_active=True,
            )
        )
        db_session.add(
            TrainerProfile(
                trainer_id=trainer_id,
                approval_status=approval_status,
                gender=gender,
                specialties=specialties if specialties is not None else ["Coding"],
                preferred_time_slots=(
                    preferred_time_slots if preferred_time_slots is not None else ["4:00 PM - 5:00 PM"]
                ),
                rating_average=rating,
                years_of_experience=years_of_experience,
            )
        )
        for slot in structured_slots or []:
            db_session.add(TrainerAvailabilitySlot(trainer_id=trainer_id, slot_start=slot))
        await db_session.commit()
        return trainer_id

    return _create


@pytest.fixture
def create_course(db_session: AsyncSession) -> Callable[..., Awaitable[uuid.UUID]]:
    from src.domains.courses.models import Course

    async def _create(category: str | None = "Coding", subcategory: str | None = None) -> uuid.UUID:
        course_id = uuid.uuid4()
        db_session.add(
            Course(id=course_id, title=f"{category or 'General'} course", category=category, subcategory=subcategory)
        )
        await db_session.commit()
        return course_id

    return _create


@pytest.fixture
def create_purchase(db_session: AsyncSession) -> Callable[..., Awaitable[uuid.UUID]]:
    from src.domains.courses.models import CoursePurchase

    async def _create(
        student_id: uuid.UUID,
        course_id: uuid.UUID,
        purchase_tier: int = 10,
        metadata: dict[str, Any] | None = None,
    ) -> uuid.UUID:
        purchase_id = uuid.uuid4()
        db_session.add(
            CoursePurchase(
                id=purchase_id,
                student_id=student_id,
                course_id=course_id,
                purchase_tier=purchase_tier,
                is_active=True,
                details=metadata,
            )
        )
        await db_session.commit()
        return purchase_id

    return _create


@pytest.fixture
def create_allocation(db_session: AsyncSession, actor_id: uuid.UUID) -> Callable[..., Awaitable[Any]]:
    """Insert an allocation row directly, bypassing the service."""

    from src.domains.allocations.models import AllocationStatus, RecurrenceMode, TrainerAllocation

    async def _create(
        student_id: uuid.UUID,
        trainer_id: uuid.UUID | None,
        course_id: uuid.UUID | None = None,
        status: AllocationStatus = AllocationStatus.APPROVED,
        time_slot: time = FOUR_PM,
        schedule_start: date = NEXT_MONDAY,
        schedule_end: date | None = None,
        session_count: int = 10,
        recurrence_mode: RecurrenceMode = RecurrenceMode.DAILY,
        details: dict[str, Any] | None = None,
        session_duration_minutes: int | None = None,
    ) -> TrainerAllocation:
        allocation = TrainerAllocation(
            id=uuid.uuid4(),
            student_id=student_id,
            trainer_id=trainer_id,
            course_id=course_id,
            status=status,
            requested_by=actor_id,
            requested_at=datetime.now(timezone.utc),
            time_slot=time_slot,
            recurrence_mode=recurrence_mode,
            schedule_start=schedule_start,
            schedule_end=schedule_end or schedule_start + timedelta(days=session_count - 1),
            session_count=session_count,
            session_duration_minutes=session_duration_minutes
            or (80 if recurrence_mode == RecurrenceMode.SUNDAY_ONLY else 40),
            details=details,
        )
        db_session.add(allocation)
        await db_session.commit()
        return allocation

    return _create
