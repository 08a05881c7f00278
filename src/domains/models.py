"""Central import of all domain models.

This file imports all models to ensure they are registered with SQLAlchemy's
metadata before any database operations (like creating tables or migrations).
"""

# Users domain
from src.domains.users.models import (
    Gender,
    User,
)

# Students domain
from src.domains.students.models import (
    StudentProfile,
)

# Trainers domain
from src.domains.trainers.models import (
    ScheduleSlotStatus,
    TrainerApprovalStatus,
    TrainerAvailabilitySlot,
    TrainerProfile,
    TrainerScheduleSlot,
)

# Courses domain
from src.domains.courses.models import (
    Course,
    CoursePurchase,
)

# Allocations domain
from src.domains.allocations.models import (
    AllocationEffect,
    AllocationStatus,
    EffectKind,
    EffectStatus,
    RecurrenceMode,
    TrainerAllocation,
)

# Sessions domain
from src.domains.sessions.models import (
    SessionStatus,
    TutoringSession,
)

# Payroll domain
from src.domains.payroll.models import (
    PayrollAllocation,
)

__all__ = [
    # Users
    "User",
    "Gender",
    # Students
    "StudentProfile",
    # Trainers
    "TrainerProfile",
    "TrainerAvailabilitySlot",
    "TrainerScheduleSlot",
    "TrainerApprovalStatus",
    "ScheduleSlotStatus",
    # Courses
    "Course",
    "CoursePurchase",
    # Allocations
    "TrainerAllocation",
    "AllocationEffect",
    "AllocationStatus",
    "RecurrenceMode",
    "EffectKind",
    "EffectStatus",
    # Sessions
    "TutoringSession",
    "SessionStatus",
    # Payroll
    "PayrollAllocation",
]
