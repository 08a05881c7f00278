"""Tuning knobs for trainer assignment and session scheduling.

Built once from ``Settings`` and handed to every engine component, so tests
can construct a config with explicit values instead of patching the
environment.
"""
from dataclasses import dataclass, field
from datetime import date

from src.config.settings import Settings, settings as app_settings


@dataclass(frozen=True)
class HolidayWindow:
    """Inclusive date window whose Sundays are holidays for daily courses."""

    start: date | None = None
    end: date | None = None

    def contains(self, day: date) -> bool:
        if self.start is None and self.end is None:
            return False
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True


@dataclass(frozen=True)
class SchedulingConfig:
    max_sequential_distance_km: float = 5.0
    capacity_floor: int = 4
    candidate_limit: int = 10
    default_session_count: int = 30
    default_time_slot: str = "4:00 PM"
    session_duration_minutes: int = 40
    sunday_only_session_duration_minutes: int = 80
    holiday_window: HolidayWindow = field(default_factory=HolidayWindow)
    effect_max_attempts: int = 5

    @classmethod
    def from_settings(cls, settings: Settings | None = None, today: date | None = None) -> "SchedulingConfig":
        settings = settings or app_settings
        start, end = settings.SUNDAY_HOLIDAY_START, settings.SUNDAY_HOLIDAY_END
        if start is None and end is None:
            year = (today or date.today()).year
            start, end = date(year, 1, 1), date(year, 7, 31)
        return cls(
            max_sequential_distance_km=settings.MAX_SEQUENTIAL_DISTANCE_KM,
            capacity_floor=settings.TRAINER_CAPACITY_FLOOR,
            candidate_limit=settings.CANDIDATE_LIMIT,
            default_session_count=settings.DEFAULT_SESSION_COUNT,
            default_time_slot=settings.DEFAULT_TIME_SLOT,
            session_duration_minutes=settings.SESSION_DURATION_MINUTES,
            sunday_only_session_duration_minutes=settings.SUNDAY_ONLY_SESSION_DURATION_MINUTES,
            holiday_window=HolidayWindow(start=start, end=end),
            effect_max_attempts=settings.EFFECT_MAX_ATTEMPTS,
        )
