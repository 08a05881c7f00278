"""Date stepping for recurring session schedules.

Pure functions: no database access and no clock reads, so every rule here
can be exercised with fixed dates.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta

from src.config.scheduling import HolidayWindow, SchedulingConfig
from src.domains.allocations.models import RecurrenceMode

SUNDAY = 6


@dataclass(frozen=True)
class SessionPlan:
    dates: list[date] = field(default_factory=list)
    requested: int = 0
    attempts: int = 0

    @property
    def is_short(self) -> bool:
        return len(self.dates) < self.requested

    @property
    def first_date(self) -> date | None:
        return self.dates[0] if self.dates else None

    @property
    def last_date(self) -> date | None:
        return self.dates[-1] if self.dates else None


def next_sunday(day: date) -> date:
    """``day`` itself when it is a Sunday, else the following Sunday."""
    return day + timedelta(days=(SUNDAY - day.weekday()) % 7)


def session_duration(
    mode: RecurrenceMode,
    config: SchedulingConfig,
    explicit: int | None = None,
) -> int:
    """Sunday-only courses run a double block unless a duration was given."""
    if explicit:
        return explicit
    if mode == RecurrenceMode.SUNDAY_ONLY:
        return config.sunday_only_session_duration_minutes
    return config.session_duration_minutes


def is_skipped(day: date, mode: RecurrenceMode, holiday_window: HolidayWindow, today: date) -> bool:
    if day < today:
        return True
    if mode == RecurrenceMode.SUNDAY_ONLY:
        return day.weekday() != SUNDAY
    return day.weekday() == SUNDAY and holiday_window.contains(day)


def plan_session_dates(
    start: date,
    count: int,
    mode: RecurrenceMode,
    holiday_window: HolidayWindow,
    today: date,
) -> SessionPlan:
    """Walk forward from ``start`` until ``count`` dates are found.

    Daily mode steps one day at a time and drops holiday Sundays. Sunday-only
    mode aligns to the first Sunday and steps a week at a time; holiday
    windows do not apply to it. At most ``2 * count`` dates are examined.
    """
    if count <= 0:
        return SessionPlan(requested=max(count, 0))

    current = max(start, today)
    if mode == RecurrenceMode.SUNDAY_ONLY:
        current = next_sunday(current)
        step = timedelta(days=7)
    else:
        step = timedelta(days=1)

    dates: list[date] = []
    budget = count * 2
    attempts = 0
    while len(dates) < count and attempts < budget:
        attempts += 1
        if not is_skipped(current, mode, holiday_window, today):
            dates.append(current)
        current += step

    return SessionPlan(dates=dates, requested=count, attempts=attempts)


def schedule_end_date(
    start: date,
    count: int,
    mode: RecurrenceMode,
    config: SchedulingConfig,
    today: date,
) -> date:
    """Last date a schedule would occupy; ``start`` when nothing can be planned."""
    plan = plan_session_dates(start, count, mode, config.holiday_window, today)
    return plan.last_date or start
