"""Parsing and comparison of textual hour slots ("4:00 PM")."""
import re
from datetime import time

from src.domains.allocations.errors import ValidationError

_SLOT_PATTERN = re.compile(r"^\s*(\d{1,2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*$")


def parse_time_slot(value: str | time) -> time:
    """Parse "4:00 PM", "4 pm" or "16:00" into a time.

    Raises ValidationError for anything else.
    """
    if isinstance(value, time):
        return value
    if value is None:
        raise ValidationError("Time slot is required")

    # "4:00 PM - 5:00 PM" ranges use the start
    head = str(value).split("-")[0]
    match = _SLOT_PATTERN.match(head)
    if not match:
        raise ValidationError(f"Invalid time slot: {value!r}", time_slot=value)

    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").upper()

    if meridiem:
        if not 1 <= hour <= 12:
            raise ValidationError(f"Invalid time slot: {value!r}", time_slot=value)
        if meridiem == "PM" and hour != 12:
            hour += 12
        elif meridiem == "AM" and hour == 12:
            hour = 0
    if hour > 23 or minute > 59:
        raise ValidationError(f"Invalid time slot: {value!r}", time_slot=value)
    return time(hour, minute)


def format_time_slot(value: time) -> str:
    """16:00 -> "4:00 PM"."""
    hour = value.hour % 12 or 12
    meridiem = "PM" if value.hour >= 12 else "AM"
    return f"{hour}:{value.minute:02d} {meridiem}"


def adjacent_slots(value: time) -> list[time]:
    """The hour slots immediately before and after, on the hour."""
    slots = []
    if value.hour > 0:
        slots.append(time(value.hour - 1, 0))
    if value.hour < 23:
        slots.append(time(value.hour + 1, 0))
    return slots


def matches_preferred_slot(preferred_slots: list[str] | None, slot: time) -> bool:
    """Whether a free-form preferred slot list covers ``slot``.

    Entries are free text ("4:00 PM - 5:00 PM", "4:00 pm"), so each one is
    parsed by its start time; unparseable entries are ignored.
    """
    if not preferred_slots:
        return False
    for entry in preferred_slots:
        try:
            if parse_time_slot(entry) == slot:
                return True
        except ValidationError:
            continue
    return False
