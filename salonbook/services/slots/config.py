# salonbook/services/slots/config.py
"""
Slot grid configuration and "HH:MM" helpers.
"""

import re
from dataclasses import dataclass


MIN_STEP_MINUTES = 5
MAX_STEP_MINUTES = 60
MINUTES_PER_DAY = 24 * 60

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True)
class SlotConfig:
    """
    Per-tenant slot grid.

    Attributes:
        slot_step_minutes: Granularity between offerable start times (5..60,
            must divide the hour so slots line up on hour boundaries)
        min_advance_minutes: Lead time before "now" within which a slot
            can no longer be booked (0 = only past slots are closed)
    """
    slot_step_minutes: int = 30
    min_advance_minutes: int = 0

    def __post_init__(self):
        """Validate configuration."""
        step = self.slot_step_minutes
        if not MIN_STEP_MINUTES <= step <= MAX_STEP_MINUTES:
            raise ValueError(
                f"slot_step_minutes must be between {MIN_STEP_MINUTES} and "
                f"{MAX_STEP_MINUTES}, got {step}"
            )
        if 60 % step != 0:
            raise ValueError(f"slot_step_minutes must divide 60, got {step}")
        if self.min_advance_minutes < 0:
            raise ValueError(
                f"min_advance_minutes must be >= 0, got {self.min_advance_minutes}"
            )

    @property
    def slots_per_hour(self) -> int:
        return 60 // self.slot_step_minutes


def time_str_to_minutes(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight."""
    match = _TIME_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid time: {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    # 24:00 is accepted as an end-of-day boundary
    if minute > 59 or hour > 24 or (hour == 24 and minute != 0):
        raise ValueError(f"Invalid time: {value!r}")
    return hour * 60 + minute


def minutes_to_time_str(minutes: int) -> str:
    """Convert minutes since midnight to "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"
