# salonbook/services/slots/__init__.py
"""
Slot engine.

Calendar → candidates → conflicts → availability. Candidate grids are
cached per (staff, date, step) in Redis; bookings are always read live.
"""

from .availability import AvailabilityService, DayAvailability, SlotAvailability
from .calculator import generate_candidates
from .calendar import DEFAULT_SCHEDULE, parse_weekly_schedule, window_for
from .config import SlotConfig
from .conflicts import BookedInterval, occupied_slots
from .invalidator import invalidate_staff_cache, invalidate_tenant_cache
from .redis_store import SlotsRedisStore

__all__ = [
    "AvailabilityService",
    "DayAvailability",
    "SlotAvailability",
    "generate_candidates",
    "DEFAULT_SCHEDULE",
    "parse_weekly_schedule",
    "window_for",
    "SlotConfig",
    "BookedInterval",
    "occupied_slots",
    "invalidate_staff_cache",
    "invalidate_tenant_cache",
    "SlotsRedisStore",
]
