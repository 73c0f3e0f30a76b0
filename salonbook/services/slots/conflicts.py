# salonbook/services/slots/conflicts.py
"""
Booking conflict index.

Turns the existing bookings of one (staff, date) into the set of grid
slots they occupy. Scoping to (staff, date) is the caller's job: the
index never looks at resource ids or dates.
"""

import logging
from dataclasses import dataclass

from .config import minutes_to_time_str, time_str_to_minutes

logger = logging.getLogger(__name__)


CANCELLED = "cancelled"

# Exact-overlap resolution of slot claims; equals the smallest legal step
CLAIM_RESOLUTION_MINUTES = 5


@dataclass(frozen=True)
class BookedInterval:
    time: str  # "HH:MM"
    duration_minutes: int
    status: str = "pending"

    @property
    def start_minutes(self) -> int:
        return time_str_to_minutes(self.time)


def occupied_minutes(
    bookings: list[BookedInterval],
    step: int,
    origin: int = 0,
) -> set[int]:
    """
    Grid instants covered by non-cancelled bookings.

    The grid is anchored at `origin` (minutes since midnight) and advances
    by `step`. Every grid instant in [start, start + duration) is marked,
    so a partial last step still blocks its slot.
    """
    occupied: set[int] = set()

    for booking in bookings:
        if booking.status == CANCELLED:
            continue
        try:
            start = booking.start_minutes
        except ValueError:
            logger.warning(f"Skipping booking with invalid time: {booking.time!r}")
            continue

        # First grid instant at or after start
        first = start + (origin - start) % step
        offset = first - start
        while offset < booking.duration_minutes:
            occupied.add(start + offset)
            offset += step

    return occupied


def occupied_slots(
    bookings: list[BookedInterval],
    step: int,
    origin: int = 0,
) -> set[str]:
    """Same as occupied_minutes, as "HH:MM" strings."""
    return {minutes_to_time_str(t) for t in occupied_minutes(bookings, step, origin)}


def booked_spans(bookings: list[BookedInterval]) -> list[tuple[int, int]]:
    """[start, end) minutes of each non-cancelled booking."""
    spans = []
    for booking in bookings:
        if booking.status == CANCELLED:
            continue
        try:
            start = booking.start_minutes
        except ValueError:
            logger.warning(f"Skipping booking with invalid time: {booking.time!r}")
            continue
        spans.append((start, start + booking.duration_minutes))
    return spans


def overlaps_any(start: int, duration: int, spans: list[tuple[int, int]]) -> bool:
    """True when [start, start + duration) intersects any span, on or off the grid."""
    end = start + duration
    return any(s < end and start < e for s, e in spans)


def claim_minutes(start: int, duration_minutes: int) -> list[int]:
    """
    Minutes rows a booking holds in slot_claims.

    The fixed 5-minute resolution makes two bookings collide in the
    UNIQUE(staff_id, date, minute) constraint exactly when they overlap,
    whatever the tenant's step was when each was made.
    """
    first = start - start % CLAIM_RESOLUTION_MINUTES
    end = start + duration_minutes
    return list(range(first, end, CLAIM_RESOLUTION_MINUTES))
