# salonbook/services/slots/calculator.py
"""
Slot generator: candidate start times for one operating window.

Contains:
✓ window start/end (end itself is never a start)
✓ break sub-windows (default lunch hour)

Does NOT contain:
✗ Bookings (see conflicts.py)
✗ "now" cutoff (see availability.py)
"""

from .calendar import OperatingWindow
from .config import minutes_to_time_str


def generate_candidate_minutes(window: OperatingWindow, step: int) -> list[int]:
    """Ascending candidate starts in minutes since midnight."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")

    minutes: list[int] = []
    t = window.start
    while t < window.end:
        if not window.in_break(t):
            minutes.append(t)
        t += step
    return minutes


def generate_candidates(window: OperatingWindow, step: int) -> list[str]:
    """
    Candidate slot start times for a window.

    Returns:
        Ordered list of "HH:MM" strings, no duplicates.
    """
    return [minutes_to_time_str(t) for t in generate_candidate_minutes(window, step)]
