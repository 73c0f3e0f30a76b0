# salonbook/services/slots/availability.py
"""
Availability for one (staff, date, service duration).

Steps:
1. Resolve the operating window (staff → tenant → default schedule)
2. Generate candidates on the tenant's grid (cached per staff/date/step)
3. Mark candidates whose duration overlaps an existing booking
4. Mark candidates that would run past closing time
5. Mark candidates at or before "now" + min_advance in the tenant timezone

Lookup failures degrade to a closed day in available_slots(). The commit
path uses check_slot(), which raises instead.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from ...errors import SlotUnavailable, UpstreamUnavailable
from .calculator import generate_candidate_minutes
from .calendar import OperatingWindow, window_for
from .config import minutes_to_time_str
from .conflicts import booked_spans, overlaps_any
from .redis_store import SlotsRedisStore

logger = logging.getLogger(__name__)


REASON_OCCUPIED = "occupied"
REASON_PAST = "past"
REASON_EXCEEDS_WINDOW = "exceeds_window"


@dataclass(frozen=True)
class SlotAvailability:
    time: str
    available: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class DayAvailability:
    staff_id: int
    date: str
    duration_minutes: int
    closed: bool
    slot_step_minutes: int = 0
    slots: list[SlotAvailability] = field(default_factory=list)

    @property
    def available_times(self) -> list[str]:
        return [s.time for s in self.slots if s.available]

    def slot(self, time_str: str) -> SlotAvailability | None:
        for s in self.slots:
            if s.time == time_str:
                return s
        return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AvailabilityService:
    """
    Composes calendar, slot generator and conflict index.

    Args:
        schedule_store: ScheduleStore (get_staff_calendar)
        booking_store: BookingStore (list_non_cancelled)
        redis: optional client for the day-grid cache
        now_fn: clock returning an aware datetime
    """

    def __init__(
        self,
        schedule_store,
        booking_store,
        redis: Redis | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.schedule_store = schedule_store
        self.booking_store = booking_store
        self.cache = SlotsRedisStore(redis) if redis is not None else None
        self.now_fn = now_fn

    # ── Public ───────────────────────────────────────────────────────────

    def available_slots(
        self,
        staff_id: int,
        target_date: date,
        duration_minutes: int,
        now: datetime | None = None,
    ) -> DayAvailability:
        """Slots of the day with availability flags. Never raises on lookup failure."""
        try:
            return self._compute(staff_id, target_date, duration_minutes, now)
        except (SQLAlchemyError, UpstreamUnavailable) as e:
            logger.warning(
                f"Availability degraded to closed for staff {staff_id} on {target_date}: {e}"
            )
            return self._closed(staff_id, target_date, duration_minutes)

    def check_slot(
        self,
        staff_id: int,
        target_date: date,
        time_str: str,
        duration_minutes: int,
        now: datetime | None = None,
    ) -> None:
        """
        Strict re-check of a single slot.

        Raises:
            SlotUnavailable: slot is not offered or not available
            UpstreamUnavailable: schedule or booking store failed
        """
        try:
            day = self._compute(staff_id, target_date, duration_minutes, now)
        except SQLAlchemyError as e:
            raise UpstreamUnavailable(f"availability lookup failed: {e}") from e

        if day.closed:
            raise SlotUnavailable(f"Staff {staff_id} is closed on {target_date}")
        slot = day.slot(time_str)
        if slot is None:
            raise SlotUnavailable(f"{time_str} is not an offered slot on {target_date}")
        if not slot.available:
            raise SlotUnavailable(f"{time_str} on {target_date} is {slot.reason}")

    # ── Computation ──────────────────────────────────────────────────────

    def _compute(
        self,
        staff_id: int,
        target_date: date,
        duration_minutes: int,
        now: datetime | None,
    ) -> DayAvailability:
        if duration_minutes <= 0:
            raise ValueError(f"duration_minutes must be positive, got {duration_minutes}")

        calendar = self.schedule_store.get_staff_calendar(staff_id)
        if calendar is None:
            return self._closed(staff_id, target_date, duration_minutes)

        step = calendar.config.slot_step_minutes
        window, candidates = self._day_grid(staff_id, target_date, step, calendar.schedule)
        if window is None:
            return self._closed(staff_id, target_date, duration_minutes)

        bookings = self.booking_store.list_non_cancelled(staff_id, target_date)
        spans = booked_spans(bookings)

        cutoff = self._local_cutoff(now, calendar.tz, calendar.config.min_advance_minutes)

        slots = []
        for t in candidates:
            reason = None
            if overlaps_any(t, duration_minutes, spans):
                reason = REASON_OCCUPIED
            elif t + duration_minutes > window.end:
                reason = REASON_EXCEEDS_WINDOW
            elif datetime.combine(target_date, datetime.min.time()) + timedelta(minutes=t) <= cutoff:
                reason = REASON_PAST
            slots.append(SlotAvailability(
                time=minutes_to_time_str(t),
                available=reason is None,
                reason=reason,
            ))

        return DayAvailability(
            staff_id=staff_id,
            date=target_date.isoformat(),
            duration_minutes=duration_minutes,
            closed=False,
            slot_step_minutes=step,
            slots=slots,
        )

    def _day_grid(
        self,
        staff_id: int,
        target_date: date,
        step: int,
        schedule,
    ) -> tuple[OperatingWindow | None, list[int]]:
        if self.cache is not None:
            try:
                cached = self.cache.get_day(staff_id, target_date, step)
            except RedisError as e:
                logger.warning(f"Slot cache read failed, computing directly: {e}")
                cached = None
            if cached is not None:
                return cached

        window = window_for(schedule, target_date)
        candidates = generate_candidate_minutes(window, step) if window else []

        if self.cache is not None:
            try:
                self.cache.store_day(staff_id, target_date, step, window, candidates)
            except RedisError as e:
                logger.warning(f"Slot cache write failed: {e}")

        return window, candidates

    def _local_cutoff(self, now: datetime | None, tz, min_advance_minutes: int) -> datetime:
        """Naive local datetime at or before which slots are past."""
        now = now or self.now_fn()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local_now = now.astimezone(tz).replace(tzinfo=None)
        return local_now + timedelta(minutes=min_advance_minutes)

    @staticmethod
    def _closed(staff_id: int, target_date: date, duration_minutes: int) -> DayAvailability:
        return DayAvailability(
            staff_id=staff_id,
            date=target_date.isoformat(),
            duration_minutes=duration_minutes,
            closed=True,
        )
