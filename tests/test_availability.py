"""
Tests for AvailabilityService over in-memory stores.

Run with: pytest tests/test_availability.py -v
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import fakeredis
import pytest
from sqlalchemy.exc import OperationalError

from salonbook.errors import SlotUnavailable, UpstreamUnavailable
from salonbook.services.slots import AvailabilityService, invalidate_staff_cache
from salonbook.services.slots.calendar import DEFAULT_SCHEDULE, parse_weekly_schedule
from salonbook.services.slots.config import SlotConfig
from salonbook.services.slots.conflicts import BookedInterval
from salonbook.services.stores import StaffCalendar

ISTANBUL = ZoneInfo("Europe/Istanbul")
MONDAY = date(2026, 3, 2)
SUNDAY = date(2026, 3, 8)
NO_LUNCH = parse_weekly_schedule({"monday": {"start": "09:00", "end": "18:00", "breaks": []}})


def local(day: date, hh: int, mm: int) -> datetime:
    return datetime(day.year, day.month, day.day, hh, mm, tzinfo=ISTANBUL)


class FakeScheduleStore:
    def __init__(self, schedule=DEFAULT_SCHEDULE, config=None, fail=False):
        self.schedule = schedule
        self.config = config or SlotConfig()
        self.fail = fail
        self.calls = 0

    def get_staff_calendar(self, staff_id):
        self.calls += 1
        if self.fail:
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))
        return StaffCalendar(
            staff_id=staff_id, tenant_id=1, schedule=self.schedule, config=self.config, tz=ISTANBUL
        )


class FakeBookingStore:
    def __init__(self, bookings=None, fail=False):
        self.bookings = bookings or []
        self.fail = fail

    def list_non_cancelled(self, staff_id, target_date):
        if self.fail:
            raise UpstreamUnavailable("booking store down")
        return [b for b in self.bookings if b.status != "cancelled"]


def make_service(schedule=DEFAULT_SCHEDULE, bookings=None, config=None, redis=None, **fail):
    return AvailabilityService(
        FakeScheduleStore(schedule, config, fail=fail.get("schedule_fail", False)),
        FakeBookingStore(bookings, fail=fail.get("bookings_fail", False)),
        redis=redis,
    )


# ── Closed days ──────────────────────────────────────────────────────────


def test_closed_day_is_empty():
    day = make_service().available_slots(1, SUNDAY, 60, now=local(SUNDAY, 8, 0))

    assert day.closed
    assert day.slots == []


def test_unknown_staff_is_closed():
    service = make_service()
    service.schedule_store.get_staff_calendar = lambda staff_id: None

    assert service.available_slots(99, MONDAY, 30, now=local(MONDAY, 8, 0)).closed


# ── Candidates ───────────────────────────────────────────────────────────


def test_raw_candidate_count():
    no_lunch = make_service(NO_LUNCH).available_slots(1, MONDAY, 30, now=local(MONDAY, 8, 0))
    default = make_service().available_slots(1, MONDAY, 30, now=local(MONDAY, 8, 0))

    assert len(no_lunch.slots) == 18
    assert len(default.slots) == 18 - 2


def test_end_to_end_next_monday():
    day = make_service(NO_LUNCH).available_slots(1, MONDAY, 60, now=local(MONDAY, 8, 0))

    assert day.available_times[0] == "09:00"
    assert day.available_times[-1] == "17:00"
    assert day.slot("17:30").reason == "exceeds_window"
    assert len(day.slots) == 18


# ── Occupancy ────────────────────────────────────────────────────────────


def test_existing_booking_blocks_overlapping_starts():
    bookings = [BookedInterval("10:00", 90, "confirmed")]
    day = make_service(NO_LUNCH, bookings).available_slots(1, MONDAY, 30, now=local(MONDAY, 8, 0))

    unavailable = {s.time for s in day.slots if not s.available}
    assert unavailable == {"10:00", "10:30", "11:00"}
    assert day.slot("10:00").reason == "occupied"


def test_requested_duration_must_fit_before_next_booking():
    bookings = [BookedInterval("11:00", 60, "confirmed")]
    day = make_service(NO_LUNCH, bookings).available_slots(1, MONDAY, 60, now=local(MONDAY, 8, 0))

    assert day.slot("10:00").available
    assert day.slot("10:30").reason == "occupied"
    assert day.slot("12:00").available


def test_off_grid_booking_blocks_covering_slot():
    # Made when the tenant still used a 15-minute step
    bookings = [BookedInterval("10:15", 15, "confirmed")]
    day = make_service(NO_LUNCH, bookings).available_slots(1, MONDAY, 60, now=local(MONDAY, 8, 0))

    assert day.slot("09:30").reason == "occupied"
    assert day.slot("10:00").reason == "occupied"
    assert day.slot("10:30").available
    assert day.slot("09:00").available


def test_cancelled_booking_frees_slot():
    bookings = [BookedInterval("10:00", 60, "cancelled")]
    day = make_service(NO_LUNCH, bookings).available_slots(1, MONDAY, 30, now=local(MONDAY, 8, 0))

    assert day.slot("10:00").available


# ── Past filtering ───────────────────────────────────────────────────────


def test_today_past_slots():
    day = make_service(NO_LUNCH).available_slots(1, MONDAY, 30, now=local(MONDAY, 14, 5))

    assert not day.slot("14:00").available
    assert day.slot("14:00").reason == "past"
    assert not day.slot("09:00").available
    assert day.slot("14:30").available


def test_slot_equal_to_now_is_past():
    day = make_service(NO_LUNCH).available_slots(1, MONDAY, 30, now=local(MONDAY, 14, 0))

    assert day.slot("14:00").reason == "past"


def test_now_is_taken_in_tenant_timezone():
    # 11:05 UTC is 14:05 in Istanbul
    now = datetime(2026, 3, 2, 11, 5, tzinfo=timezone.utc)
    day = make_service(NO_LUNCH).available_slots(1, MONDAY, 30, now=now)

    assert not day.slot("14:00").available
    assert day.slot("14:30").available


def test_earlier_date_is_wholly_past():
    day = make_service(NO_LUNCH).available_slots(1, MONDAY, 30, now=local(date(2026, 3, 3), 8, 0))

    assert day.available_times == []
    assert {s.reason for s in day.slots} <= {"past", "exceeds_window"}


def test_min_advance_shifts_cutoff():
    config = SlotConfig(slot_step_minutes=30, min_advance_minutes=120)
    day = make_service(NO_LUNCH, config=config).available_slots(1, MONDAY, 30, now=local(MONDAY, 9, 10))

    assert not day.slot("11:00").available
    assert day.slot("11:30").available


def test_idempotent():
    service = make_service(bookings=[BookedInterval("15:00", 60, "pending")])
    now = local(MONDAY, 10, 20)

    assert service.available_slots(1, MONDAY, 45, now=now) == service.available_slots(1, MONDAY, 45, now=now)


def test_clock_is_used_when_now_omitted():
    service = AvailabilityService(
        FakeScheduleStore(NO_LUNCH), FakeBookingStore(), now_fn=lambda: local(MONDAY, 17, 0)
    )

    assert service.available_slots(1, MONDAY, 30).available_times == ["17:30"]


# ── Failures ─────────────────────────────────────────────────────────────


def test_schedule_failure_degrades_to_closed():
    day = make_service(schedule_fail=True).available_slots(1, MONDAY, 30, now=local(MONDAY, 8, 0))

    assert day.closed
    assert day.slots == []


def test_booking_failure_degrades_to_closed():
    day = make_service(bookings_fail=True).available_slots(1, MONDAY, 30, now=local(MONDAY, 8, 0))

    assert day.closed


def test_check_slot_raises_on_failure():
    with pytest.raises(UpstreamUnavailable):
        make_service(schedule_fail=True).check_slot(1, MONDAY, "10:00", 30, now=local(MONDAY, 8, 0))


def test_check_slot():
    service = make_service(NO_LUNCH, [BookedInterval("10:00", 60, "confirmed")])
    now = local(MONDAY, 8, 0)

    service.check_slot(1, MONDAY, "11:00", 60, now=now)
    with pytest.raises(SlotUnavailable):
        service.check_slot(1, MONDAY, "10:30", 30, now=now)
    with pytest.raises(SlotUnavailable):
        service.check_slot(1, MONDAY, "10:10", 30, now=now)
    with pytest.raises(SlotUnavailable):
        service.check_slot(1, SUNDAY, "10:00", 30, now=now)


# ── Day-grid cache ───────────────────────────────────────────────────────


def test_grid_is_cached_and_bookings_are_not():
    redis = fakeredis.FakeRedis(decode_responses=True)
    schedule_store = FakeScheduleStore(NO_LUNCH)
    booking_store = FakeBookingStore()
    service = AvailabilityService(schedule_store, booking_store, redis=redis)
    now = local(MONDAY, 8, 0)

    first = service.available_slots(1, MONDAY, 30, now=now)
    assert redis.exists("slots:day:1:2026-03-02:30")

    # A schedule change is not seen until invalidation
    schedule_store.schedule = parse_weekly_schedule({"monday": {"start": "10:00", "end": "12:00"}})
    booking_store.bookings.append(BookedInterval("09:00", 30, "confirmed"))
    cached = service.available_slots(1, MONDAY, 30, now=now)

    assert len(cached.slots) == len(first.slots)
    assert not cached.slot("09:00").available

    assert invalidate_staff_cache(redis, 1) == 1
    fresh = service.available_slots(1, MONDAY, 30, now=now)
    assert [s.time for s in fresh.slots] == ["10:00", "10:30", "11:00", "11:30"]


def test_closed_day_is_cached():
    redis = fakeredis.FakeRedis(decode_responses=True)
    service = make_service(redis=redis)

    assert service.available_slots(1, SUNDAY, 30, now=local(MONDAY, 8, 0)).closed
    assert service.available_slots(1, SUNDAY, 30, now=local(MONDAY, 8, 0)).closed
    assert redis.exists("slots:day:1:2026-03-08:30")
