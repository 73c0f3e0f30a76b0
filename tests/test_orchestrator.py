"""
Tests for the booking session state machine (deferred and redemption
settlement; charges are covered in test_payments.py).

Run with: pytest tests/test_orchestrator.py -v
"""

import json
from datetime import date

import pytest

from salonbook.errors import SessionNotFound, ValidationError
from salonbook.models.tables import Appointments, Customers, PackageUsages
from salonbook.services.booking import BookingOrchestrator

from .conftest import MONDAY, add_customer, add_package, walk_to_settlement

PHONE = "5321234567"
OTHER_PHONE = "5329876543"


@pytest.fixture
def orchestrator(db, redis, clock, gateway, salon):
    return BookingOrchestrator(db, redis, gateway=gateway, now_fn=clock, otp_required=False)


def events(redis, event_type):
    return [
        e for e in (json.loads(raw) for raw in redis.lrange("events:p2p", 0, -1))
        if e["type"] == event_type
    ]


def settle(orchestrator, session_id, method):
    result = orchestrator.advance(session_id, {"method": method, "consent": True})
    assert result.error is None, result.error
    return orchestrator.commit(session_id)


# ── Happy paths ──────────────────────────────────────────────────────────


def test_deferred_booking(orchestrator, db, redis, salon):
    session_id = walk_to_settlement(orchestrator, salon)

    assert orchestrator.options(session_id)["methods"] == ["charge", "deferred"]

    outcome = settle(orchestrator, session_id, "deferred")

    assert outcome.error is None
    assert outcome.session.step == "committed"
    assert outcome.result.outcome == "deferred_payment"

    booking = db.get(Appointments, outcome.result.booking_id)
    assert (booking.status, booking.payment_type, booking.payment_status) == (
        "pending", "cash", "pending_payment"
    )
    assert (booking.date, booking.time, booking.duration_minutes) == ("2026-03-02", "10:00", 60)

    customer = db.get(Customers, booking.customer_id)
    assert (customer.phone, customer.first_name, customer.last_name) == (PHONE, "Zeynep", "Kaya")

    confirmed = events(redis, "booking_confirmed")
    assert len(confirmed) == 1
    assert confirmed[0]["booking_id"] == booking.id
    assert confirmed[0]["channel"] == "sms"


def test_redemption_booking(orchestrator, db, salon):
    customer_id = add_customer(db, salon.tenant_id, PHONE)
    usage_id = add_package(db, salon.tenant_id, customer_id, salon.haircut_id, 2)

    session = orchestrator.start(salon.tenant_id)
    result = orchestrator.advance(session.session_id, {"phone": PHONE})
    assert result.session.customer_id == customer_id

    services = {s["id"]: s for s in orchestrator.options(session.session_id)["services"]}
    assert services[salon.haircut_id]["entitlement_covered"]
    assert not services[salon.consult_id]["entitlement_covered"]

    for step_input in (
        {"service_id": salon.haircut_id},
        {"staff_id": salon.ayse_id},
        {"date": "2026-03-02", "time": "11:00"},
        {"name": "Zeynep", "channel": "whatsapp", "phone": PHONE},
    ):
        assert orchestrator.advance(session.session_id, step_input).error is None

    assert orchestrator.options(session.session_id)["methods"] == ["redemption", "charge", "deferred"]

    outcome = settle(orchestrator, session.session_id, "redemption")

    assert outcome.result.outcome == "redeemed_entitlement"
    booking = db.get(Appointments, outcome.result.booking_id)
    assert (booking.status, booking.payment_type, booking.payment_status) == (
        "confirmed", "package", "package"
    )
    assert booking.package_usage_id == usage_id
    assert db.get(PackageUsages, usage_id).remaining_quantity == 1


def test_booked_slot_is_no_longer_offered(orchestrator, salon):
    settle(orchestrator, walk_to_settlement(orchestrator, salon), "deferred")

    session = orchestrator.start(salon.tenant_id)
    for step_input in (
        {"phone": OTHER_PHONE},
        {"service_id": salon.consult_id},
        {"staff_id": salon.ayse_id},
    ):
        orchestrator.advance(session.session_id, step_input)

    options = orchestrator.options(session.session_id, MONDAY)
    slots = {s["time"]: s for s in options["slots"]}

    assert options["date"] == "2026-03-02"
    assert slots["10:00"]["reason"] == "occupied"
    assert slots["10:30"]["reason"] == "occupied"
    assert slots["11:00"]["available"]

    result = orchestrator.advance(session.session_id, {"date": "2026-03-02", "time": "10:30"})
    assert result.error.code == "slot_unavailable"
    assert result.session.step == "slot_select"


def test_slot_options_default_to_tenant_today(orchestrator, salon):
    session = orchestrator.start(salon.tenant_id)
    for step_input in (
        {"phone": PHONE},
        {"service_id": salon.consult_id},
        {"staff_id": salon.mehmet_id},
    ):
        orchestrator.advance(session.session_id, step_input)

    options = orchestrator.options(session.session_id)

    assert options["date"] == "2026-03-02"
    assert [s["time"] for s in options["slots"]][:2] == ["10:00", "10:30"]
    assert options["slots"][-1]["time"] == "13:30"


# ── Input validation ─────────────────────────────────────────────────────


def test_invalid_phone_keeps_step(orchestrator, salon):
    session = orchestrator.start(salon.tenant_id)

    result = orchestrator.advance(session.session_id, {"phone": "123"})

    assert result.error.code == "validation_error"
    assert result.session.step == "identity"
    assert orchestrator.get(session.session_id).step == "identity"


def test_missing_input_field(orchestrator, salon):
    session = orchestrator.start(salon.tenant_id)

    result = orchestrator.advance(session.session_id, {})

    assert result.error.code == "validation_error"
    assert "phone" in result.error.message


def test_unknown_service_and_unqualified_staff(orchestrator, salon):
    session = orchestrator.start(salon.tenant_id)
    orchestrator.advance(session.session_id, {"phone": PHONE})

    result = orchestrator.advance(session.session_id, {"service_id": 9999})
    assert result.error.code == "validation_error"
    assert result.session.step == "service_select"

    orchestrator.advance(session.session_id, {"service_id": salon.haircut_id})
    assert [s["id"] for s in orchestrator.options(session.session_id)["staff"]] == [salon.ayse_id]

    result = orchestrator.advance(session.session_id, {"staff_id": salon.mehmet_id})
    assert result.error.code == "validation_error"
    assert result.session.step == "resource_select"


@pytest.mark.parametrize("slot_time", ["12:00", "10:10", "08:00", "17:30", "25:00"])
def test_slot_must_be_offered_and_available(orchestrator, salon, slot_time):
    session = orchestrator.start(salon.tenant_id)
    for step_input in ({"phone": PHONE}, {"service_id": salon.haircut_id}, {"staff_id": salon.ayse_id}):
        orchestrator.advance(session.session_id, step_input)

    result = orchestrator.advance(session.session_id, {"date": "2026-03-02", "time": slot_time})

    assert result.error is not None
    assert result.session.step == "slot_select"


def test_email_channel_requires_email(orchestrator, salon):
    session = orchestrator.start(salon.tenant_id)
    for step_input in (
        {"phone": PHONE},
        {"service_id": salon.haircut_id},
        {"staff_id": salon.ayse_id},
        {"date": "2026-03-02", "time": "10:00"},
    ):
        orchestrator.advance(session.session_id, step_input)

    result = orchestrator.advance(session.session_id, {"name": "Zeynep", "channel": "email", "phone": PHONE})
    assert result.error.code == "validation_error"
    assert result.session.step == "contact_capture"

    result = orchestrator.advance(session.session_id, {"name": "   ", "channel": "sms", "phone": PHONE})
    assert result.error.code == "validation_error"

    result = orchestrator.advance(
        session.session_id,
        {"name": "Zeynep", "channel": "email", "phone": PHONE, "email": "zeynep@example.com"},
    )
    assert result.error is None
    assert result.session.email == "zeynep@example.com"


def test_consent_is_required(orchestrator, db, salon):
    session_id = walk_to_settlement(orchestrator, salon)

    outcome = orchestrator.commit(session_id)
    assert outcome.error.code == "validation_error"

    result = orchestrator.advance(session_id, {"method": "deferred", "consent": False})
    assert result.error.code == "validation_error"
    assert orchestrator.commit(session_id).error.code == "validation_error"
    assert db.query(Appointments).count() == 0


def test_illegal_methods_are_rejected(orchestrator, salon):
    session_id = walk_to_settlement(orchestrator, salon, service_id=salon.consult_id)

    # Free service, no package
    assert orchestrator.options(session_id)["methods"] == ["deferred"]
    for method in ("charge", "redemption"):
        result = orchestrator.advance(session_id, {"method": method, "consent": True})
        assert result.error.code == "validation_error"


def test_commit_before_settlement_step(orchestrator, salon):
    session = orchestrator.start(salon.tenant_id)

    outcome = orchestrator.commit(session.session_id)

    assert outcome.error.code == "validation_error"
    assert outcome.session.step == "identity"


# ── Eligibility gate ─────────────────────────────────────────────────────


def test_blocked_identity_reveals_nothing(orchestrator, db, salon):
    customer_id = add_customer(db, salon.tenant_id, PHONE, is_blacklisted=1)
    add_package(db, salon.tenant_id, customer_id, salon.haircut_id, 5)
    session = orchestrator.start(salon.tenant_id)

    result = orchestrator.advance(session.session_id, {"phone": PHONE})

    assert result.session.step == "blocked"
    assert result.error.code == "eligibility_blocked"
    assert "customer_id" not in result.session.model_dump()
    assert orchestrator.options(session.session_id) == {"step": "blocked"}

    again = orchestrator.advance(session.session_id, {"service_id": salon.haircut_id})
    assert again.error.code == "eligibility_blocked"
    assert orchestrator.commit(session.session_id).error.code == "eligibility_blocked"
    assert db.query(Appointments).count() == 0


def test_block_applied_between_selection_and_commit(orchestrator, db, salon):
    session_id = walk_to_settlement(orchestrator, salon)
    orchestrator.advance(session_id, {"method": "deferred", "consent": True})
    add_customer(db, salon.tenant_id, PHONE, is_blacklisted=1)

    outcome = orchestrator.commit(session_id)

    assert outcome.error.code == "eligibility_blocked"
    assert outcome.session.step == "abandoned"
    assert outcome.session.reason == "eligibility_blocked"
    assert db.query(Appointments).count() == 0


# ── Commit races ─────────────────────────────────────────────────────────


def test_commit_is_idempotent(orchestrator, db, redis, salon):
    session_id = walk_to_settlement(orchestrator, salon)
    first = settle(orchestrator, session_id, "deferred")

    second = orchestrator.commit(session_id)

    assert second.error is None
    assert second.result.booking_id == first.result.booking_id
    assert db.query(Appointments).count() == 1
    assert len(events(redis, "booking_confirmed")) == 1


def test_commit_finished_elsewhere_is_not_overwritten(orchestrator, db, redis, clock, gateway, salon):
    session_id = walk_to_settlement(orchestrator, salon)
    orchestrator.advance(session_id, {"method": "deferred", "consent": True})

    # A second worker loads the session, then the first commit completes
    # before the second worker takes the guard
    other = BookingOrchestrator(db, redis, gateway=gateway, now_fn=clock, otp_required=False)
    acquire = other.sessions.acquire_commit_guard
    first = {}

    def acquire_after_first_commit(sid):
        first["outcome"] = orchestrator.commit(sid)
        return acquire(sid)

    other.sessions.acquire_commit_guard = acquire_after_first_commit

    second = other.commit(session_id)

    assert first["outcome"].session.step == "committed"
    assert second.error is None
    assert second.session.step == "committed"
    assert second.result.booking_id == first["outcome"].result.booking_id
    assert orchestrator.get(session_id).step == "committed"
    assert db.query(Appointments).count() == 1
    assert len(events(redis, "booking_confirmed")) == 1


def test_commit_in_progress_is_reported(orchestrator, redis, salon):
    session_id = walk_to_settlement(orchestrator, salon)
    orchestrator.advance(session_id, {"method": "deferred", "consent": True})
    redis.set(f"booking:commit:{session_id}", "1")

    outcome = orchestrator.commit(session_id)

    assert outcome.error.code == "commit_in_progress"
    assert outcome.session.step == "settlement_choice"


def test_slot_taken_before_commit_returns_to_slot_select(orchestrator, db, salon):
    first = walk_to_settlement(orchestrator, salon, phone=PHONE)
    second = walk_to_settlement(orchestrator, salon, phone=OTHER_PHONE)

    assert settle(orchestrator, first, "deferred").error is None
    outcome = settle(orchestrator, second, "deferred")

    assert outcome.error.code == "slot_unavailable"
    assert outcome.session.step == "slot_select"
    assert outcome.session.staff_id == salon.ayse_id
    assert db.query(Appointments).count() == 1

    # The customer can pick another time and finish
    orchestrator.advance(second, {"date": "2026-03-02", "time": "14:00"})
    orchestrator.advance(second, {"name": "Elif", "channel": "sms", "phone": OTHER_PHONE})
    assert settle(orchestrator, second, "deferred").error is None


def test_exhausted_entitlement_offers_other_methods(orchestrator, db, salon):
    customer_id = add_customer(db, salon.tenant_id, PHONE)
    usage_id = add_package(db, salon.tenant_id, customer_id, salon.haircut_id, 1)
    first = walk_to_settlement(orchestrator, salon, slot_time="10:00")
    second = walk_to_settlement(orchestrator, salon, slot_time="14:00")
    for session_id in (first, second):
        assert orchestrator.advance(session_id, {"method": "redemption", "consent": True}).error is None

    assert orchestrator.commit(first).error is None
    outcome = orchestrator.commit(second)

    assert outcome.error.code == "entitlement_exhausted"
    assert outcome.session.step == "settlement_choice"
    assert outcome.session.method is None
    assert outcome.session.redemption_removed
    assert orchestrator.options(second)["methods"] == ["charge", "deferred"]
    assert db.get(PackageUsages, usage_id).remaining_quantity == 0

    assert settle(orchestrator, second, "deferred").result.outcome == "deferred_payment"


# ── Lifecycle ────────────────────────────────────────────────────────────


def test_unknown_tenant(orchestrator):
    with pytest.raises(ValidationError):
        orchestrator.start(9999)


def test_unknown_session(orchestrator):
    with pytest.raises(SessionNotFound):
        orchestrator.get("missing")
    with pytest.raises(SessionNotFound):
        orchestrator.advance("missing", {"phone": PHONE})


def test_idle_session_is_abandoned(orchestrator, clock, salon):
    session = orchestrator.start(salon.tenant_id)
    orchestrator.advance(session.session_id, {"phone": PHONE})

    clock.advance(minutes=14)
    assert orchestrator.get(session.session_id).step == "service_select"
    orchestrator.advance(session.session_id, {"service_id": salon.haircut_id})

    clock.advance(minutes=16)
    expired = orchestrator.get(session.session_id)
    assert expired.step == "abandoned"
    assert expired.reason == "timeout"

    result = orchestrator.advance(session.session_id, {"staff_id": salon.ayse_id})
    assert result.error is not None
    assert result.session.step == "abandoned"


def test_cancel(orchestrator, salon):
    session = orchestrator.start(salon.tenant_id)

    cancelled = orchestrator.cancel(session.session_id)

    assert cancelled.step == "abandoned"
    assert cancelled.reason == "cancelled"
    assert orchestrator.cancel(session.session_id).reason == "cancelled"
    assert orchestrator.commit(session.session_id).error is not None


def test_committed_session_cannot_be_cancelled(orchestrator, salon):
    session_id = walk_to_settlement(orchestrator, salon)
    settle(orchestrator, session_id, "deferred")

    assert orchestrator.cancel(session_id).step == "committed"


# ── One-time code ────────────────────────────────────────────────────────


def test_identity_with_one_time_code(db, redis, clock, gateway, salon):
    orchestrator = BookingOrchestrator(db, redis, gateway=gateway, now_fn=clock, otp_required=True)
    session = orchestrator.start(salon.tenant_id)

    sent = orchestrator.advance(session.session_id, {"phone": PHONE})
    assert sent.error is None
    assert sent.session.step == "identity"
    assert sent.session.pending_phone == PHONE

    code = events(redis, "otp_code")[0]["code"]
    wrong = "000000" if code != "000000" else "111111"

    result = orchestrator.advance(session.session_id, {"phone": PHONE, "otp_code": wrong})
    assert result.error.code == "validation_error"
    assert result.session.step == "identity"

    other = orchestrator.advance(session.session_id, {"phone": OTHER_PHONE, "otp_code": code})
    assert other.error.code == "validation_error"

    result = orchestrator.advance(session.session_id, {"phone": PHONE, "otp_code": code})
    assert result.error is None
    assert result.session.step == "service_select"


def test_one_time_code_resend_is_throttled(db, redis, clock, gateway, salon):
    orchestrator = BookingOrchestrator(db, redis, gateway=gateway, now_fn=clock, otp_required=True)
    session = orchestrator.start(salon.tenant_id)

    orchestrator.advance(session.session_id, {"phone": PHONE})
    result = orchestrator.advance(session.session_id, {"phone": PHONE})

    assert result.error.code == "validation_error"
    assert len(events(redis, "otp_code")) == 1


def test_dates_in_session_round_trip(orchestrator, salon):
    session_id = walk_to_settlement(orchestrator, salon)

    session = orchestrator.get(session_id)

    assert session.date == date(2026, 3, 2)
    assert session.time == "10:00"
    assert session.duration_minutes == 60
