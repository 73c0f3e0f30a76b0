# salonbook/errors.py
"""
Error taxonomy for availability and booking.

Raised inside services and stores; the booking orchestrator catches every
step-local error and returns it as a typed StepError. Only
UpstreamUnavailable (at commit time) and SessionNotFound reach the caller
as exceptions.
"""


class BookingError(Exception):
    """Base exception for all booking errors."""

    code = "booking_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(BookingError):
    """Malformed input to a step. The session stays where it is."""

    code = "validation_error"


class EligibilityBlocked(BookingError):
    """The customer identity is not allowed to book at all."""

    code = "eligibility_blocked"


class SlotUnavailable(BookingError):
    """The chosen slot is no longer offerable."""

    code = "slot_unavailable"


class SlotConflict(SlotUnavailable):
    """A concurrent commit claimed an overlapping interval first."""

    code = "slot_taken"


class EntitlementExhausted(BookingError):
    """The package usage has no remaining quantity."""

    code = "entitlement_exhausted"


class SettlementFailure(BookingError):
    """Payment gateway error, rejection or timeout."""

    code = "settlement_failure"


class UpstreamUnavailable(BookingError):
    """Schedule, booking or entitlement store could not be reached."""

    code = "upstream_unavailable"


class SessionNotFound(BookingError):
    """Unknown booking session id (never created, or storage expired)."""

    code = "session_not_found"
