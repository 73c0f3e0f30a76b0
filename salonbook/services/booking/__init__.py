# salonbook/services/booking/__init__.py
"""
Booking session state machine.

identity → service_select → resource_select → slot_select → contact_capture
→ settlement_choice → commit (redemption / charge / deferred)
"""

from .orchestrator import BookingOrchestrator, CommitOutcome, StepError, StepResult
from .session_store import SessionStore
from .states import BookingSession, SettlementResult

__all__ = [
    "BookingOrchestrator",
    "CommitOutcome",
    "StepError",
    "StepResult",
    "SessionStore",
    "BookingSession",
    "SettlementResult",
]
