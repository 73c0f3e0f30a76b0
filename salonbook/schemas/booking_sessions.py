# salonbook/schemas/booking_sessions.py
"""
Pydantic schemas for booking session API.

Session bodies are the state models themselves (see services/booking/states.py).
"""

from typing import Optional

from pydantic import BaseModel

from ..services.booking import BookingSession, SettlementResult, StepError


class SessionCreate(BaseModel):
    tenant_id: int


class SessionResponse(BaseModel):
    session: BookingSession
    error: Optional[StepError] = None


class CommitResponse(BaseModel):
    session: BookingSession
    result: Optional[SettlementResult] = None
    error: Optional[StepError] = None


class ServiceOption(BaseModel):
    id: int
    name: str
    duration_minutes: int
    price: float
    entitlement_covered: bool


class StaffOption(BaseModel):
    id: int
    display_name: str


class SlotOption(BaseModel):
    time: str
    available: bool
    reason: Optional[str] = None


class SessionOptions(BaseModel):
    """What the current step may offer. Empty beyond `step` for terminal sessions."""
    step: str
    services: Optional[list[ServiceOption]] = None
    staff: Optional[list[StaffOption]] = None
    date: Optional[str] = None  # YYYY-MM-DD
    closed: Optional[bool] = None
    slots: Optional[list[SlotOption]] = None
    channels: Optional[list[str]] = None
    methods: Optional[list[str]] = None

