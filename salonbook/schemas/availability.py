# salonbook/schemas/availability.py
"""
Pydantic schemas for availability API.
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field


class SlotInfo(BaseModel):
    """Availability of a single slot."""
    time: str  # "HH:MM"
    available: bool
    reason: Optional[str] = None  # occupied / past / exceeds_window

    model_config = {"from_attributes": True}


class AvailabilityResponse(BaseModel):
    staff_id: int
    date: date
    duration_minutes: int
    closed: bool
    slot_step_minutes: int = Field(description="Grid step in minutes (5..60)")
    slots: list[SlotInfo]
    available_times: list[str]

    model_config = {"from_attributes": True}


class InvalidateResponse(BaseModel):
    staff_id: int
    deleted_keys: int


class InvalidateTenantResponse(BaseModel):
    tenant_id: int
    deleted_keys: int
