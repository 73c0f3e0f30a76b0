# salonbook/services/booking/states.py
"""
Booking session states.

One pydantic model per step, discriminated by `step`. Each model carries
only what is known at that point; data accumulates through inheritance:

  identity → service_select → resource_select → slot_select
           → contact_capture → settlement_choice → committed
                                                 ↘ awaiting_payment → committed
  identity → blocked
  any non-terminal → abandoned
"""

from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


SettlementMethod = Literal["redemption", "charge", "deferred"]
ContactChannel = Literal["sms", "whatsapp", "email"]

OUTCOME_REDEEMED = "redeemed_entitlement"
OUTCOME_PAID = "paid_charge"
OUTCOME_DEFERRED = "deferred_payment"

CHARGE_PENDING = "pending_confirmation"
CHARGE_CONFIRMED = "confirmed"

TERMINAL_STEPS = frozenset({"committed", "blocked", "abandoned"})


# ── Accumulated data ─────────────────────────────────────────────────────


class SessionBase(BaseModel):
    session_id: str
    tenant_id: int
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.step in TERMINAL_STEPS


class IdentityData(SessionBase):
    phone: str
    customer_id: Optional[int] = None


class ServiceData(IdentityData):
    service_id: int
    service_name: str
    duration_minutes: int
    price: float
    # Display only; redemption is re-checked at commit
    entitlement_covered: bool = False


class StaffData(ServiceData):
    staff_id: int
    staff_name: str


class SlotData(StaffData):
    date: date
    time: str


class ContactData(SlotData):
    customer_name: str
    contact_channel: ContactChannel
    contact_phone: str
    email: Optional[str] = None
    notes: Optional[str] = None


class SettlementResult(BaseModel):
    """Shared result shape of every settlement strategy."""
    booking_id: Optional[int] = None
    outcome: str
    charge_status: Optional[str] = None
    checkout_url: Optional[str] = None
    merchant_oid: Optional[str] = None


# ── States ───────────────────────────────────────────────────────────────


class IdentityState(SessionBase):
    step: Literal["identity"] = "identity"
    # Set once a one-time code was sent to this number
    pending_phone: Optional[str] = None


class ServiceSelectState(IdentityData):
    step: Literal["service_select"] = "service_select"


class ResourceSelectState(ServiceData):
    step: Literal["resource_select"] = "resource_select"


class SlotSelectState(StaffData):
    step: Literal["slot_select"] = "slot_select"


class ContactCaptureState(SlotData):
    step: Literal["contact_capture"] = "contact_capture"


class SettlementChoiceState(ContactData):
    step: Literal["settlement_choice"] = "settlement_choice"
    method: Optional[SettlementMethod] = None
    consent: bool = False
    # Set after a lost redemption race
    redemption_removed: bool = False


class AwaitingPaymentState(ContactData):
    step: Literal["awaiting_payment"] = "awaiting_payment"
    method: Literal["charge"] = "charge"
    consent: bool = True
    merchant_oid: str
    checkout_url: str
    deadline: datetime


class CommittedState(SessionBase):
    step: Literal["committed"] = "committed"
    result: SettlementResult


class BlockedState(SessionBase):
    step: Literal["blocked"] = "blocked"


class AbandonedState(SessionBase):
    step: Literal["abandoned"] = "abandoned"
    reason: str  # cancelled / timeout / settlement_failure / eligibility_blocked


BookingSession = Annotated[
    Union[
        IdentityState,
        ServiceSelectState,
        ResourceSelectState,
        SlotSelectState,
        ContactCaptureState,
        SettlementChoiceState,
        AwaitingPaymentState,
        CommittedState,
        BlockedState,
        AbandonedState,
    ],
    Field(discriminator="step"),
]

session_adapter: TypeAdapter = TypeAdapter(BookingSession)


# ── Step inputs ──────────────────────────────────────────────────────────


class IdentityInput(BaseModel):
    phone: str
    otp_code: Optional[str] = None


class ServiceInput(BaseModel):
    service_id: int


class ResourceInput(BaseModel):
    staff_id: int


class SlotInput(BaseModel):
    date: date
    time: str


class ContactInput(BaseModel):
    name: str = Field(min_length=1)
    channel: ContactChannel
    phone: str
    email: Optional[str] = None
    notes: Optional[str] = None


class SettlementInput(BaseModel):
    method: SettlementMethod
    consent: bool = False
