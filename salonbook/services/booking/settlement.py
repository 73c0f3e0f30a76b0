# salonbook/services/booking/settlement.py
"""
Settlement strategies.

Every strategy takes a settlement_choice session with a resolved customer
and returns a SettlementResult:

  redemption  entitlement decrement + booking, one transaction  → confirmed / package
  deferred    booking only                                      → pending / pending_payment
  charge      payment row + hosted checkout, booking on callback → awaiting_payment
"""

import logging
import secrets
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...config import settings
from ...errors import EntitlementExhausted, SettlementFailure
from ...models.tables import Payments as DBPayment
from ..entitlements import EntitlementLookup
from ..payments import ChargeRequest, PaymentGateway
from ..stores import BookingStore, NewBooking
from .states import (
    CHARGE_PENDING,
    OUTCOME_DEFERRED,
    OUTCOME_PAID,
    OUTCOME_REDEEMED,
    ContactData,
    SettlementResult,
)

logger = logging.getLogger(__name__)


def build_new_booking(
    session: ContactData,
    customer_id: int,
    status: str,
    payment_type: str,
    payment_status: str,
    payment_id: Optional[int] = None,
) -> NewBooking:
    return NewBooking(
        tenant_id=session.tenant_id,
        staff_id=session.staff_id,
        service_id=session.service_id,
        customer_id=customer_id,
        date=session.date.isoformat(),
        time=session.time,
        duration_minutes=session.duration_minutes,
        status=status,
        payment_type=payment_type,
        payment_status=payment_status,
        price=session.price,
        customer_name=session.customer_name,
        customer_phone=session.contact_phone,
        customer_email=session.email,
        contact_channel=session.contact_channel,
        notes=session.notes,
        payment_id=payment_id,
    )


class SettlementStrategy(ABC):
    method: str

    @abstractmethod
    def settle(self, session: ContactData, customer_id: int, user_ip: str) -> SettlementResult:
        ...


class RedemptionSettlement(SettlementStrategy):
    method = "redemption"

    def __init__(self, bookings: BookingStore, entitlements: EntitlementLookup):
        self.bookings = bookings
        self.entitlements = entitlements

    def settle(self, session: ContactData, customer_id: int, user_ip: str) -> SettlementResult:
        entitlement = self.entitlements.covering_for(
            session.tenant_id, session.phone, session.service_id
        )
        if entitlement is None:
            raise EntitlementExhausted(f"No entitlement covers service {session.service_id}")

        booking_id = self.bookings.create_booking(
            build_new_booking(session, customer_id, "confirmed", "package", "package"),
            redeem_usage_id=entitlement.id,
        )
        logger.info(f"Redeemed package usage {entitlement.id} for booking {booking_id}")
        return SettlementResult(booking_id=booking_id, outcome=OUTCOME_REDEEMED)


class DeferredSettlement(SettlementStrategy):
    method = "deferred"

    def __init__(self, bookings: BookingStore):
        self.bookings = bookings

    def settle(self, session: ContactData, customer_id: int, user_ip: str) -> SettlementResult:
        booking_id = self.bookings.create_booking(
            build_new_booking(session, customer_id, "pending", "cash", "pending_payment")
        )
        return SettlementResult(booking_id=booking_id, outcome=OUTCOME_DEFERRED)


class ChargeSettlement(SettlementStrategy):
    """Creates the payment request; the booking is made by the confirmation callback."""

    method = "charge"

    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        now_fn: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.gateway = gateway
        self.now_fn = now_fn

    @staticmethod
    def new_merchant_oid() -> str:
        # PayTR accepts alphanumerics only
        return f"APT{int(time.time() * 1000)}{secrets.token_hex(4).upper()}"

    def settle(self, session: ContactData, customer_id: int, user_ip: str) -> SettlementResult:
        if session.price <= 0:
            raise SettlementFailure("Nothing to charge for a free service")

        payment = DBPayment(
            tenant_id=session.tenant_id,
            session_id=session.session_id,
            merchant_oid=self.new_merchant_oid(),
            amount=session.price,
            currency="TL",
            status="pending",
            created_at=self.now_fn().isoformat(),
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)

        base_url = settings.public_web_url.rstrip("/")
        request = ChargeRequest(
            merchant_oid=payment.merchant_oid,
            amount=session.price,
            email=session.email or f"{session.phone}@noemail.local",
            user_ip=user_ip,
            item_name=session.service_name,
            user_name=session.customer_name,
            user_phone=session.contact_phone,
            ok_url=f"{base_url}/payment/success?merchant_oid={payment.merchant_oid}",
            fail_url=f"{base_url}/payment/failed",
        )

        try:
            reference = self.gateway.initiate_charge(request)
        except SettlementFailure as e:
            payment.status = "failed"
            payment.failed_reason = e.message
            self.db.commit()
            raise

        payment.checkout_token = reference.token
        self.db.commit()

        logger.info(f"Charge initiated: payment_id={payment.id}, merchant_oid={payment.merchant_oid}")
        return SettlementResult(
            booking_id=None,
            outcome=OUTCOME_PAID,
            charge_status=CHARGE_PENDING,
            checkout_url=reference.checkout_url,
            merchant_oid=payment.merchant_oid,
        )
