# salonbook/services/booking/orchestrator.py
"""
Booking orchestrator: drives one booking session from identity to commit.

Step errors never cross this boundary as exceptions. advance() and
commit() return them as StepError next to the (possibly moved) session.
Exceptions that do escape:
  SessionNotFound      unknown session id
  UpstreamUnavailable  a store could not be reached (retryable)
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from redis import Redis
from sqlalchemy import update
from sqlalchemy.orm import Session

from ...config import settings
from ...errors import (
    BookingError,
    EligibilityBlocked,
    EntitlementExhausted,
    SessionNotFound,
    SettlementFailure,
    SlotConflict,
    SlotUnavailable,
    UpstreamUnavailable,
    ValidationError,
)
from ...models.tables import Payments as DBPayment, Tenants as DBTenant
from ..eligibility import EligibilityService, normalize_phone
from ..entitlements import EntitlementLookup, covering
from ..events import NotificationChannel
from ..otp import OtpService
from ..payments import PaymentGateway, PayTRGateway
from ..slots import AvailabilityService
from ..slots.config import minutes_to_time_str, time_str_to_minutes
from ..stores import BookingStore, CatalogStore, CustomerStore, ScheduleStore
from .session_store import SessionStore
from .settlement import (
    ChargeSettlement,
    DeferredSettlement,
    RedemptionSettlement,
    SettlementStrategy,
    build_new_booking,
)
from .states import (
    CHARGE_CONFIRMED,
    CHARGE_PENDING,
    OUTCOME_PAID,
    AwaitingPaymentState,
    BlockedState,
    BookingSession,
    CommittedState,
    ContactCaptureState,
    ContactData,
    ContactInput,
    IdentityInput,
    IdentityState,
    ResourceInput,
    ResourceSelectState,
    ServiceInput,
    ServiceSelectState,
    SettlementChoiceState,
    SettlementInput,
    SettlementResult,
    SlotInput,
    SlotSelectState,
)

logger = logging.getLogger(__name__)


CONTACT_CHANNELS = ("sms", "whatsapp", "email")


class StepError(BaseModel):
    code: str
    message: str


class StepResult(BaseModel):
    session: BookingSession
    error: Optional[StepError] = None


class CommitOutcome(BaseModel):
    session: BookingSession
    result: Optional[SettlementResult] = None
    error: Optional[StepError] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _step_error(e: BookingError) -> StepError:
    return StepError(code=e.code, message=e.message)


def _parse(model: type[BaseModel], data: dict):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(details) from e


class BookingOrchestrator:
    def __init__(
        self,
        db: Session,
        redis: Redis,
        gateway: PaymentGateway | None = None,
        channel: NotificationChannel | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
        otp_required: bool | None = None,
        charge_confirmation_seconds: int | None = None,
        session_store: SessionStore | None = None,
    ):
        self.db = db
        self.now_fn = now_fn
        self.sessions = session_store or SessionStore(redis, now_fn=now_fn)

        self.schedule = ScheduleStore(db)
        self.catalog = CatalogStore(db)
        self.customers = CustomerStore(db)
        self.bookings = BookingStore(db)
        self.eligibility = EligibilityService(db)
        self.entitlements = EntitlementLookup(db, self.eligibility, now_fn=now_fn)
        self.availability = AvailabilityService(self.schedule, self.bookings, redis=redis, now_fn=now_fn)

        self.channel = channel or NotificationChannel(redis)
        self.otp = OtpService(redis, self.channel)
        self.otp_required = settings.otp_required if otp_required is None else otp_required

        self.gateway = gateway or PayTRGateway()
        self.charge_confirmation_seconds = (
            charge_confirmation_seconds or settings.charge_confirmation_seconds
        )

        self.strategies: dict[str, SettlementStrategy] = {
            "redemption": RedemptionSettlement(self.bookings, self.entitlements),
            "charge": ChargeSettlement(db, self.gateway, now_fn),
            "deferred": DeferredSettlement(self.bookings),
        }
        self._handlers = {
            "identity": self._advance_identity,
            "service_select": self._advance_service,
            "resource_select": self._advance_resource,
            "slot_select": self._advance_slot,
            "contact_capture": self._advance_contact,
            "settlement_choice": self._advance_settlement,
        }

    # ── Session lifecycle ────────────────────────────────────────────────

    def start(self, tenant_id: int) -> IdentityState:
        tenant = self.db.get(DBTenant, tenant_id)
        if not tenant or not tenant.is_active:
            raise ValidationError(f"Tenant {tenant_id} not found")
        return self.sessions.create(tenant_id)

    def get(self, session_id: str) -> BookingSession:
        return self._load(session_id)

    def cancel(self, session_id: str) -> BookingSession:
        """Abandon a session explicitly. Terminal sessions are returned unchanged."""
        session = self._load(session_id)
        if session.is_terminal:
            return session
        if isinstance(session, AwaitingPaymentState):
            self._expire_payment(session.merchant_oid, "cancelled")
        logger.info(f"Booking session {session_id} cancelled at {session.step}")
        return self.sessions.abandon(session, "cancelled")

    def _load(self, session_id: str) -> BookingSession:
        session = self.sessions.load(session_id)
        if isinstance(session, AwaitingPaymentState) and self.now_fn() > session.deadline:
            logger.info(f"Payment {session.merchant_oid} not confirmed before deadline")
            self._expire_payment(session.merchant_oid, "timeout")
            session = self.sessions.abandon(session, "timeout")
        return session

    def _transition(self, state_cls, session: BookingSession, **changes) -> BookingSession:
        data = session.model_dump(exclude={"step"})
        data.update(changes)
        data["updated_at"] = self.now_fn()
        return state_cls.model_validate(data)

    @staticmethod
    def _terminal_error(session: BookingSession) -> StepError:
        if isinstance(session, BlockedState):
            return StepError(code=EligibilityBlocked.code, message="Booking is not available for this customer")
        if isinstance(session, AwaitingPaymentState):
            return StepError(code=ValidationError.code, message="Waiting for payment confirmation")
        if isinstance(session, CommittedState):
            return StepError(code=ValidationError.code, message="Session is already committed")
        return StepError(code=ValidationError.code, message=f"Session is {session.step}")

    # ── Advance ──────────────────────────────────────────────────────────

    def advance(self, session_id: str, step_input: dict | None) -> StepResult:
        session = self._load(session_id)

        handler = self._handlers.get(session.step)
        if handler is None:
            return StepResult(session=session, error=self._terminal_error(session))

        try:
            new_session = handler(session, step_input or {})
        except (UpstreamUnavailable, SessionNotFound):
            raise
        except BookingError as e:
            logger.info(f"Session {session_id} stays at {session.step}: {e.code} {e.message}")
            return StepResult(session=session, error=_step_error(e))

        self.sessions.save(new_session)

        if isinstance(new_session, BlockedState):
            return StepResult(session=new_session, error=self._terminal_error(new_session))
        return StepResult(session=new_session)

    def _advance_identity(self, session: IdentityState, data: dict) -> BookingSession:
        inp = _parse(IdentityInput, data)
        phone = normalize_phone(inp.phone)

        if self.otp_required:
            if not inp.otp_code:
                self.otp.send(session.tenant_id, phone)
                return self._transition(IdentityState, session, pending_phone=phone)
            if session.pending_phone != phone:
                raise ValidationError("Request a verification code for this number first")
            self.otp.verify(session.tenant_id, phone, inp.otp_code)

        # Gate before anything about the customer is read
        if self.eligibility.is_blocked(phone, session.tenant_id):
            logger.info(f"Session {session.session_id} blocked at identity")
            return self._transition(BlockedState, session)

        customer = self.customers.find(session.tenant_id, phone)
        return self._transition(
            ServiceSelectState,
            session,
            phone=phone,
            customer_id=customer.id if customer else None,
        )

    def _advance_service(self, session: ServiceSelectState, data: dict) -> BookingSession:
        inp = _parse(ServiceInput, data)
        service = self.catalog.get_service(session.tenant_id, inp.service_id)
        if service is None:
            raise ValidationError(f"Service {inp.service_id} not found")

        return self._transition(
            ResourceSelectState,
            session,
            service_id=service.id,
            service_name=service.name,
            duration_minutes=service.duration_min,
            price=service.price or 0,
            entitlement_covered=self._covering(session, service.id) is not None,
        )

    def _advance_resource(self, session: ResourceSelectState, data: dict) -> BookingSession:
        inp = _parse(ResourceInput, data)
        staff = next(
            (s for s in self.catalog.list_staff_for_service(session.tenant_id, session.service_id)
             if s.id == inp.staff_id),
            None,
        )
        if staff is None:
            raise ValidationError(f"Staff {inp.staff_id} cannot perform {session.service_name}")

        return self._transition(
            SlotSelectState, session, staff_id=staff.id, staff_name=staff.display_name
        )

    def _advance_slot(self, session: SlotSelectState, data: dict) -> BookingSession:
        inp = _parse(SlotInput, data)
        try:
            time_str = minutes_to_time_str(time_str_to_minutes(inp.time))
        except ValueError as e:
            raise ValidationError(str(e)) from e

        # Fresh check: the slot may have been taken since it was listed
        day = self.availability.available_slots(session.staff_id, inp.date, session.duration_minutes)
        slot = day.slot(time_str)
        if slot is None or not slot.available:
            reason = "closed" if day.closed else (slot.reason if slot else "not offered")
            raise SlotUnavailable(f"{inp.date} {time_str} is not available ({reason})")

        return self._transition(ContactCaptureState, session, date=inp.date, time=time_str)

    def _advance_contact(self, session: ContactCaptureState, data: dict) -> BookingSession:
        inp = _parse(ContactInput, data)
        name = inp.name.strip()
        if not name:
            raise ValidationError("Name is required")
        phone = normalize_phone(inp.phone)

        email = (inp.email or "").strip() or None
        if email is not None and "@" not in email:
            raise ValidationError("Invalid email address")
        if inp.channel == "email" and email is None:
            raise ValidationError("Email channel requires an email address")

        return self._transition(
            SettlementChoiceState,
            session,
            customer_name=name,
            contact_channel=inp.channel,
            contact_phone=phone,
            email=email,
            notes=inp.notes,
        )

    def _advance_settlement(self, session: SettlementChoiceState, data: dict) -> BookingSession:
        inp = _parse(SettlementInput, data)
        legal = self.legal_methods(session)
        if inp.method not in legal:
            raise ValidationError(
                f"Settlement method {inp.method} is not available, choose one of {', '.join(legal)}"
            )
        if not inp.consent:
            raise ValidationError("Consent is required to book")

        return self._transition(SettlementChoiceState, session, method=inp.method, consent=True)

    # ── Options ──────────────────────────────────────────────────────────

    def options(self, session_id: str, target_date: date | None = None) -> dict:
        """What the current step can offer. Blocked and terminal sessions get nothing."""
        session = self._load(session_id)
        result: dict = {"step": session.step}

        if isinstance(session, ServiceSelectState):
            entitlements = self._entitlements(session)
            result["services"] = [
                {
                    "id": s.id,
                    "name": s.name,
                    "duration_minutes": s.duration_min,
                    "price": s.price,
                    "entitlement_covered": covering(entitlements, s.id) is not None,
                }
                for s in self.catalog.list_services(session.tenant_id)
            ]
        elif isinstance(session, ResourceSelectState):
            result["staff"] = [
                {"id": s.id, "display_name": s.display_name}
                for s in self.catalog.list_staff_for_service(session.tenant_id, session.service_id)
            ]
        elif isinstance(session, SlotSelectState):
            if target_date is None:
                tz = self.schedule.get_timezone(session.tenant_id)
                target_date = self.now_fn().astimezone(tz).date()
            day = self.availability.available_slots(
                session.staff_id, target_date, session.duration_minutes
            )
            result["date"] = day.date
            result["closed"] = day.closed
            result["slots"] = [
                {"time": s.time, "available": s.available, "reason": s.reason} for s in day.slots
            ]
        elif isinstance(session, ContactCaptureState):
            result["channels"] = list(CONTACT_CHANNELS)
        elif isinstance(session, SettlementChoiceState):
            result["methods"] = self.legal_methods(session)

        return result

    def legal_methods(self, session: ContactData) -> list[str]:
        methods = []
        if not getattr(session, "redemption_removed", False) and self._covering(session, session.service_id):
            methods.append("redemption")
        if session.price > 0:
            methods.append("charge")
        methods.append("deferred")
        return methods

    def _entitlements(self, session) -> list:
        try:
            return self.entitlements.entitlements_for(session.tenant_id, session.phone)
        except EligibilityBlocked:
            return []

    def _covering(self, session, service_id: int):
        return covering(self._entitlements(session), service_id)

    # ── Commit ───────────────────────────────────────────────────────────

    def commit(self, session_id: str, user_ip: str = "127.0.0.1") -> CommitOutcome:
        """
        Settle the session exactly once.

        A committed session returns its stored result; a session waiting
        for payment returns the pending charge.
        """
        session = self._load(session_id)
        outcome = self._settled_or_not_ready(session)
        if outcome is not None:
            return outcome

        if not self.sessions.acquire_commit_guard(session_id):
            return CommitOutcome(session=session, error=StepError(
                code="commit_in_progress", message="Commit already in progress"
            ))
        try:
            # Another commit may have finished between the load and the guard
            session = self._load(session_id)
            outcome = self._settled_or_not_ready(session)
            if outcome is not None:
                return outcome
            return self._commit(session, user_ip)
        finally:
            self.sessions.release_commit_guard(session_id)

    def _settled_or_not_ready(self, session: BookingSession) -> Optional[CommitOutcome]:
        if isinstance(session, CommittedState):
            return CommitOutcome(session=session, result=session.result)
        if isinstance(session, AwaitingPaymentState):
            return CommitOutcome(session=session, result=SettlementResult(
                outcome=OUTCOME_PAID,
                charge_status=CHARGE_PENDING,
                checkout_url=session.checkout_url,
                merchant_oid=session.merchant_oid,
            ))
        if session.is_terminal:
            return CommitOutcome(session=session, error=self._terminal_error(session))
        if not isinstance(session, SettlementChoiceState):
            return CommitOutcome(session=session, error=StepError(
                code=ValidationError.code, message=f"Session is at {session.step}, not ready to commit"
            ))
        if session.method is None or not session.consent:
            return CommitOutcome(session=session, error=StepError(
                code=ValidationError.code, message="Choose a settlement method and give consent first"
            ))
        return None

    def _commit(self, session: SettlementChoiceState, user_ip: str) -> CommitOutcome:
        try:
            if self.eligibility.is_blocked(session.phone, session.tenant_id):
                raise EligibilityBlocked("Customer is not allowed to book")

            self.availability.check_slot(
                session.staff_id, session.date, session.time, session.duration_minutes
            )

            customer_id = self._resolve_customer(session)
            result = self.strategies[session.method].settle(session, customer_id, user_ip)

        except EligibilityBlocked as e:
            logger.info(f"Session {session.session_id} blocked at commit")
            return CommitOutcome(
                session=self.sessions.abandon(session, "eligibility_blocked"), error=_step_error(e)
            )
        except SlotUnavailable as e:
            back = self._transition(SlotSelectState, session)
            self.sessions.save(back)
            return CommitOutcome(session=back, error=_step_error(e))
        except EntitlementExhausted as e:
            back = self._transition(
                SettlementChoiceState, session, method=None, consent=False, redemption_removed=True
            )
            self.sessions.save(back)
            return CommitOutcome(session=back, error=_step_error(e))
        except SettlementFailure as e:
            return CommitOutcome(
                session=self.sessions.abandon(session, "settlement_failure"), error=_step_error(e)
            )
        except ValidationError as e:
            return CommitOutcome(session=session, error=_step_error(e))

        if result.booking_id is None:
            awaiting = self._transition(
                AwaitingPaymentState,
                session,
                customer_id=customer_id,
                merchant_oid=result.merchant_oid,
                checkout_url=result.checkout_url,
                deadline=self.now_fn() + timedelta(seconds=self.charge_confirmation_seconds),
            )
            self.sessions.save(awaiting)
            return CommitOutcome(session=awaiting, result=result)

        committed = self._transition(CommittedState, session, result=result)
        self.sessions.save(committed)
        self._notify_confirmed(session, result.booking_id)
        return CommitOutcome(session=committed, result=result)

    def _resolve_customer(self, session: ContactData) -> int:
        first_name, _, last_name = session.customer_name.strip().partition(" ")
        customer = self.customers.find_or_create(
            session.tenant_id,
            session.phone,
            first_name=first_name,
            last_name=last_name.strip() or None,
            email=session.email,
        )
        return customer.id

    def _notify_confirmed(self, session: ContactData, booking_id: int) -> None:
        self.channel.send("booking_confirmed", {
            "tenant_id": session.tenant_id,
            "booking_id": booking_id,
            "channel": session.contact_channel,
            "phone": session.contact_phone,
            "email": session.email,
            "customer_name": session.customer_name,
            "service_name": session.service_name,
            "staff_name": session.staff_name,
            "date": session.date.isoformat(),
            "time": session.time,
        })

    # ── Charge confirmation ──────────────────────────────────────────────

    def confirm_charge(self, form: dict) -> None:
        """
        Handle the gateway's out-of-band confirmation.

        Duplicate and unknown callbacks are acknowledged without effect.

        Raises:
            SettlementFailure: callback signature is invalid
        """
        callback = self.gateway.verify_callback(form)

        payment = (
            self.db.query(DBPayment)
            .filter(DBPayment.merchant_oid == callback.merchant_oid)
            .first()
        )
        if payment is None:
            logger.warning(f"Callback for unknown payment {callback.merchant_oid}")
            return
        payment_id = payment.id

        if not self._claim_payment(payment_id):
            logger.info(f"Duplicate callback for {callback.merchant_oid} ignored (status={payment.status})")
            return

        try:
            session = self.sessions.load(payment.session_id)
        except SessionNotFound:
            session = None

        if not callback.succeeded:
            logger.info(f"Payment {callback.merchant_oid} failed: {callback.failed_reason}")
            self._finish_payment(payment_id, "failed", failed_reason=callback.failed_reason)
            if isinstance(session, AwaitingPaymentState):
                self.sessions.abandon(session, "settlement_failure")
            return

        if not isinstance(session, AwaitingPaymentState) or self.now_fn() > session.deadline:
            logger.error(
                f"Payment {callback.merchant_oid} succeeded after its session ended, refund required"
            )
            self._finish_payment(payment_id, "expired", failed_reason="session_expired")
            if isinstance(session, AwaitingPaymentState):
                self.sessions.abandon(session, "timeout")
            return

        try:
            customer_id = session.customer_id or self._resolve_customer(session)
            booking_id = self.bookings.create_booking(build_new_booking(
                session, customer_id, "confirmed", "card", "paid", payment_id=payment_id
            ))
        except SlotConflict as e:
            logger.error(
                f"Slot taken while payment {callback.merchant_oid} was pending, refund required"
            )
            self._finish_payment(payment_id, "conflict", failed_reason=e.message)
            self.sessions.abandon(session, "slot_taken")
            return
        except UpstreamUnavailable:
            self._finish_payment(payment_id, "pending")
            raise

        self._finish_payment(
            payment_id,
            "success",
            paid_at=self.now_fn().isoformat(),
            appointment_id=booking_id,
            payment_type=callback.payment_type,
        )

        result = SettlementResult(
            booking_id=booking_id,
            outcome=OUTCOME_PAID,
            charge_status=CHARGE_CONFIRMED,
            merchant_oid=callback.merchant_oid,
        )
        committed = self._transition(CommittedState, session, result=result)
        self.sessions.save(committed)
        self._notify_confirmed(session, booking_id)
        logger.info(f"Payment {callback.merchant_oid} confirmed, booking {booking_id}")

    def _claim_payment(self, payment_id: int) -> bool:
        """pending → processing; False when another callback got there first."""
        result = self.db.execute(
            update(DBPayment)
            .where(DBPayment.id == payment_id, DBPayment.status == "pending")
            .values(status="processing")
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def _finish_payment(self, payment_id: int, status: str, **fields) -> None:
        payment = self.db.get(DBPayment, payment_id)
        self.db.refresh(payment)
        payment.status = status
        for name, value in fields.items():
            setattr(payment, name, value)
        self.db.commit()

    def _expire_payment(self, merchant_oid: str, reason: str) -> bool:
        result = self.db.execute(
            update(DBPayment)
            .where(DBPayment.merchant_oid == merchant_oid, DBPayment.status == "pending")
            .values(status="expired", failed_reason=reason)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def expire_stale_payments(self) -> int:
        """Expire pending payments past the confirmation window. Returns the count."""
        cutoff = (self.now_fn() - timedelta(seconds=self.charge_confirmation_seconds)).isoformat()
        stale = (
            self.db.query(DBPayment)
            .filter(DBPayment.status == "pending", DBPayment.created_at < cutoff)
            .all()
        )

        expired = 0
        for payment in stale:
            if not self._expire_payment(payment.merchant_oid, "timeout"):
                continue
            expired += 1
            try:
                session = self.sessions.load(payment.session_id)
            except SessionNotFound:
                continue
            if isinstance(session, AwaitingPaymentState):
                self.sessions.abandon(session, "timeout")

        if expired:
            logger.info(f"Expired {expired} unconfirmed payments")
        return expired
