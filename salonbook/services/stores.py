# salonbook/services/stores.py
"""
SQL-backed collaborator stores.

ScheduleStore     weekly schedule, slot grid and timezone per staff/tenant
CatalogStore      services and the staff able to perform them
CustomerStore     customers by (tenant, phone)
EntitlementStore  active package usages and their atomic decrement
BookingStore      non-cancelled bookings per (staff, date) and booking creation

Connection-level failures are raised as UpstreamUnavailable; everything
else propagates unchanged.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import EntitlementExhausted, SlotConflict, UpstreamUnavailable, ValidationError
from ..models.tables import (
    Appointments as DBAppointment,
    CustomerPackages as DBCustomerPackage,
    Customers as DBCustomer,
    PackageUsages as DBPackageUsage,
    ServicePackages as DBServicePackage,
    Services as DBService,
    SlotClaims as DBSlotClaim,
    Staff as DBStaff,
    Tenants as DBTenant,
    t_staff_services,
)
from .slots.calendar import DEFAULT_SCHEDULE, WeeklySchedule, parse_weekly_schedule
from .slots.config import SlotConfig, time_str_to_minutes
from .slots.conflicts import CANCELLED, BookedInterval, claim_minutes

logger = logging.getLogger(__name__)


BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled", "no_show")


# ── Schedule ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StaffCalendar:
    """Everything availability needs to know about one staff member."""
    staff_id: int
    tenant_id: int
    schedule: WeeklySchedule
    config: SlotConfig
    tz: ZoneInfo


class ScheduleStore:
    def __init__(self, db: Session, default_timezone: str | None = None):
        self.db = db
        self.default_timezone = default_timezone or settings.default_timezone

    def get_staff_calendar(self, staff_id: int) -> StaffCalendar | None:
        """Resolve schedule (staff → tenant → default), grid and timezone."""
        try:
            staff = self.db.get(DBStaff, staff_id)
            if not staff or not staff.is_active:
                return None
            tenant = self.db.get(DBTenant, staff.tenant_id)
        except OperationalError as e:
            raise UpstreamUnavailable(f"schedule store unavailable: {e}") from e

        return StaffCalendar(
            staff_id=staff.id,
            tenant_id=staff.tenant_id,
            schedule=self._resolve_schedule(staff, tenant),
            config=self._slot_config(tenant),
            tz=self._timezone(tenant),
        )

    def get_weekly_schedule(self, staff_id: int) -> WeeklySchedule:
        calendar = self.get_staff_calendar(staff_id)
        return calendar.schedule if calendar else DEFAULT_SCHEDULE

    def get_slot_config(self, tenant_id: int) -> SlotConfig:
        try:
            tenant = self.db.get(DBTenant, tenant_id)
        except OperationalError as e:
            raise UpstreamUnavailable(f"schedule store unavailable: {e}") from e
        return self._slot_config(tenant)

    def get_timezone(self, tenant_id: int) -> ZoneInfo:
        try:
            tenant = self.db.get(DBTenant, tenant_id)
        except OperationalError as e:
            raise UpstreamUnavailable(f"schedule store unavailable: {e}") from e
        return self._timezone(tenant)

    # ── Helpers ──

    @staticmethod
    def _resolve_schedule(staff: DBStaff, tenant: Optional[DBTenant]) -> WeeklySchedule:
        if staff.work_schedule:
            return parse_weekly_schedule(staff.work_schedule)
        if tenant is not None and tenant.work_schedule:
            return parse_weekly_schedule(tenant.work_schedule)
        return DEFAULT_SCHEDULE

    @staticmethod
    def _slot_config(tenant: Optional[DBTenant]) -> SlotConfig:
        if tenant is None:
            return SlotConfig()
        try:
            return SlotConfig(
                slot_step_minutes=tenant.slot_step_minutes,
                min_advance_minutes=tenant.min_advance_minutes or 0,
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"Tenant {tenant.id} has invalid slot config, using default: {e}")
            return SlotConfig()

    def _timezone(self, tenant: Optional[DBTenant]) -> ZoneInfo:
        name = (tenant.timezone if tenant is not None else None) or self.default_timezone
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown timezone {name!r}, using {self.default_timezone}")
            return ZoneInfo(self.default_timezone)


# ── Catalog ──────────────────────────────────────────────────────────────


class CatalogStore:
    def __init__(self, db: Session):
        self.db = db

    def get_service(self, tenant_id: int, service_id: int) -> DBService | None:
        service = self.db.get(DBService, service_id)
        if not service or not service.is_active or service.tenant_id != tenant_id:
            return None
        return service

    def list_services(self, tenant_id: int) -> list[DBService]:
        return (
            self.db.query(DBService)
            .filter(DBService.tenant_id == tenant_id, DBService.is_active == 1)
            .order_by(DBService.id)
            .all()
        )

    def list_staff_for_service(self, tenant_id: int, service_id: int) -> list[DBStaff]:
        """Active staff of the tenant linked to the service."""
        return (
            self.db.query(DBStaff)
            .join(t_staff_services, DBStaff.id == t_staff_services.c.staff_id)
            .filter(
                t_staff_services.c.service_id == service_id,
                t_staff_services.c.is_active == 1,
                DBStaff.tenant_id == tenant_id,
                DBStaff.is_active == 1,
            )
            .order_by(DBStaff.id)
            .all()
        )


# ── Customers ────────────────────────────────────────────────────────────


class CustomerStore:
    def __init__(self, db: Session):
        self.db = db

    def find(self, tenant_id: int, phone: str) -> DBCustomer | None:
        try:
            return (
                self.db.query(DBCustomer)
                .filter(DBCustomer.tenant_id == tenant_id, DBCustomer.phone == phone)
                .first()
            )
        except OperationalError as e:
            raise UpstreamUnavailable(f"customer store unavailable: {e}") from e

    def find_or_create(
        self,
        tenant_id: int,
        phone: str,
        first_name: str,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> DBCustomer:
        """Find customer by phone or create a new one (flushed, not committed)."""
        customer = self.find(tenant_id, phone)
        if customer:
            if email and not customer.email:
                customer.email = email
            return customer

        customer = DBCustomer(
            tenant_id=tenant_id,
            phone=phone,
            first_name=first_name,
            last_name=last_name,
            email=email,
        )
        self.db.add(customer)
        self.db.flush()
        logger.info(f"Created customer {customer.id} for tenant {tenant_id}")
        return customer


# ── Entitlements ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Entitlement:
    id: int  # package usage id
    customer_id: int
    customer_package_id: int
    package_id: int
    package_name: str
    service_id: int
    total_quantity: int
    remaining_quantity: int
    expires_at: Optional[str] = None


class EntitlementStore:
    def __init__(self, db: Session):
        self.db = db

    def list_active(self, customer_id: int, today: date) -> list[Entitlement]:
        """
        Usages with remaining quantity on active, unexpired packages.

        `today` is the tenant-local date; a package expiring today is
        still usable. Packages with expires_at IS NULL never expire.
        """
        today_str = today.isoformat()
        try:
            rows = (
                self.db.query(DBPackageUsage, DBCustomerPackage, DBServicePackage)
                .join(DBCustomerPackage, DBPackageUsage.customer_package_id == DBCustomerPackage.id)
                .join(DBServicePackage, DBCustomerPackage.package_id == DBServicePackage.id)
                .filter(
                    DBCustomerPackage.customer_id == customer_id,
                    DBCustomerPackage.status == "active",
                    DBPackageUsage.remaining_quantity > 0,
                )
                .order_by(DBPackageUsage.id)
                .all()
            )
        except OperationalError as e:
            raise UpstreamUnavailable(f"entitlement store unavailable: {e}") from e

        result = []
        for usage, customer_package, package in rows:
            if customer_package.expires_at and str(customer_package.expires_at)[:10] < today_str:
                continue
            result.append(Entitlement(
                id=usage.id,
                customer_id=customer_package.customer_id,
                customer_package_id=customer_package.id,
                package_id=package.id,
                package_name=package.name,
                service_id=usage.service_id,
                total_quantity=usage.total_quantity,
                remaining_quantity=usage.remaining_quantity,
                expires_at=customer_package.expires_at,
            ))
        return result

    def decrement_if_positive(self, usage_id: int) -> None:
        """
        Compare-and-swap decrement of remaining_quantity.

        Joins the caller's transaction; nothing is committed here.

        Raises:
            EntitlementExhausted: remaining_quantity was already 0
        """
        result = self.db.execute(
            update(DBPackageUsage)
            .where(DBPackageUsage.id == usage_id, DBPackageUsage.remaining_quantity > 0)
            .values(
                remaining_quantity=DBPackageUsage.remaining_quantity - 1,
                used_quantity=DBPackageUsage.used_quantity + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise EntitlementExhausted(f"Package usage {usage_id} has no remaining quantity")

        self._complete_package_if_depleted(usage_id)

    def _complete_package_if_depleted(self, usage_id: int) -> None:
        usage = self.db.get(DBPackageUsage, usage_id)
        self.db.refresh(usage)
        remaining = (
            self.db.query(DBPackageUsage)
            .filter(
                DBPackageUsage.customer_package_id == usage.customer_package_id,
                DBPackageUsage.remaining_quantity > 0,
            )
            .count()
        )
        if remaining == 0:
            customer_package = self.db.get(DBCustomerPackage, usage.customer_package_id)
            customer_package.status = "completed"
            logger.info(f"Customer package {customer_package.id} fully used, marked completed")


# ── Bookings ─────────────────────────────────────────────────────────────


@dataclass
class NewBooking:
    tenant_id: int
    staff_id: int
    service_id: int
    customer_id: int
    date: str  # YYYY-MM-DD
    time: str  # HH:MM
    duration_minutes: int
    status: str
    payment_type: str
    payment_status: str
    price: Optional[float] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None
    contact_channel: Optional[str] = None
    notes: Optional[str] = None
    payment_id: Optional[int] = None


class BookingStore:
    def __init__(self, db: Session):
        self.db = db
        self.entitlements = EntitlementStore(db)

    def list_non_cancelled(self, staff_id: int, target_date: date) -> list[BookedInterval]:
        try:
            rows = (
                self.db.query(DBAppointment)
                .filter(
                    DBAppointment.staff_id == staff_id,
                    DBAppointment.date == target_date.isoformat(),
                    DBAppointment.status != CANCELLED,
                )
                .all()
            )
        except OperationalError as e:
            raise UpstreamUnavailable(f"booking store unavailable: {e}") from e

        return [
            BookedInterval(time=row.time, duration_minutes=row.duration_minutes, status=row.status)
            for row in rows
        ]

    def create_booking(self, new: NewBooking, redeem_usage_id: Optional[int] = None) -> int:
        """
        Create a booking and its slot claims in one transaction.

        With redeem_usage_id the entitlement decrement joins the same
        transaction: either both happen or neither does.

        Raises:
            SlotConflict: an overlapping non-cancelled booking holds a claim
            EntitlementExhausted: the usage reached 0 before this commit
            UpstreamUnavailable: database unreachable
        """
        start = time_str_to_minutes(new.time)
        try:
            if redeem_usage_id is not None:
                self.entitlements.decrement_if_positive(redeem_usage_id)

            appointment = DBAppointment(
                tenant_id=new.tenant_id,
                staff_id=new.staff_id,
                service_id=new.service_id,
                customer_id=new.customer_id,
                date=new.date,
                time=new.time,
                duration_minutes=new.duration_minutes,
                status=new.status,
                payment_type=new.payment_type,
                payment_status=new.payment_status,
                price=new.price,
                customer_name=new.customer_name,
                customer_phone=new.customer_phone,
                customer_email=new.customer_email,
                contact_channel=new.contact_channel,
                notes=new.notes,
                package_usage_id=redeem_usage_id,
                payment_id=new.payment_id,
            )
            self.db.add(appointment)
            self.db.flush()

            self.db.add_all([
                DBSlotClaim(
                    appointment_id=appointment.id,
                    staff_id=new.staff_id,
                    date=new.date,
                    minute=minute,
                )
                for minute in claim_minutes(start, new.duration_minutes)
            ])
            self.db.flush()
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.info(f"Slot conflict for staff {new.staff_id} on {new.date} {new.time}")
            raise SlotConflict(
                f"{new.date} {new.time} was just taken for staff {new.staff_id}"
            ) from e
        except EntitlementExhausted:
            self.db.rollback()
            raise
        except OperationalError as e:
            self.db.rollback()
            raise UpstreamUnavailable(f"booking store unavailable: {e}") from e

        logger.info(
            f"Booking created: booking_id={appointment.id}, staff_id={new.staff_id}, "
            f"time={new.date} {new.time}, payment_status={new.payment_status}"
        )
        return appointment.id

    def update_status(self, booking_id: int, status: str) -> DBAppointment:
        """
        Change booking status.

        Cancelling releases the slot claims; a no-show counts against the
        customer's eligibility. Cancelled bookings cannot be revived.
        """
        if status not in BOOKING_STATUSES:
            raise ValidationError(f"Unknown booking status: {status}")

        appointment = self.db.get(DBAppointment, booking_id)
        if not appointment:
            raise ValidationError(f"Booking {booking_id} not found")
        if appointment.status == CANCELLED and status != CANCELLED:
            raise ValidationError(f"Booking {booking_id} is cancelled")
        if appointment.status == status:
            return appointment

        if status == CANCELLED:
            self.db.execute(
                delete(DBSlotClaim).where(DBSlotClaim.appointment_id == booking_id)
            )
        if status == "no_show":
            customer = self.db.get(DBCustomer, appointment.customer_id)
            customer.no_show_count = (customer.no_show_count or 0) + 1

        appointment.status = status
        self.db.commit()
        self.db.refresh(appointment)

        logger.info(f"Booking {booking_id} status → {status}")
        return appointment
