# salonbook/services/entitlements.py
"""
Entitlement lookup behind the eligibility gate.

The gate runs first: a blocked identity gets EligibilityBlocked and never
sees whether it holds a package.
"""

from datetime import date, datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..errors import EligibilityBlocked
from .eligibility import EligibilityService
from .stores import CustomerStore, Entitlement, EntitlementStore, ScheduleStore

# Sort key for packages without expiry: after every real date
_NO_EXPIRY = "9999-12-31"


def covering(entitlements: list[Entitlement], service_id: int) -> Optional[Entitlement]:
    """
    Entitlement to redeem for a service.

    Picks the usage with remaining > 0 that expires soonest;
    packages without expiry are used last.
    """
    candidates = [
        e for e in entitlements
        if e.service_id == service_id and e.remaining_quantity > 0
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda e: ((e.expires_at or _NO_EXPIRY)[:10], e.id))
    return candidates[0]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementLookup:
    def __init__(
        self,
        db: Session,
        eligibility: EligibilityService | None = None,
        now_fn: Callable[[], datetime] = _utcnow,
    ):
        self.customers = CustomerStore(db)
        self.store = EntitlementStore(db)
        self.schedule = ScheduleStore(db)
        self.eligibility = eligibility or EligibilityService(db)
        self.now_fn = now_fn

    def entitlements_for(
        self,
        tenant_id: int,
        phone: str,
        today: date | None = None,
    ) -> list[Entitlement]:
        """
        Active entitlements of a customer.

        Expiry is judged against `today`, or the current date in the
        tenant's timezone when omitted.

        Raises:
            EligibilityBlocked: the identity is blocked
        """
        if self.eligibility.is_blocked(phone, tenant_id):
            raise EligibilityBlocked("Customer is not allowed to book")

        customer = self.customers.find(tenant_id, phone)
        if customer is None:
            return []
        return self.store.list_active(customer.id, today or self.local_today(tenant_id))

    def covering_for(
        self,
        tenant_id: int,
        phone: str,
        service_id: int,
        today: date | None = None,
    ) -> Optional[Entitlement]:
        return covering(self.entitlements_for(tenant_id, phone, today), service_id)

    def local_today(self, tenant_id: int) -> date:
        now = self.now_fn()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.schedule.get_timezone(tenant_id)).date()
