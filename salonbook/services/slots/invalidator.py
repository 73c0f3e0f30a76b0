# salonbook/services/slots/invalidator.py
"""
Cache invalidation for cached day grids.

Triggers:
✓ Staff work_schedule changed → invalidate that staff member
✓ Tenant work_schedule or slot step changed → invalidate every staff member

Does NOT trigger:
✗ Booking created/cancelled (bookings are never cached)
"""

from datetime import date

from redis import Redis
from sqlalchemy.orm import Session

from ...models.tables import Staff as DBStaff
from .redis_store import SlotsRedisStore


def invalidate_staff_cache(
    redis: Redis,
    staff_id: int,
    dates: list[date] | None = None,
) -> int:
    """
    Invalidate cached grids for a staff member.

    Returns:
        Number of deleted cache keys
    """
    return SlotsRedisStore(redis).delete_day_slots(staff_id, dates)


def invalidate_tenant_cache(redis: Redis, db: Session, tenant_id: int) -> int:
    staff_ids = [
        row.id for row in db.query(DBStaff.id).filter(DBStaff.tenant_id == tenant_id).all()
    ]
    return sum(invalidate_staff_cache(redis, staff_id) for staff_id in staff_ids)
