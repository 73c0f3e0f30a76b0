# salonbook/routers/availability.py
"""
Availability API endpoints.

GET  /availability             - Slots of a day for (staff, date, duration)
POST /availability/invalidate  - Drop cached day grids of a staff member
POST /availability/invalidate/tenant - Drop cached day grids of every staff member of a tenant
"""

from datetime import date

from fastapi import APIRouter, Depends, Query
from redis import Redis
from sqlalchemy.orm import Session

from ..database import get_db
from ..redis_client import get_redis
from ..schemas.availability import AvailabilityResponse, InvalidateResponse, InvalidateTenantResponse, SlotInfo
from ..services.slots import AvailabilityService, invalidate_staff_cache, invalidate_tenant_cache
from ..services.stores import BookingStore, ScheduleStore


router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("", response_model=AvailabilityResponse)
def get_availability(
    staff_id: int,
    target_date: date = Query(..., alias="date"),
    duration_minutes: int = Query(..., gt=0, le=24 * 60),
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
):
    """Slots with availability flags. A closed or unreachable day returns no slots."""
    service = AvailabilityService(ScheduleStore(db), BookingStore(db), redis=redis)
    day = service.available_slots(staff_id, target_date, duration_minutes)

    return AvailabilityResponse(
        staff_id=staff_id,
        date=target_date,
        duration_minutes=duration_minutes,
        closed=day.closed,
        slot_step_minutes=day.slot_step_minutes,
        slots=[SlotInfo.model_validate(s) for s in day.slots],
        available_times=day.available_times,
    )


@router.post("/invalidate", response_model=InvalidateResponse)
def invalidate_availability_cache(
    staff_id: int,
    dates: list[date] | None = Query(None),
    redis: Redis = Depends(get_redis),
):
    """Invalidate cached grids after a schedule change (admin endpoint)."""
    deleted = invalidate_staff_cache(redis, staff_id, dates)
    return InvalidateResponse(staff_id=staff_id, deleted_keys=deleted)


@router.post("/invalidate/tenant", response_model=InvalidateTenantResponse)
def invalidate_tenant_availability_cache(
    tenant_id: int,
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
):
    """Invalidate cached grids of all staff after a tenant schedule or step change."""
    deleted = invalidate_tenant_cache(redis, db, tenant_id)
    return InvalidateTenantResponse(tenant_id=tenant_id, deleted_keys=deleted)
