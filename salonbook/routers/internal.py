# salonbook/routers/internal.py
"""
Internal API endpoints for trusted consumers (scheduler, admin backend).

POST /internal/bookings/{id}/status  - Status transition (cancel releases the slot)
POST /internal/payments/expire       - Sweep unconfirmed charges past their deadline
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.booking import BookingOrchestrator
from ..services.stores import BookingStore
from .booking_sessions import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", tags=["internal"])


class BookingStatusUpdate(BaseModel):
    status: str


class BookingStatusRead(BaseModel):
    id: int
    status: str
    payment_status: str

    model_config = {"from_attributes": True}


@router.post("/bookings/{booking_id}/status", response_model=BookingStatusRead)
def update_booking_status(
    booking_id: int,
    data: BookingStatusUpdate,
    db: Session = Depends(get_db),
):
    return BookingStore(db).update_status(booking_id, data.status)


@router.post("/payments/expire")
def expire_payments(orchestrator: BookingOrchestrator = Depends(get_orchestrator)):
    return {"expired": orchestrator.expire_stale_payments()}
