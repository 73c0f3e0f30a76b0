# salonbook/routers/booking_sessions.py
"""
Booking session API.

POST /booking-sessions                 - Start a session for a tenant
GET  /booking-sessions/{id}            - Current state
GET  /booking-sessions/{id}/options    - What the current step offers
POST /booking-sessions/{id}/advance    - Submit input for the current step
POST /booking-sessions/{id}/commit     - Settle (exactly once)
POST /booking-sessions/{id}/cancel     - Abandon

Step errors come back with HTTP 200 and an `error` object; the session in
the body is where the customer continues.
"""

from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from redis import Redis
from sqlalchemy.orm import Session

from ..database import get_db
from ..redis_client import get_redis
from ..schemas.booking_sessions import (
    CommitResponse,
    SessionCreate,
    SessionOptions,
    SessionResponse,
)
from ..services.booking import BookingOrchestrator
from ..services.payments import PayTRGateway


router = APIRouter(prefix="/booking-sessions", tags=["booking-sessions"])

_gateway: PayTRGateway | None = None


def get_gateway() -> PayTRGateway:
    global _gateway
    if _gateway is None:
        _gateway = PayTRGateway()
    return _gateway


def get_orchestrator(
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis),
    gateway=Depends(get_gateway),
) -> BookingOrchestrator:
    return BookingOrchestrator(db, redis, gateway=gateway)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("x-real-ip") or (request.client.host if request.client else "127.0.0.1")


@router.post("", response_model=SessionResponse, status_code=201)
def start_session(
    data: SessionCreate,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    return SessionResponse(session=orchestrator.start(data.tenant_id))


@router.get("/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    return SessionResponse(session=orchestrator.get(session_id))


@router.get("/{session_id}/options", response_model=SessionOptions, response_model_exclude_none=True)
def get_session_options(
    session_id: str,
    target_date: date | None = None,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    return SessionOptions(**orchestrator.options(session_id, target_date))


@router.post("/{session_id}/advance", response_model=SessionResponse)
def advance_session(
    session_id: str,
    step_input: dict[str, Any] = Body(...),
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    result = orchestrator.advance(session_id, step_input)
    return SessionResponse(session=result.session, error=result.error)


@router.post("/{session_id}/commit", response_model=CommitResponse)
def commit_session(
    session_id: str,
    request: Request,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    outcome = orchestrator.commit(session_id, user_ip=_client_ip(request))
    return CommitResponse(session=outcome.session, result=outcome.result, error=outcome.error)


@router.post("/{session_id}/cancel", response_model=SessionResponse)
def cancel_session(
    session_id: str,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    return SessionResponse(session=orchestrator.cancel(session_id))
