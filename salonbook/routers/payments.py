# salonbook/routers/payments.py
"""
Payment gateway callback.

PayTR posts the result as form data and retries until it gets a plain
"OK" body. A callback whose hash does not verify is answered with 400 and
logged; PayTR keeps retrying it, so a wrong merchant key or salt recovers
once the configuration is fixed.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from starlette.concurrency import run_in_threadpool

from ..errors import SettlementFailure
from ..services.booking import BookingOrchestrator
from .booking_sessions import get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/callback", response_class=PlainTextResponse)
async def payment_callback(
    request: Request,
    orchestrator: BookingOrchestrator = Depends(get_orchestrator),
):
    form = dict(await request.form())
    try:
        # Database and Redis work is blocking
        await run_in_threadpool(orchestrator.confirm_charge, form)
    except SettlementFailure as e:
        logger.warning(
            f"Rejected payment callback for {form.get('merchant_oid')!r}: {e.message}; "
            f"gateway will retry"
        )
        return PlainTextResponse(f"PAYTR notification failed: {e.message}", status_code=400)
    return PlainTextResponse("OK")
