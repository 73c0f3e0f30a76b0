import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from redis import Redis

from .database import init_db
from .errors import BookingError, SessionNotFound, UpstreamUnavailable, ValidationError
from .redis_client import get_redis
from .routers import availability, booking_sessions, internal, payments

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="Salon Booking API", lifespan=lifespan)

app.include_router(availability.router)
app.include_router(booking_sessions.router)
app.include_router(payments.router)
app.include_router(internal.router)


def _status_for(exc: BookingError) -> int:
    if isinstance(exc, SessionNotFound):
        return 404
    if isinstance(exc, UpstreamUnavailable):
        return 503
    if isinstance(exc, ValidationError):
        return 400
    return 409


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    status_code = _status_for(exc)
    if status_code == 503:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.get("/health")
def health(redis: Redis = Depends(get_redis)):
    try:
        redis_ok = redis.ping()
    except Exception as e:
        logger.warning(f"Redis ping failed: {e}")
        redis_ok = False
    return {"redis": redis_ok}
