# salonbook/services/booking/session_store.py
"""
Redis persistence of booking sessions.

Key: booking:session:{session_id} → JSON of the current state model.

Idle sessions are not deleted eagerly: the key outlives the idle window
so that a late request sees "abandoned (timeout)" instead of "not found".
Terminal sessions are kept for terminal_session_ttl_seconds.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from redis import Redis

from ...config import settings
from ...errors import SessionNotFound
from .states import AbandonedState, AwaitingPaymentState, BookingSession, IdentityState, session_adapter

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    KEY_PREFIX = "booking:session"
    GUARD_PREFIX = "booking:commit"

    def __init__(
        self,
        redis: Redis,
        now_fn: Callable[[], datetime] = _utcnow,
        idle_seconds: int | None = None,
        terminal_ttl_seconds: int | None = None,
        guard_seconds: int | None = None,
    ):
        self.redis = redis
        self.now_fn = now_fn
        self.idle_seconds = idle_seconds or settings.session_idle_seconds
        self.terminal_ttl_seconds = terminal_ttl_seconds or settings.terminal_session_ttl_seconds
        self.guard_seconds = guard_seconds or settings.commit_guard_seconds

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}:{session_id}"

    # ── Lifecycle ────────────────────────────────────────────────────────

    def create(self, tenant_id: int) -> IdentityState:
        now = self.now_fn()
        session = IdentityState(
            session_id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            created_at=now,
            updated_at=now,
        )
        self.save(session)
        logger.info(f"Booking session {session.session_id} started for tenant {tenant_id}")
        return session

    def save(self, session: BookingSession) -> None:
        if session.is_terminal:
            ttl = self.terminal_ttl_seconds
        elif isinstance(session, AwaitingPaymentState):
            remaining = int((session.deadline - self.now_fn()).total_seconds())
            ttl = max(remaining, 0) + self.terminal_ttl_seconds
        else:
            ttl = self.idle_seconds + self.terminal_ttl_seconds
        self.redis.setex(self._key(session.session_id), ttl, session.model_dump_json())

    def load(self, session_id: str) -> BookingSession:
        """
        Load a session, moving it to abandoned when idle too long.

        awaiting_payment is bounded by its payment deadline instead.

        Raises:
            SessionNotFound: unknown or expired key
        """
        raw = self.redis.get(self._key(session_id))
        if raw is None:
            raise SessionNotFound(f"Booking session {session_id} not found")

        session = session_adapter.validate_json(raw)

        if session.is_terminal or isinstance(session, AwaitingPaymentState):
            return session

        idle_limit = session.updated_at + timedelta(seconds=self.idle_seconds)
        if self.now_fn() > idle_limit:
            logger.info(f"Booking session {session_id} idle since {session.updated_at}, abandoned")
            session = self.abandon(session, "timeout")
        return session

    def abandon(self, session: BookingSession, reason: str) -> AbandonedState:
        abandoned = AbandonedState(
            session_id=session.session_id,
            tenant_id=session.tenant_id,
            created_at=session.created_at,
            updated_at=self.now_fn(),
            reason=reason,
        )
        self.save(abandoned)
        return abandoned

    # ── Commit guard ─────────────────────────────────────────────────────

    def acquire_commit_guard(self, session_id: str) -> bool:
        return bool(self.redis.set(
            f"{self.GUARD_PREFIX}:{session_id}", "1", nx=True, ex=self.guard_seconds
        ))

    def release_commit_guard(self, session_id: str) -> None:
        self.redis.delete(f"{self.GUARD_PREFIX}:{session_id}")
