# salonbook/services/slots/redis_store.py
"""
Redis cache for schedule-derived day grids.

Key format: slots:day:{staff_id}:{date}:{step}
Value: JSON {"closed": bool, "start": int, "end": int, "candidates": [int, ...]}

Only the calendar part is cached (window + candidate starts). Bookings
and the "now" cutoff are applied on every read, so a booking never has
to invalidate anything here. Schedule edits do (see invalidator.py).
"""

import json
from datetime import date

from redis import Redis

from .calendar import OperatingWindow


DEFAULT_TTL_SECONDS = 24 * 3600


class SlotsRedisStore:
    """Redis storage wrapper for cached day grids."""

    KEY_PREFIX = "slots:day"

    def __init__(self, redis: Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    def _key(self, staff_id: int, dt: date, step: int) -> str:
        return f"{self.KEY_PREFIX}:{staff_id}:{dt.isoformat()}:{step}"

    # ── Write ────────────────────────────────────────────────────────────

    def store_day(
        self,
        staff_id: int,
        dt: date,
        step: int,
        window: OperatingWindow | None,
        candidates: list[int],
    ) -> None:
        """Cache a computed day. window=None stores "closed"."""
        if window is None:
            payload = {"closed": True, "start": 0, "end": 0, "candidates": []}
        else:
            payload = {
                "closed": False,
                "start": window.start,
                "end": window.end,
                "candidates": candidates,
            }
        self.redis.setex(self._key(staff_id, dt, step), self.ttl_seconds, json.dumps(payload))

    # ── Read ─────────────────────────────────────────────────────────────

    def get_day(
        self,
        staff_id: int,
        dt: date,
        step: int,
    ) -> tuple[OperatingWindow | None, list[int]] | None:
        """
        Cached (window, candidates) for a day.

        Returns:
            None on cache miss; (None, []) for a cached closed day.
        """
        raw = self.redis.get(self._key(staff_id, dt, step))
        if raw is None:
            return None

        data = json.loads(raw)
        if data["closed"]:
            return None, []
        # Breaks are already folded into candidates
        window = OperatingWindow(start=data["start"], end=data["end"])
        return window, list(data["candidates"])

    # ── Delete ───────────────────────────────────────────────────────────

    def delete_day_slots(
        self,
        staff_id: int,
        dates: list[date] | None = None,
    ) -> int:
        """
        Delete cached days of one staff member.

        Args:
            staff_id: Staff ID
            dates: Specific dates, or None to delete every cached date.

        Returns:
            Number of deleted keys.
        """
        if dates:
            keys = []
            for dt in dates:
                keys.extend(self.redis.keys(f"{self.KEY_PREFIX}:{staff_id}:{dt.isoformat()}:*"))
        else:
            keys = self.redis.keys(f"{self.KEY_PREFIX}:{staff_id}:*")

        if not keys:
            return 0

        return self.redis.delete(*keys)
