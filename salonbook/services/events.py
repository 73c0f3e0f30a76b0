"""
salonbook/services/events.py

Notification channel: pushes events to a Redis list for the delivery
worker (SMS / WhatsApp / email).

Queue: events:p2p

Events:
- otp_code            one-time code for identity verification
- booking_confirmed   sent after a successful commit

Sending is fire-and-forget: failures are logged and never raised.
"""

import json
import logging
import time

from redis import Redis

logger = logging.getLogger(__name__)


P2P_QUEUE = "events:p2p"


class NotificationChannel:
    def __init__(self, redis: Redis, queue: str = P2P_QUEUE):
        self.redis = redis
        self.queue = queue

    def send(self, event_type: str, payload: dict) -> None:
        event = {
            "type": event_type,
            **payload,
            "ts": int(time.time()),
        }
        try:
            self.redis.rpush(self.queue, json.dumps(event))
            logger.info(f"Event emitted: {event_type} → {self.queue}")
        except Exception as e:
            logger.error(f"Failed to emit event {event_type}: {e}")
