"""
salonbook/services/otp.py

One-time code verification of a phone number, state in Redis.

Keys:
  otp:code:{tenant_id}:{phone}      JSON {"code": "123456", "attempts": 0}, TTL = otp_ttl_seconds
  otp:throttle:{tenant_id}:{phone}  resend lock, TTL = otp_resend_seconds
"""

import json
import logging
import secrets

from redis import Redis

from ..config import settings
from ..errors import ValidationError
from .events import NotificationChannel

logger = logging.getLogger(__name__)


CODE_LENGTH = 6


def generate_code() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(CODE_LENGTH))


class OtpService:
    def __init__(
        self,
        redis: Redis,
        channel: NotificationChannel,
        ttl_seconds: int | None = None,
        max_attempts: int | None = None,
        resend_seconds: int | None = None,
    ):
        self.redis = redis
        self.channel = channel
        self.ttl_seconds = ttl_seconds or settings.otp_ttl_seconds
        self.max_attempts = max_attempts or settings.otp_max_attempts
        self.resend_seconds = resend_seconds or settings.otp_resend_seconds

    # ----------------------------------------
    # Keys
    # ----------------------------------------

    @staticmethod
    def _code_key(tenant_id: int, phone: str) -> str:
        return f"otp:code:{tenant_id}:{phone}"

    @staticmethod
    def _throttle_key(tenant_id: int, phone: str) -> str:
        return f"otp:throttle:{tenant_id}:{phone}"

    # ----------------------------------------
    # Send / verify
    # ----------------------------------------

    def send(self, tenant_id: int, phone: str) -> None:
        """
        Issue a new code and hand it to the notification channel.

        Raises:
            ValidationError: a code was sent less than resend_seconds ago
        """
        throttle_key = self._throttle_key(tenant_id, phone)
        if not self.redis.set(throttle_key, "1", nx=True, ex=self.resend_seconds):
            retry_after = self.redis.ttl(throttle_key)
            raise ValidationError(f"Please retry in {max(retry_after, 1)} seconds")

        code = generate_code()
        self.redis.setex(
            self._code_key(tenant_id, phone),
            self.ttl_seconds,
            json.dumps({"code": code, "attempts": 0}),
        )
        logger.info(f"OTP issued for tenant {tenant_id}, phone ***{phone[-4:]}")

        self.channel.send("otp_code", {
            "tenant_id": tenant_id,
            "phone": phone,
            "code": code,
            "expires_in": self.ttl_seconds,
        })

    def verify(self, tenant_id: int, phone: str, code: str) -> None:
        """
        Check a submitted code. A correct code is consumed.

        Raises:
            ValidationError: no live code, too many attempts, or wrong code
        """
        key = self._code_key(tenant_id, phone)
        raw = self.redis.get(key)
        if raw is None:
            raise ValidationError("No valid verification code, request a new one")

        data = json.loads(raw)
        if data["attempts"] >= self.max_attempts:
            raise ValidationError("Maximum attempts reached, request a new code")

        if not secrets.compare_digest(str(code), data["code"]):
            data["attempts"] += 1
            ttl = self.redis.ttl(key)
            if ttl > 0:
                self.redis.setex(key, ttl, json.dumps(data))
            remaining = max(self.max_attempts - data["attempts"], 0)
            raise ValidationError(f"Wrong verification code, {remaining} attempts left")

        self.redis.delete(key)
        logger.info(f"OTP verified for tenant {tenant_id}, phone ***{phone[-4:]}")
