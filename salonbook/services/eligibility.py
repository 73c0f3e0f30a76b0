# salonbook/services/eligibility.py
"""
Identity normalization and the eligibility gate.

A customer is blocked when explicitly blacklisted, or when their no-show
count reached the tenant threshold (0 disables the threshold). Unknown
phone numbers are never blocked.
"""

import logging
import re

from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationError
from .stores import CustomerStore

logger = logging.getLogger(__name__)


PHONE_DIGITS = 10


def normalize_phone(raw: str) -> str:
    """
    Normalize a local mobile number to 10 digits.

    "0 (532) 123-45-67" → "5321234567"

    Raises:
        ValidationError: not exactly 10 digits after normalization
    """
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("0"):
        digits = digits[1:]
    if len(digits) != PHONE_DIGITS:
        raise ValidationError(f"Phone number must have {PHONE_DIGITS} digits")
    return digits


class EligibilityService:
    def __init__(self, db: Session, no_show_threshold: int | None = None):
        self.customers = CustomerStore(db)
        self.no_show_threshold = (
            settings.no_show_block_threshold if no_show_threshold is None else no_show_threshold
        )

    def is_blocked(self, phone: str, tenant_id: int) -> bool:
        customer = self.customers.find(tenant_id, phone)
        if customer is None:
            return False

        if customer.is_blacklisted:
            logger.info(f"Customer {customer.id} is blacklisted (tenant {tenant_id})")
            return True

        if self.no_show_threshold > 0 and (customer.no_show_count or 0) >= self.no_show_threshold:
            logger.info(
                f"Customer {customer.id} blocked: {customer.no_show_count} no-shows "
                f"(threshold {self.no_show_threshold})"
            )
            return True

        return False
