# salonbook/services/payments/paytr.py
"""
PayTR iFrame API adapter.

initiate_charge  POST get-token → hosted checkout token
verify_callback  HMAC check of the out-of-band confirmation (form POST)

Amounts are sent in kuruş (34.56 TL → 3456).
"""

import base64
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from ...config import settings
from ...errors import SettlementFailure

logger = logging.getLogger(__name__)


CALLBACK_SUCCESS = "success"
CALLBACK_FAILED = "failed"


@dataclass(frozen=True)
class ChargeRequest:
    merchant_oid: str
    amount: float  # TL
    email: str
    user_ip: str
    item_name: str
    user_name: str = ""
    user_phone: str = ""
    ok_url: str = ""
    fail_url: str = ""


@dataclass(frozen=True)
class ChargeReference:
    merchant_oid: str
    token: str
    checkout_url: str


@dataclass(frozen=True)
class CallbackResult:
    merchant_oid: str
    status: str  # success / failed
    total_amount: int  # kuruş
    payment_type: Optional[str] = None
    failed_reason: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status == CALLBACK_SUCCESS


class PaymentGateway(Protocol):
    def initiate_charge(self, request: ChargeRequest) -> ChargeReference: ...

    def verify_callback(self, form: dict) -> CallbackResult: ...


# ── Hashing ──────────────────────────────────────────────────────────────


def to_kurus(amount: float) -> int:
    return int(round(amount * 100))


def encode_basket(items: list[tuple[str, float, int]]) -> str:
    """[(name, price TL, quantity)] → base64 JSON in PayTR format."""
    basket = [[name, str(to_kurus(price)), str(quantity)] for name, price, quantity in items]
    return base64.b64encode(json.dumps(basket).encode("utf-8")).decode("ascii")


def _hmac_b64(message: str, key: str) -> str:
    digest = hmac.new(key.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def token_hash(
    merchant_id: str,
    user_ip: str,
    merchant_oid: str,
    email: str,
    payment_amount: int,
    user_basket: str,
    no_installment: int,
    max_installment: int,
    currency: str,
    test_mode: str,
    merchant_salt: str,
    merchant_key: str,
) -> str:
    # Field order is fixed by PayTR
    hash_str = (
        f"{merchant_id}{user_ip}{merchant_oid}{email}{payment_amount}{user_basket}"
        f"{no_installment}{max_installment}{currency}{test_mode}"
    )
    return _hmac_b64(hash_str + merchant_salt, merchant_key)


def callback_hash(
    merchant_oid: str,
    status: str,
    total_amount: str,
    merchant_salt: str,
    merchant_key: str,
) -> str:
    return _hmac_b64(f"{merchant_oid}{merchant_salt}{status}{total_amount}", merchant_key)


# ── Adapter ──────────────────────────────────────────────────────────────


class PayTRGateway:
    def __init__(
        self,
        merchant_id: str | None = None,
        merchant_key: str | None = None,
        merchant_salt: str | None = None,
        test_mode: bool | None = None,
        api_url: str | None = None,
        iframe_url: str | None = None,
        client: httpx.Client | None = None,
    ):
        self.merchant_id = merchant_id if merchant_id is not None else settings.paytr_merchant_id
        self.merchant_key = merchant_key if merchant_key is not None else settings.paytr_merchant_key
        self.merchant_salt = merchant_salt if merchant_salt is not None else settings.paytr_merchant_salt
        self.test_mode = "1" if (settings.paytr_test_mode if test_mode is None else test_mode) else "0"
        self.api_url = api_url or settings.paytr_api_url
        self.iframe_url = (iframe_url or settings.paytr_iframe_url).rstrip("/")
        self.client = client or httpx.Client(timeout=10.0)

    def initiate_charge(self, request: ChargeRequest) -> ChargeReference:
        """
        Request a hosted checkout token.

        Raises:
            SettlementFailure: transport error or rejection by PayTR
        """
        payment_amount = to_kurus(request.amount)
        user_basket = encode_basket([(request.item_name, request.amount, 1)])
        currency = "TL"
        no_installment, max_installment = 0, 0

        paytr_token = token_hash(
            merchant_id=self.merchant_id,
            user_ip=request.user_ip,
            merchant_oid=request.merchant_oid,
            email=request.email,
            payment_amount=payment_amount,
            user_basket=user_basket,
            no_installment=no_installment,
            max_installment=max_installment,
            currency=currency,
            test_mode=self.test_mode,
            merchant_salt=self.merchant_salt,
            merchant_key=self.merchant_key,
        )

        form = {
            "merchant_id": self.merchant_id,
            "user_ip": request.user_ip,
            "merchant_oid": request.merchant_oid,
            "email": request.email,
            "payment_amount": str(payment_amount),
            "paytr_token": paytr_token,
            "user_basket": user_basket,
            "debug_on": self.test_mode,
            "no_installment": str(no_installment),
            "max_installment": str(max_installment),
            "user_name": request.user_name or request.email.split("@")[0],
            "user_address": "Türkiye",
            "user_phone": request.user_phone,
            "merchant_ok_url": request.ok_url,
            "merchant_fail_url": request.fail_url,
            "timeout_limit": "30",
            "currency": currency,
            "test_mode": self.test_mode,
        }

        try:
            response = self.client.post(self.api_url, data=form)
            result = response.json()
        except httpx.HTTPError as e:
            logger.error(f"PayTR request failed for {request.merchant_oid}: {e}")
            raise SettlementFailure(f"Payment gateway unreachable: {e}") from e
        except ValueError as e:
            logger.error(f"PayTR returned non-JSON for {request.merchant_oid}: {response.text[:200]}")
            raise SettlementFailure("Invalid response from payment gateway") from e

        if result.get("status") != "success" or not result.get("token"):
            reason = result.get("reason") or "unknown"
            logger.warning(f"PayTR rejected {request.merchant_oid}: {reason}")
            raise SettlementFailure(f"Payment gateway rejected the charge: {reason}")

        token = result["token"]
        logger.info(f"PayTR token received for {request.merchant_oid}")
        return ChargeReference(
            merchant_oid=request.merchant_oid,
            token=token,
            checkout_url=f"{self.iframe_url}/{token}",
        )

    def verify_callback(self, form: dict) -> CallbackResult:
        """
        Verify and parse a PayTR callback.

        Raises:
            SettlementFailure: missing fields or hash mismatch
        """
        try:
            merchant_oid = form["merchant_oid"]
            status = form["status"]
            total_amount = str(form["total_amount"])
            received_hash = form["hash"]
        except KeyError as e:
            raise SettlementFailure(f"Callback missing field {e}") from e

        expected = callback_hash(
            merchant_oid, status, total_amount, self.merchant_salt, self.merchant_key
        )
        if not hmac.compare_digest(expected, received_hash):
            logger.warning(f"PayTR callback hash mismatch for {merchant_oid}")
            raise SettlementFailure("Callback hash mismatch")

        return CallbackResult(
            merchant_oid=merchant_oid,
            status=status,
            total_amount=int(total_amount) if total_amount.isdigit() else 0,
            payment_type=form.get("payment_type"),
            failed_reason=form.get("failed_reason_msg") or form.get("failed_reason_code"),
            raw=dict(form),
        )
