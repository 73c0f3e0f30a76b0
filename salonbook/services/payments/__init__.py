from .paytr import (
    CallbackResult,
    ChargeReference,
    ChargeRequest,
    PaymentGateway,
    PayTRGateway,
)

__all__ = [
    "CallbackResult",
    "ChargeReference",
    "ChargeRequest",
    "PaymentGateway",
    "PayTRGateway",
]
