"""Payment gateway adapter: order creation, signature checks, payment lookup, refunds.

The rest of the service talks to ``PaymentGateway``; ``RazorpayGateway`` is the
production implementation. Upstream failures surface as ``GatewayError`` with
the upstream message and are never retried here.
"""

from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

import razorpay
import requests
from pydantic import BaseModel

from udin.core.config import get_settings
from udin.core.exceptions import BadRequestError, GatewayError
from udin.core.logging import get_logger
from udin.core.security import verify_hmac_signature

log = get_logger(__name__)

_UPSTREAM_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.ServerError,
    razorpay.errors.GatewayError,
    requests.RequestException,
)


class GatewayOrder(BaseModel):
    id: str
    amount: int  # paise
    currency: str
    receipt: str | None = None


class GatewayPayment(BaseModel):
    id: str
    amount: int  # paise
    status: str
    method: str | None = None
    fee: int = 0  # paise
    order_id: str | None = None


class GatewayRefund(BaseModel):
    refund_id: str
    amount: int
    status: str | None = None


class PaymentGateway(ABC):
    key_id: str = ""

    @abstractmethod
    def create_order(
        self, amount_minor: int, currency: str, receipt: str, notes: dict[str, Any] | None = None
    ) -> GatewayOrder:
        ...

    @abstractmethod
    def verify_signature(self, order_id: Any, payment_id: Any, signature: Any) -> bool:
        ...

    @abstractmethod
    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        ...

    @abstractmethod
    def create_refund(
        self, payment_id: str, amount_minor: int, notes: dict[str, Any] | None = None
    ) -> GatewayRefund:
        ...

    @abstractmethod
    def verify_webhook_signature(self, body: bytes, signature: Any) -> bool:
        ...


def payment_signature_message(order_id: str, payment_id: str) -> bytes:
    return f"{order_id}|{payment_id}".encode("utf-8")


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = "") -> None:
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(
        self, amount_minor: int, currency: str, receipt: str, notes: dict[str, Any] | None = None
    ) -> GatewayOrder:
        if amount_minor <= 0:
            raise GatewayError("Order amount must be positive")
        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
            "payment_capture": 1,
        }
        try:
            order = self._client.order.create(data=payload)
        except _UPSTREAM_ERRORS as e:
            log.warning("gateway_create_order_failed", receipt=receipt, error=str(e))
            raise GatewayError(str(e) or "Failed to create order") from e
        log.info("gateway_order_created", order_id=order["id"], amount=order["amount"])
        return GatewayOrder(
            id=order["id"],
            amount=order["amount"],
            currency=order["currency"],
            receipt=order.get("receipt"),
        )

    def verify_signature(self, order_id: Any, payment_id: Any, signature: Any) -> bool:
        if not isinstance(order_id, str) or not isinstance(payment_id, str):
            return False
        ok = verify_hmac_signature(self._key_secret, payment_signature_message(order_id, payment_id), signature)
        log.info("gateway_signature_checked", order_id=order_id, valid=ok)
        return ok

    def fetch_payment(self, payment_id: str) -> GatewayPayment:
        try:
            p = self._client.payment.fetch(payment_id)
        except _UPSTREAM_ERRORS as e:
            log.warning("gateway_fetch_payment_failed", payment_id=payment_id, error=str(e))
            raise GatewayError(str(e) or "Failed to fetch payment") from e
        return GatewayPayment(
            id=p["id"],
            amount=p["amount"],
            status=p["status"],
            method=p.get("method"),
            fee=p.get("fee") or 0,
            order_id=p.get("order_id"),
        )

    def create_refund(
        self, payment_id: str, amount_minor: int, notes: dict[str, Any] | None = None
    ) -> GatewayRefund:
        try:
            refund = self._client.payment.refund(
                payment_id,
                {"amount": amount_minor, "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None}},
            )
        except _UPSTREAM_ERRORS as e:
            log.warning("gateway_refund_failed", payment_id=payment_id, error=str(e))
            raise GatewayError(str(e) or "Failed to create refund") from e
        log.info("gateway_refund_created", payment_id=payment_id, refund_id=refund["id"])
        return GatewayRefund(refund_id=refund["id"], amount=refund.get("amount", amount_minor), status=refund.get("status"))

    def verify_webhook_signature(self, body: bytes, signature: Any) -> bool:
        return verify_hmac_signature(self._webhook_secret, body, signature)


@lru_cache
def get_gateway() -> PaymentGateway:
    settings = get_settings()
    if not settings.razorpay_key_id or not settings.razorpay_key_secret:
        raise BadRequestError("Payments not configured")
    return RazorpayGateway(
        settings.razorpay_key_id,
        settings.razorpay_key_secret,
        settings.razorpay_webhook_secret,
    )
