"""Hosted checkout overlay, seen from the client.

``CheckoutGateway.open`` resolves with the gateway's payment identifiers or
rejects with ``GatewayDismissed`` (user closed the overlay) or
``GatewayFailed`` (gateway reported the payment as failed).
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from udin.client.errors import GatewayDismissed, GatewayFailed


class Prefill(BaseModel):
    name: str = ""
    email: str = ""
    contact: str = ""


class CheckoutOptions(BaseModel):
    key: str
    amount: int  # paise
    currency: str = "INR"
    name: str = "UDIN"
    description: str = "Document Processing"
    prefill: Prefill = Field(default_factory=Prefill)
    notes: dict[str, str] = Field(default_factory=dict)
    theme: dict[str, str] = Field(default_factory=dict)
    order_id: str | None = None

    def to_gateway(self) -> dict[str, Any]:
        """Parameters in the shape the overlay script expects."""
        return self.model_dump(exclude_none=True)


class CheckoutResult(BaseModel):
    payment_id: str
    order_id: str | None = None
    signature: str | None = None


class CheckoutGateway(ABC):
    @abstractmethod
    async def open(self, options: CheckoutOptions) -> CheckoutResult:
        """Suspend until the user completes, dismisses or fails the payment."""
        ...


CheckoutHandler = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class CallbackCheckout(CheckoutGateway):
    """Adapter around a host-provided coroutine that drives the real overlay.

    The handler receives the overlay parameters and returns the gateway's
    response: ``razorpay_*`` fields on success, ``{"dismissed": True}`` when the
    overlay was closed, or ``{"error": {...}}`` for a ``payment.failed`` event.
    """

    def __init__(self, handler: CheckoutHandler):
        self._handler = handler

    async def open(self, options: CheckoutOptions) -> CheckoutResult:
        resp = await self._handler(options.to_gateway())
        if resp.get("dismissed"):
            raise GatewayDismissed()
        if "error" in resp:
            err = resp.get("error") or {}
            raise GatewayFailed(
                err.get("description") or err.get("reason") or "Payment failed in checkout",
                code=err.get("code"),
                payment_id=(err.get("metadata") or {}).get("payment_id"),
            )
        payment_id = resp.get("razorpay_payment_id")
        if not payment_id:
            raise GatewayFailed("Checkout returned no payment id")
        return CheckoutResult(
            payment_id=payment_id,
            order_id=resp.get("razorpay_order_id") or options.order_id,
            signature=resp.get("razorpay_signature"),
        )
