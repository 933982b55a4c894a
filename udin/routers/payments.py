from fastapi import APIRouter, Depends, Header, Query, Request
from pydantic import BaseModel

from udin.deps import get_current_user, require_admin
from udin.models.user import User
from udin.services import payments as payments_service

router = APIRouter()


class RefundRequest(BaseModel):
    amount: float | None = None
    reason: str | None = None


@router.post("/order")
async def create_order(
    body: payments_service.CreateOrderRequest,
    user: User = Depends(get_current_user),
):
    """Create Razorpay order for a priced cart; frontend opens checkout with orderId and keyId."""
    return await payments_service.create_order(user, body)


@router.post("/verify")
async def verify_payment(
    request: Request,
    body: payments_service.VerifyPaymentRequest,
    user: User = Depends(get_current_user),
):
    """Verify the checkout signature and mark the payment paid."""
    meta = {
        "ipAddress": request.client.host if request.client else None,
        "userAgent": request.headers.get("User-Agent"),
    }
    return await payments_service.verify_payment(user, body, {k: v for k, v in meta.items() if v})


@router.get("/history")
async def payment_history(
    user: User = Depends(get_current_user),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    status: str | None = None,
):
    return await payments_service.payment_history(user.id, limit, offset, status)


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    body: RefundRequest,
    user: User = Depends(require_admin),
):
    """Admin: refund a paid payment."""
    return await payments_service.process_refund(payment_id, body.amount, body.reason)


@router.post("/webhook")
async def razorpay_webhook(request: Request, x_razorpay_signature: str = Header(..., alias="X-Razorpay-Signature")):
    """Razorpay webhook: payment.captured / payment.failed (idempotent)."""
    body = await request.body()
    await payments_service.handle_webhook(body, x_razorpay_signature)
    return {"status": "ok"}
