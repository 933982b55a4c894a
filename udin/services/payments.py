"""Gateway orders, payment verification, refunds and webhooks."""

import json
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pydantic import Field, model_validator
from pymongo.errors import PyMongoError

from udin.core.audit import log_event
from udin.core.config import get_settings
from udin.core.exceptions import AppError, BadRequestError, GatewayError, NotFoundError, ValidationError
from udin.core.logging import get_logger
from udin.core.pagination import page, paginate
from udin.core.schemas import CamelModel
from udin.models.document import DocumentRecord
from udin.models.payment import Payment
from udin.models.transaction import Transaction
from udin.models.user import User
from udin.services import compensations, ledger
from udin.services.gateway import get_gateway
from udin.services.pricing import OrderLine, calculate_order, to_minor_units

log = get_logger(__name__)


class CreateOrderRequest(CamelModel):
    lines: list[OrderLine] = Field(min_length=1)
    currency: str = "INR"
    notes: dict[str, Any] = Field(default_factory=dict)
    transaction_id: str | None = None
    description: str = "Document Processing"


class VerifyPaymentRequest(CamelModel):
    """Accepts ``orderId/paymentId/signature`` or the gateway's ``razorpay_*`` names."""

    order_id: str
    payment_id: str
    signature: str
    transaction_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_gateway_names(cls, data: Any) -> Any:
        if isinstance(data, dict) and "razorpay_order_id" in data:
            data = dict(data)
            data.setdefault("orderId", data.pop("razorpay_order_id"))
            data.setdefault("paymentId", data.pop("razorpay_payment_id", None))
            data.setdefault("signature", data.pop("razorpay_signature", None))
        return data


def serialize_payment(p: Payment) -> dict[str, Any]:
    return {
        "id": str(p.id),
        "orderId": p.gateway_order_id,
        "paymentId": p.gateway_payment_id,
        "amount": p.amount,
        "currency": p.currency,
        "status": p.status,
        "paymentMethod": p.payment_method,
        "paymentDate": p.payment_date.isoformat() if p.payment_date else None,
        "fees": p.fees,
        "netAmount": p.net_amount,
        "transactionId": p.transaction_id,
        "refundId": p.refund_id,
        "refundAmount": p.refund_amount,
    }


async def create_order(user: User, body: CreateOrderRequest) -> dict[str, Any]:
    """Price the cart server-side, open a gateway order and persist Payment(created)."""
    settings = get_settings()
    calc = calculate_order(body.lines)
    amount_paise = to_minor_units(calc.total_amount)
    if amount_paise < settings.min_charge_paise:
        raise ValidationError(
            f"Amount must be at least {settings.min_charge_paise / 100:.2f} {body.currency}",
            details={"amountPaise": amount_paise},
        )
    gateway = get_gateway()
    receipt = Payment.generate_receipt()
    notes = {
        "userId": str(user.id),
        "kind": "cart",
        "transactionId": body.transaction_id,
        **body.notes,
    }
    order = gateway.create_order(amount_paise, body.currency, receipt, notes)
    payment = Payment(
        user_id=user.id,
        gateway_order_id=order.id,
        amount=calc.total_amount,
        amount_paise=order.amount,
        currency=order.currency,
        description=body.description,
        receipt=receipt,
        notes={k: str(v) for k, v in notes.items() if v is not None},
        transaction_id=body.transaction_id,
        metadata={"calculation": calc.dump()},
    )
    await payment.insert()
    log.info("payment_order_created", order_id=order.id, amount_paise=order.amount)

    if body.transaction_id:
        try:
            await ledger.attach_order(user.id, body.transaction_id, order.id, payment.id)
        except (AppError, PyMongoError) as e:
            log.warning("transaction_attach_order_failed", transaction_id=body.transaction_id, error=str(e))

    return {
        "orderId": order.id,
        "amount": order.amount,
        "currency": order.currency,
        "receipt": order.receipt,
        "keyId": gateway.key_id,
        "calculation": calc.dump(),
    }


async def _mark_paid(payment: Payment, gateway_payment_id: str, signature: str | None) -> None:
    """Flip Payment to paid; fee bookkeeping is best-effort."""
    payment.gateway_payment_id = gateway_payment_id
    payment.signature = signature
    payment.status = "paid"
    payment.payment_date = datetime.utcnow()
    try:
        details = get_gateway().fetch_payment(gateway_payment_id)
        payment.payment_method = details.method
        payment.fees = details.fee
        payment.net_amount = round(payment.amount - details.fee / 100, 2)
    except GatewayError as e:
        log.warning("payment_details_unavailable", payment_id=gateway_payment_id, error=e.message)
    payment.updated_at = datetime.utcnow()
    await payment.save()

    if payment.document_id:
        doc = await DocumentRecord.get(payment.document_id)
        if doc and doc.status == "uploaded":
            doc.status = "processing"
            doc.payment_id = payment.id
            await doc.save()


async def link_transaction(payment: Payment, transaction_id: str | None) -> None:
    """Best-effort: reflect a verified payment on its ledger entry, else park it for replay."""
    if not transaction_id:
        return
    try:
        await ledger.record_payment(payment.user_id, transaction_id, payment)
    except NotFoundError:
        log.warning("transaction_link_not_found", transaction_id=transaction_id)
    except (AppError, PyMongoError) as e:
        log.warning("transaction_link_failed", transaction_id=transaction_id, error=str(e))
        await compensations.enqueue(
            "link_payment",
            payment.user_id,
            {"transaction_id": transaction_id, "payment_id": str(payment.id)},
            error=str(e),
        )


async def verify_payment(user: User, body: VerifyPaymentRequest, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
    """Check the checkout signature, mark the Payment paid and link the ledger entry."""
    gateway = get_gateway()
    if not gateway.verify_signature(body.order_id, body.payment_id, body.signature):
        raise BadRequestError("Invalid payment signature")
    payment = await Payment.find_one(
        Payment.gateway_order_id == body.order_id,
        Payment.user_id == user.id,
    )
    if not payment:
        raise NotFoundError("Payment record not found")

    if payment.status == "paid" and payment.gateway_payment_id == body.payment_id:
        return serialize_payment(payment)
    if payment.status not in ("created", "pending", "failed"):
        raise BadRequestError(f"Payment is already {payment.status}")

    if metadata:
        payment.metadata = {**payment.metadata, **metadata}
    await _mark_paid(payment, body.payment_id, body.signature)
    log.info("payment_verified", order_id=payment.gateway_order_id, payment_id=body.payment_id)
    await log_event(
        str(user.id), "payment_verified", "payment", str(payment.id),
        {"orderId": payment.gateway_order_id, "amount": payment.amount},
    )
    await link_transaction(payment, body.transaction_id or payment.transaction_id)
    return serialize_payment(payment)


async def process_refund(payment_id: str, amount: float | None = None, reason: str | None = None) -> dict[str, Any]:
    """Refund a paid Payment (paid -> refunded, one way) and write a refund Transaction."""
    payment = await Payment.get(PydanticObjectId(payment_id)) if PydanticObjectId.is_valid(payment_id) else None
    if not payment:
        raise NotFoundError("Payment not found")
    if payment.status != "paid":
        raise BadRequestError("Only paid payments can be refunded")
    refund_amount = payment.amount if amount is None else amount
    if refund_amount <= 0 or refund_amount > payment.amount:
        raise ValidationError("Refund amount must be positive and not exceed the payment amount")

    refund = get_gateway().create_refund(
        payment.gateway_payment_id,
        to_minor_units(refund_amount),
        {"reason": reason, "orderId": payment.gateway_order_id},
    )
    payment.status = "refunded"
    payment.refund_id = refund.refund_id
    payment.refund_amount = refund_amount
    payment.refund_reason = reason
    payment.refund_date = datetime.utcnow()
    payment.updated_at = datetime.utcnow()
    await payment.save()

    trx = Transaction(
        transaction_id=Transaction.generate_transaction_id(),
        user_id=payment.user_id,
        type="refund",
        status="completed",
        amount=-refund_amount,
        amount_paise=-to_minor_units(refund_amount),
        currency=payment.currency,
        description=f"Refund processed{f' - {reason}' if reason else ''}",
        payment_ref=payment.id,
    )
    trx.razorpay_data.payment_id = payment.gateway_payment_id
    trx.razorpay_data.refund_id = refund.refund_id
    await trx.insert()
    log.info("refund_processed", payment_id=str(payment.id), refund_id=refund.refund_id, amount=refund_amount)
    await log_event(
        str(payment.user_id), "refund_processed", "payment", str(payment.id),
        {"refundId": refund.refund_id, "amount": refund_amount, "reason": reason},
    )
    return {"refundId": refund.refund_id, "amount": refund_amount, "status": "completed"}


async def handle_webhook(payload: bytes, signature: str) -> None:
    """Server-side confirmation path: payment.captured / payment.failed, idempotent."""
    gateway = get_gateway()
    if not gateway.verify_webhook_signature(payload, signature):
        raise BadRequestError("Invalid webhook signature")
    try:
        data = json.loads(payload.decode())
    except ValueError as e:
        raise BadRequestError("Malformed webhook payload") from e
    event = data.get("event")
    entity = data.get("payload", {}).get("payment", {}).get("entity", {})
    order_id = entity.get("order_id")
    if event not in ("payment.captured", "payment.failed") or not order_id:
        return
    payment = await Payment.find_one(Payment.gateway_order_id == order_id)
    if not payment:
        log.warning("webhook_unknown_order", order_id=order_id, event=event)
        return

    if event == "payment.captured":
        if payment.status in ("paid", "refunded"):
            return
        payment.gateway_payment_id = entity.get("id")
        payment.status = "paid"
        payment.payment_method = entity.get("method")
        payment.fees = entity.get("fee") or 0
        payment.net_amount = round(payment.amount - payment.fees / 100, 2)
        payment.payment_date = datetime.utcnow()
        payment.updated_at = datetime.utcnow()
        await payment.save()
        log.info("webhook_payment_captured", order_id=order_id, payment_id=payment.gateway_payment_id)
        await log_event(str(payment.user_id), "payment_captured", "payment", str(payment.id), {"amount": payment.amount})
        await link_transaction(payment, payment.transaction_id)
        return

    if payment.status in ("created", "pending"):
        payment.status = "failed"
        payment.failure_reason = entity.get("error_description") or entity.get("error_reason")
        payment.updated_at = datetime.utcnow()
        await payment.save()
        log.info("webhook_payment_failed", order_id=order_id, reason=payment.failure_reason)
        if payment.transaction_id:
            # the order stays payable (overlay retry), so the ledger entry is not closed here
            try:
                await ledger.update_status(
                    payment.user_id,
                    payment.transaction_id,
                    ledger.TransactionPatch(
                        failure_reason=payment.failure_reason,
                        meta={"lastPaymentFailure": {"paymentId": entity.get("id"), "reason": payment.failure_reason}},
                    ),
                )
            except (AppError, PyMongoError) as e:
                log.warning("transaction_fail_update_skipped", transaction_id=payment.transaction_id, error=str(e))


async def payment_history(
    user_id: PydanticObjectId,
    limit: int = 10,
    offset: int = 0,
    status: str | None = None,
) -> dict[str, Any]:
    limit, offset = paginate(limit, offset)
    filters = [Payment.user_id == user_id]
    if status:
        filters.append(Payment.status == status)
    total = await Payment.find(*filters).count()
    items = await Payment.find(*filters).sort(-Payment.created_at).skip(offset).limit(limit).to_list()
    return page([serialize_payment(p) for p in items], limit, offset, total)
