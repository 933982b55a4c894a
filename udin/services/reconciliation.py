"""Payment captured without deliverable: explicit cases an operator (or auto-refund) closes."""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pymongo.errors import PyMongoError

from udin.core.audit import log_event
from udin.core.config import get_settings
from udin.core.exceptions import AppError, BadRequestError, NotFoundError
from udin.core.logging import get_logger
from udin.core.pagination import page, paginate
from udin.models.payment import Payment
from udin.models.reconciliation_case import ReconciliationCase
from udin.models.transaction import Transaction
from udin.services import payments

log = get_logger(__name__)


def serialize_case(case: ReconciliationCase) -> dict[str, Any]:
    return {
        "id": str(case.id),
        "userId": str(case.user_id),
        "kind": case.kind,
        "transactionId": case.transaction_id,
        "paymentId": str(case.payment_id) if case.payment_id else None,
        "gatewayPaymentId": case.gateway_payment_id,
        "uploadId": case.upload_id,
        "amount": case.amount,
        "reason": case.reason,
        "status": case.status,
        "resolutionNote": case.resolution_note,
        "createdAt": case.created_at.isoformat(),
        "resolvedAt": case.resolved_at.isoformat() if case.resolved_at else None,
    }


async def _payment_for(trx: Transaction) -> Payment | None:
    if trx.payment_ref:
        payment = await Payment.get(trx.payment_ref)
        if payment:
            return payment
    if trx.razorpay_data.order_id:
        return await Payment.find_one(Payment.gateway_order_id == trx.razorpay_data.order_id)
    return None


async def open_case(trx: Transaction, reason: str, upload_id: str | None = None) -> ReconciliationCase:
    """Record that ``trx`` was charged but nothing was delivered. One open case per transaction."""
    existing = await ReconciliationCase.find_one(
        ReconciliationCase.transaction_id == trx.transaction_id,
        ReconciliationCase.status == "open",
    )
    if existing:
        return existing
    payment = await _payment_for(trx)
    case = ReconciliationCase(
        user_id=trx.user_id,
        transaction_id=trx.transaction_id,
        payment_id=payment.id if payment else None,
        gateway_payment_id=(payment.gateway_payment_id if payment else None) or trx.razorpay_data.payment_id,
        upload_id=upload_id,
        amount=payment.amount if payment else trx.amount,
        reason=reason,
    )
    await case.insert()
    log.error(
        "payment_captured_without_deliverable",
        case_id=str(case.id),
        transaction_id=trx.transaction_id,
        upload_id=upload_id,
        reason=reason,
    )
    await log_event(
        str(trx.user_id), "reconciliation_case_opened", "transaction", trx.transaction_id,
        {"caseId": str(case.id), "uploadId": upload_id, "reason": reason},
    )

    if get_settings().auto_refund_undelivered and case.payment_id:
        try:
            await refund_case(str(case.id), note="auto-refund: nothing delivered")
        except (AppError, PyMongoError) as e:
            log.warning("auto_refund_failed", case_id=str(case.id), error=str(e))
    return case


async def _get_case(case_id: str) -> ReconciliationCase:
    case = await ReconciliationCase.get(PydanticObjectId(case_id)) if PydanticObjectId.is_valid(case_id) else None
    if not case:
        raise NotFoundError("Reconciliation case not found")
    return case


async def list_cases(status: str | None = "open", limit: int = 20, offset: int = 0) -> dict[str, Any]:
    limit, offset = paginate(limit, offset)
    filters = [ReconciliationCase.status == status] if status else []
    total = await ReconciliationCase.find(*filters).count()
    items = (
        await ReconciliationCase.find(*filters)
        .sort(-ReconciliationCase.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )
    return page([serialize_case(c) for c in items], limit, offset, total)


async def refund_case(case_id: str, note: str | None = None, actor_id: str | None = None) -> dict[str, Any]:
    case = await _get_case(case_id)
    if case.status != "open":
        raise BadRequestError(f"Case is already {case.status}")
    if not case.payment_id:
        raise BadRequestError("Case has no payment to refund")
    refund = await payments.process_refund(str(case.payment_id), reason=note or case.reason)
    case.status = "refunded"
    case.resolution_note = note or f"Refunded {refund['refundId']}"
    case.resolved_at = datetime.utcnow()
    await case.save()
    await log_event(
        actor_id, "reconciliation_case_refunded", "reconciliation_case", str(case.id),
        {"refundId": refund["refundId"], "transactionId": case.transaction_id},
    )
    return serialize_case(case)


async def resolve_case(case_id: str, note: str, actor_id: str | None = None) -> dict[str, Any]:
    case = await _get_case(case_id)
    if case.status != "open":
        raise BadRequestError(f"Case is already {case.status}")
    case.status = "resolved"
    case.resolution_note = note
    case.resolved_at = datetime.utcnow()
    await case.save()
    log.info("reconciliation_case_resolved", case_id=str(case.id), transaction_id=case.transaction_id)
    await log_event(
        actor_id, "reconciliation_case_resolved", "reconciliation_case", str(case.id), {"note": note},
    )
    return serialize_case(case)
