"""Transaction ledger: one record per payment attempt, owner-scoped, forward-only."""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from beanie import PydanticObjectId
from bson import ObjectId
from pydantic import ConfigDict, Discriminator, Field, Tag, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from udin.core.exceptions import NotFoundError, StatusRegressionError, ValidationError, jsonable_errors
from udin.core.logging import get_logger
from udin.core.pagination import page, paginate
from udin.core.schemas import CamelModel
from udin.models.payment import Payment
from udin.models.transaction import (
    FAILURE_STATUSES,
    STATUS_RANK,
    TERMINAL_STATUSES,
    Transaction,
    TransactionStatus,
)
from udin.services.pricing import GST_RATE, to_minor_units

log = get_logger(__name__)


class _StrictCamel(CamelModel):
    model_config = ConfigDict(extra="forbid")


class TransactionAmounts(_StrictCamel):
    subtotal: float = 0.0
    bulk_discount: float = 0.0
    gst_amount: float = 0.0
    total_amount: float = 0.0
    tax_rate: float = float(GST_RATE)


class CartTransactionCreate(_StrictCamel):
    """Current client shape: created before the checkout opens."""

    provider: Literal["razorpay"] = "razorpay"
    status: Literal["initiated", "pending"] = "initiated"
    user_id: str | None = None  # ignored, ownership comes from the token
    currency: str = "INR"
    amount: float = Field(gt=0)
    amount_paise: int = Field(gt=0)
    items: list[dict[str, Any]] = Field(default_factory=list)
    amounts: TransactionAmounts = Field(default_factory=TransactionAmounts)
    notes: dict[str, Any] = Field(default_factory=dict)


class LegacyTransactionCreate(_StrictCamel):
    """Older clients: order created first, transaction keyed by the gateway order id."""

    order_id: str
    amount: float = Field(gt=0)
    currency: str = "INR"
    status: Literal["initiated", "pending"] = "pending"
    items: list[dict[str, Any]] = Field(default_factory=list)
    customer: dict[str, Any] | None = None
    tax: dict[str, Any] | None = None
    subtotal: float | None = None
    description: str | None = None
    document_id: str | None = None


def _transaction_shape(v: Any) -> str | None:
    if isinstance(v, dict):
        if "provider" in v or "amounts" in v or "amountPaise" in v or "amount_paise" in v:
            return "cart"
        if "orderId" in v or "order_id" in v:
            return "legacy"
        return None
    if isinstance(v, CartTransactionCreate):
        return "cart"
    if isinstance(v, LegacyTransactionCreate):
        return "legacy"
    return None


TransactionCreate = Annotated[
    Union[
        Annotated[CartTransactionCreate, Tag("cart")],
        Annotated[LegacyTransactionCreate, Tag("legacy")],
    ],
    Discriminator(_transaction_shape),
]

_create_adapter = TypeAdapter(TransactionCreate)


class TransactionPatch(_StrictCamel):
    status: TransactionStatus | None = None
    payment_id: str | None = None
    failure_reason: str | None = None
    paid_at: datetime | None = None
    meta: dict[str, Any] | None = None


def parse_transaction_create(data: Any) -> CartTransactionCreate | LegacyTransactionCreate:
    """Validate a create body against the known shapes; anything else is a 400."""
    try:
        return _create_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError("Unrecognized transaction payload", details={"errors": jsonable_errors(e.errors())}) from e


def check_transition(current: str, requested: str) -> None:
    """Allow idempotent repeats and forward moves; reject anything that goes back."""
    if requested == current:
        return
    regression = False
    if current in TERMINAL_STATUSES:
        regression = True
    elif requested in FAILURE_STATUSES:
        # once money is captured the attempt cannot be marked failed
        regression = STATUS_RANK[current] >= STATUS_RANK["paid"]
    elif STATUS_RANK[requested] < STATUS_RANK[current]:
        regression = True
    if regression:
        log.error("transaction_status_regression", current=current, requested=requested)
        raise StatusRegressionError(current, requested)


def serialize_transaction(trx: Transaction) -> dict[str, Any]:
    return {
        "id": str(trx.id),
        "transactionId": trx.transaction_id,
        "type": trx.type,
        "provider": trx.provider,
        "status": trx.status,
        "amount": trx.amount,
        "amountPaise": trx.amount_paise,
        "currency": trx.currency,
        "description": trx.description,
        "items": trx.items,
        "amounts": trx.amounts,
        "razorpayData": {to_camel(k): v for k, v in trx.razorpay_data.model_dump(exclude_none=True).items()},
        "paymentRef": str(trx.payment_ref) if trx.payment_ref else None,
        "failureReason": trx.failure_reason,
        "paidAt": trx.paid_at.isoformat() if trx.paid_at else None,
        "metadata": trx.metadata,
        "reconciliationStatus": trx.reconciliation_status,
        "createdAt": trx.created_at.isoformat(),
        "updatedAt": trx.updated_at.isoformat(),
    }


async def create_transaction(
    user_id: PydanticObjectId,
    payload: CartTransactionCreate | LegacyTransactionCreate,
) -> dict[str, str]:
    """Record a payment attempt before any money moves."""
    if isinstance(payload, CartTransactionCreate):
        if abs(to_minor_units(payload.amount) - payload.amount_paise) > 1:
            raise ValidationError("amountPaise does not match amount")
        trx = Transaction(
            transaction_id=Transaction.generate_transaction_id(),
            user_id=user_id,
            provider=payload.provider,
            status=payload.status,
            amount=payload.amount,
            amount_paise=payload.amount_paise,
            currency=payload.currency,
            description="Cart transaction initiated",
            items=payload.items,
            amounts=payload.amounts.model_dump(by_alias=True),
            notes=payload.notes,
        )
    else:
        trx = Transaction(
            transaction_id=Transaction.generate_transaction_id(),
            user_id=user_id,
            status=payload.status,
            amount=payload.amount,
            amount_paise=to_minor_units(payload.amount),
            currency=payload.currency,
            description=payload.description or "Cart transaction initiated",
            items=payload.items,
            metadata={
                k: v
                for k, v in {
                    "customer": payload.customer,
                    "tax": payload.tax,
                    "subtotal": payload.subtotal,
                    "documentId": payload.document_id,
                }.items()
                if v is not None
            },
        )
        trx.razorpay_data.order_id = payload.order_id
    await trx.insert()
    log.info("transaction_created", transaction_id=trx.transaction_id, amount=trx.amount, status=trx.status)
    return {"transactionId": trx.transaction_id, "id": str(trx.id)}


async def find_owned(user_id: PydanticObjectId, transaction_id: str) -> Transaction:
    """Look up by public id (or Mongo id); another user's record is indistinguishable from none."""
    trx = await Transaction.find_one(
        Transaction.transaction_id == transaction_id,
        Transaction.user_id == user_id,
    )
    if trx is None and ObjectId.is_valid(transaction_id):
        trx = await Transaction.find_one(
            Transaction.id == PydanticObjectId(transaction_id),
            Transaction.user_id == user_id,
        )
    if trx is None:
        raise NotFoundError("Transaction not found")
    return trx


async def get_transaction(user_id: PydanticObjectId, transaction_id: str) -> dict[str, Any]:
    return serialize_transaction(await find_owned(user_id, transaction_id))


async def update_status(
    user_id: PydanticObjectId,
    transaction_id: str,
    patch: TransactionPatch,
) -> dict[str, Any]:
    """Apply a status change and merge metadata; keys not in ``meta`` are preserved."""
    trx = await find_owned(user_id, transaction_id)
    if patch.status:
        check_transition(trx.status, patch.status)

    if patch.payment_id:
        trx.razorpay_data.payment_id = patch.payment_id
        if trx.razorpay_data.order_id and trx.payment_ref is None:
            payment = await Payment.find_one(
                Payment.user_id == user_id,
                Payment.gateway_order_id == trx.razorpay_data.order_id,
            )
            if payment:
                trx.payment_ref = payment.id
    if patch.failure_reason:
        trx.failure_reason = patch.failure_reason
    if patch.paid_at:
        trx.paid_at = patch.paid_at
    if patch.meta:
        trx.metadata = {**trx.metadata, **patch.meta}
    if patch.status:
        trx.status = patch.status
    trx.updated_at = datetime.utcnow()
    await trx.save()
    log.info("transaction_updated", transaction_id=trx.transaction_id, status=trx.status)
    return {"transactionId": trx.transaction_id, "status": trx.status, "metadata": trx.metadata}


async def attach_order(
    user_id: PydanticObjectId,
    transaction_id: str,
    order_id: str,
    payment_ref: PydanticObjectId,
) -> None:
    """Link the gateway order created for this attempt; initiated -> pending."""
    trx = await find_owned(user_id, transaction_id)
    trx.razorpay_data.order_id = order_id
    trx.payment_ref = payment_ref
    if trx.status == "initiated":
        trx.status = "pending"
    trx.updated_at = datetime.utcnow()
    await trx.save()


async def record_payment(user_id: PydanticObjectId, transaction_id: str, payment: Payment) -> Transaction:
    """Mark the attempt paid from a verified Payment. Never moves a record backwards.

    A ``failed`` attempt whose own gateway order is later captured (overlay
    retry) becomes ``paid``; a cancelled one, or a capture for another order,
    is flagged ``unmatched`` for reconciliation.
    """
    trx = await find_owned(user_id, transaction_id)
    same_order = trx.razorpay_data.order_id in (None, payment.gateway_order_id)
    trx.payment_ref = payment.id
    trx.razorpay_data.order_id = payment.gateway_order_id
    trx.razorpay_data.payment_id = payment.gateway_payment_id
    trx.razorpay_data.signature = payment.signature
    trx.razorpay_data.method = payment.payment_method
    if trx.status == "failed" and same_order:
        log.info("transaction_failure_superseded", transaction_id=trx.transaction_id, order_id=payment.gateway_order_id)
        trx.status = "paid"
        trx.failure_reason = None
    if trx.status in FAILURE_STATUSES:
        # captured after the client gave up on this attempt
        trx.reconciliation_status = "unmatched"
        log.error(
            "payment_captured_on_closed_transaction",
            transaction_id=trx.transaction_id,
            status=trx.status,
            gateway_payment_id=payment.gateway_payment_id,
        )
    else:
        if STATUS_RANK[trx.status] < STATUS_RANK["paid"]:
            trx.status = "paid"
        trx.paid_at = trx.paid_at or payment.payment_date
        trx.reconciliation_status = "matched"
    trx.updated_at = datetime.utcnow()
    await trx.save()
    return trx


async def list_transactions(
    user_id: PydanticObjectId,
    limit: int = 20,
    offset: int = 0,
    status: str | None = None,
) -> dict[str, Any]:
    limit, offset = paginate(limit, offset)
    filters = [Transaction.user_id == user_id]
    if status:
        filters.append(Transaction.status == status)
    query = Transaction.find(*filters)
    total = await query.count()
    items = await Transaction.find(*filters).sort(-Transaction.created_at).skip(offset).limit(limit).to_list()
    return page([serialize_transaction(t) for t in items], limit, offset, total)
