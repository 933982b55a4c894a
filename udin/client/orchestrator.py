"""Checkout saga: ledger entry, gateway charge, ingestion, draft cleanup.

The gateway cannot take part in a database transaction, so the flow is a
sequence of await points with compensating steps. Primary-path failures
(pricing, order creation, checkout) stop the flow and are reported; ledger
bookkeeping is best-effort and, when it fails, is parked in the draft-store
outbox and replayed at the start of the next run.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from udin.client.api import UdinApiClient
from udin.client.checkout import CheckoutGateway, CheckoutOptions, CheckoutResult, Prefill
from udin.client.config import ClientSettings
from udin.client.draft_store import DraftFile, DraftStore, EmptyDraftStore, validate_selection
from udin.client.errors import (
    AmountTooLowError,
    ApiConflictError,
    ApiError,
    ApiNotFoundError,
    ApiValidationError,
    DraftStoreError,
    FlowInProgressError,
    GatewayDismissed,
    GatewayFailed,
    InvalidOrderError,
)
from udin.client.session import SessionContext
from udin.core.exceptions import ValidationError
from udin.core.logging import get_logger
from udin.services.pricing import GST_RATE, OrderCalculation, OrderLine, calculate_order, to_minor_units, validate_order

log = get_logger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    TRANSACTION_CREATED = "transaction_created"
    GATEWAY_OPENED = "gateway_opened"
    GATEWAY_CONFIRMED = "gateway_confirmed"
    UPLOADING = "uploading"
    DONE = "done"
    GATEWAY_DISMISSED = "gateway_dismissed"
    GATEWAY_FAILED = "gateway_failed"
    UPLOAD_FAILED = "upload_failed"


class FlowResult(BaseModel):
    state: FlowState = FlowState.IDLE
    history: list[FlowState] = Field(default_factory=list)
    transaction_id: str | None = None
    order_id: str | None = None
    payment_id: str | None = None
    amount_paise: int = 0
    upload: dict[str, Any] | None = None
    file_errors: list[str] = Field(default_factory=list)
    error: str | None = None
    draft_store_cleared: bool = False
    needs_manual_reconciliation: bool = False

    def move(self, state: FlowState) -> None:
        self.state = state
        self.history.append(state)


def merge_files(session_files: list[DraftFile], stored: list[DraftFile]) -> list[DraftFile]:
    """Union by file id; the in-memory copy wins over the stored one."""
    merged = {f.id: f for f in stored}
    merged.update({f.id: f for f in session_files})
    return list(merged.values())


def order_lines(files: list[DraftFile]) -> list[OrderLine]:
    return [
        OrderLine(document_type_id=f.document_type_id or "", tier=f.tier, quantity=1, file_id=f.id, file_name=f.name)
        for f in files
    ]


class ReconciliationOrchestrator:
    def __init__(
        self,
        api: UdinApiClient,
        checkout: CheckoutGateway,
        draft_store: DraftStore | EmptyDraftStore,
        settings: ClientSettings | None = None,
    ):
        self.api = api
        self.checkout = checkout
        self.draft_store = draft_store
        self.settings = settings or api.settings

    async def run(self, session: SessionContext) -> FlowResult:
        """Run one checkout for the session's files. Rejects re-entry while a run is in flight."""
        if session.in_progress:
            raise FlowInProgressError()
        session.in_progress = True
        try:
            return await self._run(session)
        finally:
            session.in_progress = False

    async def _run(self, session: SessionContext) -> FlowResult:
        result = FlowResult()
        result.history.append(FlowState.IDLE)
        await self.flush_outbox()

        files = self._collect_files(session)
        _, rejected = validate_selection([], files)
        if rejected:
            raise InvalidOrderError("Selected files are not valid", rejected)
        lines = order_lines(files)
        calc = self._price(lines)
        result.amount_paise = to_minor_units(calc.total_amount)
        if result.amount_paise < self.settings.min_charge_paise:
            raise AmountTooLowError(result.amount_paise, self.settings.min_charge_paise)

        # 1. ledger entry, best-effort
        result.transaction_id = await self._create_transaction(session, calc, result.amount_paise)
        result.move(FlowState.TRANSACTION_CREATED)

        # 2. gateway: server order, overlay, server verification
        try:
            order = await self.api.create_order(
                [line.dump() for line in lines],
                transaction_id=result.transaction_id,
                notes={"email": session.customer.email, "phone": session.customer.phone},
            )
        except ApiError as e:
            log.warning("checkout_order_failed", error=e.message)
            await self._mark_transaction(result.transaction_id, {"status": "failed", "failureReason": e.message})
            result.error = e.message
            result.move(FlowState.GATEWAY_FAILED)
            return result
        result.order_id = order["orderId"]
        options = self._checkout_options(session, order, result.transaction_id)

        result.move(FlowState.GATEWAY_OPENED)
        try:
            charge = await self._open_checkout(options)
        except GatewayDismissed as e:
            log.info("checkout_dismissed", transaction_id=result.transaction_id)
            await self._mark_transaction(result.transaction_id, {"status": "cancelled", "failureReason": e.message})
            result.error = e.message
            result.move(FlowState.GATEWAY_DISMISSED)
            return result
        except GatewayFailed as e:
            log.warning("checkout_failed", transaction_id=result.transaction_id, error=e.message)
            await self._mark_transaction(result.transaction_id, {"status": "failed", "failureReason": e.message})
            result.error = e.message
            result.payment_id = e.payment_id
            result.move(FlowState.GATEWAY_FAILED)
            return result
        result.payment_id = charge.payment_id

        try:
            await self.api.verify_payment(
                charge.order_id or result.order_id,
                charge.payment_id,
                charge.signature or "",
                transaction_id=result.transaction_id,
            )
        except ApiValidationError as e:
            # the gateway says paid but the signature does not check out
            log.error("checkout_verification_rejected", payment_id=charge.payment_id, error=e.message)
            result.error = e.message
            result.needs_manual_reconciliation = True
            result.move(FlowState.GATEWAY_FAILED)
            return result
        except ApiError as e:
            # charge went through; the gateway webhook confirms it server-side
            log.warning("checkout_verification_deferred", payment_id=charge.payment_id, error=e.message)
        result.move(FlowState.GATEWAY_CONFIRMED)

        # 3. ledger -> paid, best-effort
        await self._mark_transaction(
            result.transaction_id,
            {
                "status": "paid",
                "paymentId": charge.payment_id,
                "paidAt": datetime.utcnow().isoformat(),
                "meta": {"flow": "checkout", "orderId": result.order_id},
            },
        )

        # 4. ingestion
        # the priced selection is uploaded; drafts added since checkout opened wait for the next run
        result.move(FlowState.UPLOADING)
        snapshot = {
            "items": [b.dump() for b in calc.breakdown],
            "subtotal": calc.subtotal,
            "bulkDiscount": calc.bulk_discount,
            "gstAmount": calc.gst_amount,
            "totalAmount": calc.total_amount,
            "taxRate": float(GST_RATE),
            "transactionId": result.transaction_id,
            "paymentId": charge.payment_id,
            "orderId": result.order_id,
        }
        try:
            upload = await self.api.upload_files(
                files,
                customer_info=session.customer.dump(),
                pricing_snapshot={k: v for k, v in snapshot.items() if v is not None},
                metadata={
                    "paymentResult": {"paymentId": charge.payment_id, "orderId": result.order_id, "mode": "checkout"},
                    "timestamp": datetime.utcnow().isoformat(),
                },
                upload_timestamp=datetime.utcnow().isoformat(),
            )
        except ApiError as e:
            log.error("checkout_upload_failed", payment_id=charge.payment_id, error=e.message)
            result.error = e.message
            result.needs_manual_reconciliation = True
            result.move(FlowState.UPLOAD_FAILED)
            return result

        result.upload = upload
        result.file_errors = list(upload.get("errors") or [])
        if upload.get("status") == "failed" or not upload.get("processedFiles"):
            result.error = "No documents could be stored; the payment will be reconciled manually"
            result.needs_manual_reconciliation = True
            result.move(FlowState.UPLOAD_FAILED)
            return result

        # 5. confirmed ingestion: drafts are no longer needed
        uploaded = {f.id for f in files}
        try:
            late = [f for f in self.draft_store.list() if f.id not in uploaded]
            self.draft_store.clear()
            result.draft_store_cleared = True
            if late:
                self.draft_store.put(late)
        except DraftStoreError as e:
            log.warning("draft_store_clear_failed", error=e.message)
        session.files = [f for f in session.files if f.id not in uploaded]
        result.move(FlowState.DONE)
        log.info(
            "checkout_done",
            transaction_id=result.transaction_id,
            processed=upload.get("processedFiles"),
            file_errors=len(result.file_errors),
        )
        return result

    def _collect_files(self, session: SessionContext) -> list[DraftFile]:
        try:
            stored = self.draft_store.list()
        except DraftStoreError as e:
            log.warning("draft_store_read_failed", error=e.message)
            stored = []
        return merge_files(session.files, stored)

    def _price(self, lines: list[OrderLine]) -> OrderCalculation:
        problems = validate_order(lines)
        if problems:
            raise InvalidOrderError("Order is not valid", problems)
        try:
            return calculate_order(lines)
        except ValidationError as e:
            raise InvalidOrderError(e.message) from e

    def _checkout_options(self, session: SessionContext, order: dict[str, Any], transaction_id: str | None) -> CheckoutOptions:
        customer = session.customer
        return CheckoutOptions(
            key=order.get("keyId", ""),
            amount=order["amount"],
            currency=order.get("currency", self.settings.currency),
            name=self.settings.checkout_name,
            description=self.settings.checkout_description,
            prefill=Prefill(name=customer.display_name, email=customer.email or "", contact=customer.phone or ""),
            notes={"userId": customer.user_id or "", "txId": transaction_id or ""},
            theme={"color": self.settings.checkout_theme_color},
            order_id=order["orderId"],
        )

    async def _open_checkout(self, options: CheckoutOptions) -> CheckoutResult:
        try:
            return await self.checkout.open(options)
        except GatewayFailed as e:
            if not self.settings.auto_retry_gateway_failure:
                raise
            log.info("checkout_retry", order_id=options.order_id, error=e.message)
            return await self.checkout.open(options)

    async def _create_transaction(self, session: SessionContext, calc: OrderCalculation, amount_paise: int) -> str | None:
        payload = {
            "provider": "razorpay",
            "status": "initiated",
            "currency": self.settings.currency,
            "amount": calc.total_amount,
            "amountPaise": amount_paise,
            "items": [b.dump() for b in calc.breakdown],
            "amounts": {
                "subtotal": calc.subtotal,
                "bulkDiscount": calc.bulk_discount,
                "gstAmount": calc.gst_amount,
                "totalAmount": calc.total_amount,
                "taxRate": float(GST_RATE),
            },
            "notes": {k: v for k, v in {"email": session.customer.email, "phone": session.customer.phone}.items() if v},
        }
        try:
            created = await self.api.create_transaction(payload)
        except ApiError as e:
            log.warning("transaction_create_failed", error=e.message)
            return None
        return created.get("transactionId") or created.get("id")

    async def _mark_transaction(self, transaction_id: str | None, patch: dict[str, Any]) -> None:
        """Best-effort ledger PATCH; undelivered patches go to the outbox."""
        if not transaction_id:
            return
        try:
            await self.api.update_transaction(transaction_id, patch)
        except (ApiConflictError, ApiNotFoundError) as e:
            log.warning("transaction_update_rejected", transaction_id=transaction_id, error=e.message)
        except ApiError as e:
            log.warning("transaction_update_failed", transaction_id=transaction_id, error=e.message)
            try:
                self.draft_store.push_outbox(transaction_id, patch, e.message)
            except DraftStoreError as store_error:
                log.warning("outbox_write_failed", transaction_id=transaction_id, error=store_error.message)

    async def flush_outbox(self) -> int:
        """Replay parked ledger patches. Returns delivered count.

        Conflicts and unknown ids are dropped, as is an entry whose failed
        attempts reach ``outbox_max_attempts``.
        """
        try:
            entries = self.draft_store.pending_outbox()
        except DraftStoreError as e:
            log.warning("outbox_read_failed", error=e.message)
            return 0
        delivered = 0
        for entry in entries:
            try:
                await self.api.update_transaction(entry.transaction_id, entry.patch)
                delivered += 1
            except (ApiConflictError, ApiNotFoundError) as e:
                log.info("outbox_entry_dropped", transaction_id=entry.transaction_id, error=e.message)
            except ApiError as e:
                if entry.attempts + 1 < self.settings.outbox_max_attempts:
                    try:
                        self.draft_store.bump_outbox(entry.id, e.message)
                    except DraftStoreError as store_error:
                        log.warning("outbox_bump_failed", entry_id=entry.id, error=store_error.message)
                    continue
                log.error(
                    "outbox_entry_abandoned",
                    transaction_id=entry.transaction_id,
                    attempts=entry.attempts + 1,
                    error=e.message,
                )
            try:
                self.draft_store.drop_outbox(entry.id)
            except DraftStoreError as e:
                log.warning("outbox_drop_failed", entry_id=entry.id, error=e.message)
        return delivered
