import re

import pytest
import requests
from google.api_core import exceptions as gcs_exceptions
from pymongo.errors import ServerSelectionTimeoutError

from conftest import FakeBucket, MemoryStorage, auth_headers, gcs_with
from udin.core.exceptions import StorageError, ValidationError
from udin.models.compensation_task import CompensationTask
from udin.models.document import DocumentRecord
from udin.models.payment import Payment
from udin.models.reconciliation_case import ReconciliationCase
from udin.models.transaction import Transaction
from udin.models.upload import UploadBatch
from udin.services import ledger, payments, uploads
from udin.services.pricing import OrderLine


def pdf(name: str = "statement.pdf", fill: bytes = b"A", size: int = 2048) -> uploads.IncomingFile:
    return uploads.IncomingFile(filename=name, content=b"%PDF" + fill * size, content_type="application/pdf")


async def paid_transaction(user, gateway) -> str:
    tid = (
        await ledger.create_transaction(
            user.id,
            ledger.parse_transaction_create({"provider": "razorpay", "amount": 590.0, "amountPaise": 59000}),
        )
    )["transactionId"]
    order = await payments.create_order(
        user, payments.CreateOrderRequest(lines=[OrderLine(document_type_id="gst-certificate")], transaction_id=tid)
    )
    await payments.verify_payment(
        user,
        payments.VerifyPaymentRequest(
            order_id=order["orderId"],
            payment_id="pay_up1",
            signature=gateway.sign(order["orderId"], "pay_up1"),
            transaction_id=tid,
        ),
    )
    return tid


async def test_single_file_batch(alice, storage):
    result = await uploads.ingest(alice.id, [pdf()], {0: {"documentTypeId": "bank-statement", "tier": "Express"}})
    assert result.status == "completed"
    assert result.processed_files == 1
    assert result.total_files == 1
    assert re.fullmatch(r"UDIN\d{10}", result.files[0].udin)

    doc = await DocumentRecord.find_one(DocumentRecord.udin == result.files[0].udin)
    assert doc.status == "uploaded"
    assert doc.document_type_id == "bank-statement"
    assert doc.tier == "Express"
    assert storage.objects[doc.storage_path].startswith(b"%PDF")

    batch = await UploadBatch.find_one(UploadBatch.upload_id == result.upload_id)
    assert batch.status == "completed"


async def test_udins_are_unique(alice):
    result = await uploads.ingest(alice.id, [pdf(f"f{i}.pdf", fill=bytes([65 + i])) for i in range(5)])
    assert len({f.udin for f in result.files}) == 5


async def test_same_content_same_user_is_duplicate(alice):
    first = await uploads.ingest(alice.id, [pdf()])
    second = await uploads.ingest(alice.id, [pdf("renamed.pdf")])
    assert second.status == "completed_with_errors"
    assert second.processed_files == 0
    assert second.errors == [f"File renamed.pdf already exists (UDIN: {first.files[0].udin})"]
    assert await DocumentRecord.find(DocumentRecord.user_id == alice.id).count() == 1


async def test_same_content_different_users(alice, bob):
    a = await uploads.ingest(alice.id, [pdf()])
    b = await uploads.ingest(bob.id, [pdf()])
    assert a.status == b.status == "completed"
    assert await DocumentRecord.find_all().count() == 2


async def test_duplicate_within_one_batch(alice):
    result = await uploads.ingest(alice.id, [pdf("a.pdf"), pdf("b.pdf")])
    assert result.status == "completed_with_errors"
    assert result.processed_files == 1
    assert "File b.pdf already exists" in result.errors[0]


async def test_per_file_validation_does_not_abort(alice):
    files = [
        pdf("ok.pdf"),
        uploads.IncomingFile(filename="tiny.pdf", content=b"x" * 100),
        uploads.IncomingFile(filename="script.exe", content=b"x" * 4096),
    ]
    result = await uploads.ingest(alice.id, files)
    assert result.status == "completed_with_errors"
    assert result.processed_files == 1
    assert len(result.errors) == 2
    assert "tiny.pdf" in result.errors[0]
    assert "script.exe" in result.errors[1]


async def test_empty_and_oversized_batches_rejected(alice):
    with pytest.raises(ValidationError):
        await uploads.ingest(alice.id, [])
    with pytest.raises(ValidationError):
        await uploads.ingest(alice.id, [pdf(f"{i}.pdf", fill=bytes([i % 250 + 1])) for i in range(31)])


async def test_race_guard_surfaces_duplicate(alice, storage, monkeypatch):
    async def nothing_found(user_id, digest):
        return None

    await uploads.ingest(alice.id, [pdf()])
    # both requests pass the existence check; the unique index decides
    monkeypatch.setattr(uploads, "_find_duplicate", nothing_found)
    second = await uploads.ingest(alice.id, [pdf("again.pdf")])
    assert second.status == "completed_with_errors"
    assert "File again.pdf already exists" in second.errors[0]
    assert await DocumentRecord.find(DocumentRecord.is_active == True).count() == 1  # noqa: E712
    assert len(storage.objects) == 1


async def test_storage_failure_after_payment(alice, gateway, monkeypatch):
    tid = await paid_transaction(alice, gateway)
    failing = MemoryStorage(fail_after=1)
    monkeypatch.setattr(uploads, "get_storage", lambda: failing)

    with pytest.raises(StorageError):
        await uploads.ingest(alice.id, [pdf("a.pdf"), pdf("b.pdf", fill=b"B")], pricing_snapshot={"transactionId": tid})

    payment = await Payment.find_one(Payment.user_id == alice.id)
    assert payment.status == "paid"

    batch = await UploadBatch.find_one(UploadBatch.user_id == alice.id)
    assert batch.status == "failed"
    assert batch.errors == ["Disk unavailable"]

    # the file written before the failure is rolled back
    assert await DocumentRecord.find(DocumentRecord.is_active == True).count() == 0  # noqa: E712
    assert failing.objects == {}

    explanatory = await Transaction.find_one(Transaction.type == "upload")
    assert explanatory.status == "failed"
    assert explanatory.metadata["uploadId"] == batch.upload_id

    trx = await Transaction.find_one(Transaction.transaction_id == tid)
    assert trx.status == "paid"
    case = await ReconciliationCase.find_one(ReconciliationCase.transaction_id == tid)
    assert case.status == "open"
    assert case.payment_id == payment.id
    assert case.upload_id == batch.upload_id


async def test_rolled_back_content_can_be_uploaded_again(alice, monkeypatch):
    monkeypatch.setattr(uploads, "get_storage", lambda: MemoryStorage(fail_after=1))
    with pytest.raises(StorageError):
        await uploads.ingest(alice.id, [pdf("a.pdf"), pdf("b.pdf", fill=b"B")])
    monkeypatch.setattr(uploads, "get_storage", lambda: MemoryStorage())
    result = await uploads.ingest(alice.id, [pdf("a.pdf")])
    assert result.status == "completed"


async def test_database_failure_aborts_batch(alice, monkeypatch):
    async def down(*args, **kwargs):
        raise ServerSelectionTimeoutError("no primary")

    monkeypatch.setattr(uploads, "generate_udin", down)
    with pytest.raises(StorageError):
        await uploads.ingest(alice.id, [pdf()])
    batch = await UploadBatch.find_one(UploadBatch.user_id == alice.id)
    assert batch.status == "failed"
    assert batch.errors[0].startswith("Database unavailable")


class FlakyStorage(MemoryStorage):
    """Raises backend-native errors instead of StorageError."""

    def __init__(self, put_error=None, delete_error=None, fail_after: int = 0):
        super().__init__()
        self.put_error = put_error
        self.delete_error = delete_error
        self.fail_on = fail_after

    async def put(self, key, body, content_type=None):
        if self.put_error is not None and self.puts >= self.fail_on:
            raise self.put_error
        return await super().put(key, body, content_type)

    async def delete(self, key):
        if self.delete_error is not None:
            raise self.delete_error
        await super().delete(key)


async def test_unmapped_transport_error_still_fails_batch(alice, gateway, monkeypatch):
    tid = await paid_transaction(alice, gateway)
    broken = FlakyStorage(put_error=requests.exceptions.ConnectionError("connection reset"))
    monkeypatch.setattr(uploads, "get_storage", lambda: broken)

    with pytest.raises(requests.exceptions.ConnectionError):
        await uploads.ingest(alice.id, [pdf()], pricing_snapshot={"transactionId": tid})

    batch = await UploadBatch.find_one(UploadBatch.user_id == alice.id)
    assert batch.status == "failed"
    assert "ConnectionError" in batch.errors[0]
    assert await ReconciliationCase.find_one(ReconciliationCase.transaction_id == tid)


async def test_gcs_connection_error_fails_batch(alice, monkeypatch):
    store = gcs_with(FakeBucket(fail_put=requests.exceptions.ConnectionError("connection reset")))
    monkeypatch.setattr(uploads, "get_storage", lambda: store)

    with pytest.raises(StorageError):
        await uploads.ingest(alice.id, [pdf()])

    batch = await UploadBatch.find_one(UploadBatch.user_id == alice.id)
    assert batch.status == "failed"


async def test_storage_unavailable_at_start_fails_batch(alice, monkeypatch):
    def unavailable():
        raise StorageError("Storage client unavailable: no credentials")

    monkeypatch.setattr(uploads, "get_storage", unavailable)
    with pytest.raises(StorageError):
        await uploads.ingest(alice.id, [pdf()])
    batch = await UploadBatch.find_one(UploadBatch.user_id == alice.id)
    assert batch.status == "failed"
    assert batch.errors == ["Storage client unavailable: no credentials"]


async def test_cleanup_failure_does_not_block_abort(alice, gateway, monkeypatch):
    tid = await paid_transaction(alice, gateway)
    outage = gcs_exceptions.ServiceUnavailable("backend down")
    broken = FlakyStorage(put_error=outage, delete_error=outage, fail_after=1)
    monkeypatch.setattr(uploads, "get_storage", lambda: broken)

    with pytest.raises(gcs_exceptions.ServiceUnavailable):
        await uploads.ingest(
            alice.id, [pdf("a.pdf"), pdf("b.pdf", fill=b"B")], pricing_snapshot={"transactionId": tid}
        )

    batch = await UploadBatch.find_one(UploadBatch.user_id == alice.id)
    assert batch.status == "failed"
    # the first payload could not be deleted, but its record is still retired
    assert len(broken.objects) == 1
    assert await DocumentRecord.find(DocumentRecord.is_active == True).count() == 0  # noqa: E712
    case = await ReconciliationCase.find_one(ReconciliationCase.transaction_id == tid)
    assert case.status == "open"


async def test_complete_batch_completes_transaction(alice, gateway):
    tid = await paid_transaction(alice, gateway)
    result = await uploads.ingest(alice.id, [pdf()], pricing_snapshot={"transactionId": tid})
    trx = await Transaction.find_one(Transaction.transaction_id == tid)
    assert trx.status == "completed"
    assert trx.metadata["uploadId"] == result.upload_id
    assert trx.metadata["processedFiles"] == 1


async def test_partial_batch_marks_transaction_uploaded(alice, gateway):
    tid = await paid_transaction(alice, gateway)
    files = [pdf(), uploads.IncomingFile(filename="bad.txt", content=b"x" * 4096)]
    await uploads.ingest(alice.id, files, pricing_snapshot={"transactionId": tid})
    trx = await Transaction.find_one(Transaction.transaction_id == tid)
    assert trx.status == "uploaded"


async def test_transaction_advance_failure_does_not_fail_ingestion(alice, gateway, monkeypatch):
    tid = await paid_transaction(alice, gateway)

    async def broken(*args, **kwargs):
        raise ServerSelectionTimeoutError("no primary")

    monkeypatch.setattr(ledger, "update_status", broken)
    result = await uploads.ingest(alice.id, [pdf()], pricing_snapshot={"transactionId": tid})
    assert result.status == "completed"

    task = await CompensationTask.find_one(CompensationTask.kind == "advance_transaction")
    assert task.status == "pending"
    assert task.payload["transaction_id"] == tid
    assert task.payload["status"] == "completed"


async def test_nothing_delivered_opens_case(alice, gateway):
    await uploads.ingest(alice.id, [pdf()])
    tid = await paid_transaction(alice, gateway)
    result = await uploads.ingest(alice.id, [pdf("again.pdf")], pricing_snapshot={"transactionId": tid})
    assert result.processed_files == 0
    trx = await Transaction.find_one(Transaction.transaction_id == tid)
    assert trx.status == "paid"
    assert await ReconciliationCase.find(ReconciliationCase.transaction_id == tid).count() == 1


async def test_upload_api(client, alice, gateway):
    tid = await paid_transaction(alice, gateway)
    headers = auth_headers(alice)
    r = await client.post(
        "/v1/uploads/files",
        files=[
            ("files", ("pan.pdf", b"%PDF" + b"P" * 2048, "application/pdf")),
            ("files", ("itr.pdf", b"%PDF" + b"I" * 2048, "application/pdf")),
        ],
        data={
            "fileMetadata[0][documentTypeId]": "pan-verification",
            "fileMetadata[0][tier]": "Standard",
            "fileMetadata[1][documentTypeId]": "itr-acknowledgement",
            "fileMetadata[1][tier]": "Premium",
            "customerInfo": '{"email": "alice@example.com"}',
            "pricingSnapshot": f'{{"transactionId": "{tid}", "totalAmount": 590}}',
            "metadata": "not json",
            "uploadTimestamp": "2026-01-05T10:00:00Z",
        },
        headers=headers,
    )
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "completed"
    assert body["processedFiles"] == 2
    assert body["totalFiles"] == 2
    assert body["errors"] == []
    assert {f["documentTypeId"] for f in body["files"]} == {"pan-verification", "itr-acknowledgement"}
    assert body["files"][1]["tier"] == "Premium"

    r = await client.get(f"/v1/uploads/status/{body['uploadId']}", headers=headers)
    assert r.json()["processedFiles"] == 2

    r = await client.get("/v1/uploads", headers=headers)
    assert r.json()["total"] == 1

    trx = await Transaction.find_one(Transaction.transaction_id == tid)
    assert trx.status == "completed"


async def test_upload_api_requires_files(client, alice):
    r = await client.post("/v1/uploads/files", data={"customerInfo": "{}"}, headers=auth_headers(alice))
    assert r.status_code == 400


async def test_upload_api_rejects_too_many_files(client, alice):
    files = [("files", (f"doc{i}.pdf", b"%PDF" + bytes([65 + i % 26]) * 2048, "application/pdf")) for i in range(31)]
    r = await client.post("/v1/uploads/files", files=files, headers=auth_headers(alice))
    assert r.status_code == 400
    assert r.json()["error"]["message"] == "At most 30 files per upload"
    assert await UploadBatch.find(UploadBatch.user_id == alice.id).count() == 0


async def test_upload_status_is_owner_scoped(client, alice, bob):
    result = await uploads.ingest(alice.id, [pdf()])
    r = await client.get(f"/v1/uploads/status/{result.upload_id}", headers=auth_headers(bob))
    assert r.status_code == 404
