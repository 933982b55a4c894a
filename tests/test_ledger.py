import pytest

from conftest import auth_headers
from udin.core.exceptions import NotFoundError, StatusRegressionError, ValidationError
from udin.models.transaction import Transaction
from udin.services import ledger

CART = {
    "provider": "razorpay",
    "status": "initiated",
    "currency": "INR",
    "amount": 590.0,
    "amountPaise": 59000,
    "items": [{"documentTypeId": "gst-certificate", "quantity": 1}],
    "amounts": {"subtotal": 500, "gstAmount": 90, "totalAmount": 590, "taxRate": 0.18},
    "notes": {"email": "alice@example.com"},
}


async def _create(user, payload=None) -> str:
    out = await ledger.create_transaction(user.id, ledger.parse_transaction_create(payload or CART))
    return out["transactionId"]


async def test_create_cart_transaction(alice):
    tid = await _create(alice)
    assert tid.startswith("TXN_")
    trx = await ledger.get_transaction(alice.id, tid)
    assert trx["status"] == "initiated"
    assert trx["amountPaise"] == 59000
    assert trx["amounts"]["gstAmount"] == 90


async def test_create_legacy_transaction(alice):
    tid = await _create(alice, {"orderId": "order_legacy1", "amount": 100, "description": "PAN verification"})
    trx = await ledger.get_transaction(alice.id, tid)
    assert trx["status"] == "pending"
    assert trx["razorpayData"] == {"orderId": "order_legacy1"}
    assert trx["amountPaise"] == 10000


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"amount": 10},
        {**CART, "unexpected": True},
        {**CART, "status": "paid"},
        {**CART, "amount": -5},
        {"orderId": "order_1", "amount": 10, "amountInRupees": 10},
    ],
)
def test_unrecognized_shapes_rejected(payload):
    with pytest.raises(ValidationError):
        ledger.parse_transaction_create(payload)


async def test_mismatched_paise_rejected(alice):
    with pytest.raises(ValidationError):
        await ledger.create_transaction(alice.id, ledger.parse_transaction_create({**CART, "amountPaise": 100}))


async def test_metadata_is_shallow_merged(alice):
    tid = await _create(alice)
    await ledger.update_status(alice.id, tid, ledger.TransactionPatch(meta={"a": 1, "b": {"x": 1}}))
    out = await ledger.update_status(alice.id, tid, ledger.TransactionPatch(meta={"b": {"y": 2}, "c": 3}))
    assert out["metadata"] == {"a": 1, "b": {"y": 2}, "c": 3}


async def test_forward_transitions_and_idempotent_repeat(alice):
    tid = await _create(alice)
    for status in ("pending", "paid", "paid", "uploaded", "completed", "completed"):
        out = await ledger.update_status(alice.id, tid, ledger.TransactionPatch(status=status))
        assert out["status"] == status


@pytest.mark.parametrize(
    "path,bad",
    [
        (["paid"], "initiated"),
        (["paid"], "failed"),
        (["paid", "uploaded"], "cancelled"),
        (["paid", "uploaded", "completed"], "initiated"),
        (["cancelled"], "paid"),
        (["failed"], "pending"),
    ],
)
async def test_regressions_rejected(alice, path, bad):
    tid = await _create(alice)
    for status in path:
        await ledger.update_status(alice.id, tid, ledger.TransactionPatch(status=status))
    with pytest.raises(StatusRegressionError):
        await ledger.update_status(alice.id, tid, ledger.TransactionPatch(status=bad))
    trx = await Transaction.find_one(Transaction.transaction_id == tid)
    assert trx.status == path[-1]


async def test_other_owner_gets_not_found(alice, bob):
    tid = await _create(alice)
    with pytest.raises(NotFoundError):
        await ledger.get_transaction(bob.id, tid)
    with pytest.raises(NotFoundError):
        await ledger.update_status(bob.id, tid, ledger.TransactionPatch(status="cancelled"))
    trx = await Transaction.find_one(Transaction.transaction_id == tid)
    assert trx.status == "initiated"


async def test_lookup_by_mongo_id(alice):
    out = await ledger.create_transaction(alice.id, ledger.parse_transaction_create(CART))
    trx = await ledger.get_transaction(alice.id, out["id"])
    assert trx["transactionId"] == out["transactionId"]


async def test_api_roundtrip(client, alice):
    headers = auth_headers(alice)
    r = await client.post("/v1/transactions", json=CART, headers=headers)
    assert r.status_code == 201
    tid = r.json()["transactionId"]

    r = await client.patch(
        f"/v1/transactions/{tid}",
        json={"status": "paid", "paymentId": "pay_1", "paidAt": "2026-01-05T10:00:00", "meta": {"flow": "checkout"}},
        headers=headers,
    )
    assert r.status_code == 200
    assert r.json() == {"transactionId": tid, "status": "paid", "metadata": {"flow": "checkout"}}

    r = await client.get(f"/v1/transactions/{tid}", headers=headers)
    assert r.json()["razorpayData"]["paymentId"] == "pay_1"
    assert r.json()["paidAt"].startswith("2026-01-05T10:00:00")

    r = await client.get("/v1/transactions", headers=headers)
    assert r.json()["total"] == 1


async def test_api_errors(client, alice, bob):
    headers = auth_headers(alice)
    tid = (await client.post("/v1/transactions", json=CART, headers=headers)).json()["transactionId"]

    r = await client.get(f"/v1/transactions/{tid}", headers=auth_headers(bob))
    assert r.status_code == 404

    r = await client.post("/v1/transactions", json={"foo": "bar"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"

    await client.patch(f"/v1/transactions/{tid}", json={"status": "completed"}, headers=headers)
    r = await client.patch(f"/v1/transactions/{tid}", json={"status": "initiated"}, headers=headers)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "STATUS_REGRESSION"

    r = await client.patch(f"/v1/transactions/{tid}", json={"status": "bogus"}, headers=headers)
    assert r.status_code == 400


async def test_requires_authentication(client, alice):
    r = await client.get("/v1/transactions")
    assert r.status_code == 401
    r = await client.get("/v1/transactions", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401

    headers = auth_headers(alice)
    assert (await client.get("/v1/transactions", headers=headers)).status_code == 200
    alice.session_version += 1
    await alice.save()
    r = await client.get("/v1/transactions", headers=headers)
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "UNAUTHORIZED"

    alice.is_active = False
    await alice.save()
    r = await client.get("/v1/transactions", headers=auth_headers(alice))
    assert r.status_code == 401
