import pytest

from conftest import auth_headers
from udin.core.exceptions import BadRequestError, NotFoundError
from udin.models.document import DocumentRecord
from udin.services import documents, uploads


def _file(name: str = "deed.pdf") -> uploads.IncomingFile:
    return uploads.IncomingFile(filename=name, content=b"%PDF" + b"D" * 4096, content_type="application/pdf")


async def _upload(user) -> DocumentRecord:
    result = await uploads.ingest(user.id, [_file()])
    return await DocumentRecord.find_one(DocumentRecord.udin == result.files[0].udin)


async def test_get_document_is_owner_scoped(alice, bob):
    doc = await _upload(alice)
    out = await documents.get_document(alice.id, doc.udin)
    assert out["udin"] == doc.udin
    assert out["status"] == "uploaded"
    with pytest.raises(NotFoundError):
        await documents.get_document(bob.id, doc.udin)


async def test_soft_delete_releases_content(alice):
    doc = await _upload(alice)
    await documents.soft_delete(alice.id, doc.udin)

    with pytest.raises(NotFoundError):
        await documents.get_document(alice.id, doc.udin)
    stored = await DocumentRecord.get(doc.id)
    assert stored.is_active is False
    assert stored.dedup_key.endswith(f":deleted:{doc.id}")

    again = await uploads.ingest(alice.id, [_file("deed-again.pdf")])
    assert again.status == "completed"
    assert again.files[0].udin != doc.udin


async def test_soft_delete_twice_is_not_found(alice):
    doc = await _upload(alice)
    await documents.soft_delete(alice.id, doc.udin)
    with pytest.raises(NotFoundError):
        await documents.soft_delete(alice.id, doc.udin)


async def test_status_moves_forward(alice):
    doc = await _upload(alice)
    assert (await documents.update_status(str(doc.id), "processing"))["status"] == "processing"
    out = await documents.update_status(str(doc.id), "verified")
    assert out["status"] == "verified"
    assert out["verificationDate"] is not None


@pytest.mark.parametrize("target", ["uploaded", "verified"])
async def test_invalid_transition_from_uploaded(alice, target):
    doc = await _upload(alice)
    with pytest.raises(BadRequestError):
        await documents.update_status(str(doc.id), target)


async def test_rejection_needs_reason(alice):
    doc = await _upload(alice)
    with pytest.raises(BadRequestError):
        await documents.update_status(str(doc.id), "rejected")
    out = await documents.update_status(str(doc.id), "rejected", "Illegible scan")
    assert out["rejectionReason"] == "Illegible scan"
    with pytest.raises(BadRequestError):
        await documents.update_status(str(doc.id), "processing")


async def test_status_of_unknown_document(alice):
    with pytest.raises(NotFoundError):
        await documents.update_status("not-an-id", "processing")


async def test_document_api(client, alice, bob, admin):
    doc = await _upload(alice)
    r = await client.get(f"/v1/documents/{doc.udin}", headers=auth_headers(alice))
    assert r.status_code == 200
    assert r.json()["originalName"] == "deed.pdf"

    r = await client.get(f"/v1/documents/{doc.udin}", headers=auth_headers(bob))
    assert r.status_code == 404

    r = await client.patch(f"/v1/documents/{doc.id}/status", json={"status": "processing"}, headers=auth_headers(alice))
    assert r.status_code == 403
    r = await client.patch(f"/v1/documents/{doc.id}/status", json={"status": "processing"}, headers=auth_headers(admin))
    assert r.status_code == 200
    assert r.json()["status"] == "processing"

    r = await client.delete(f"/v1/documents/{doc.udin}", headers=auth_headers(alice))
    assert r.json() == {"status": "deleted", "udin": doc.udin}
    r = await client.get(f"/v1/documents/{doc.udin}", headers=auth_headers(alice))
    assert r.status_code == 404
