"""Async HTTP client for the UDIN service."""

import json
from typing import Any

import httpx

from udin.client.config import ClientSettings
from udin.client.draft_store import DraftFile
from udin.client.errors import ApiError, error_for_status
from udin.core.logging import get_logger

log = get_logger(__name__)


class UdinApiClient:
    def __init__(
        self,
        token: str,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or ClientSettings()
        self._client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
        )

    async def __aenter__(self) -> "UdinApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            log.warning("api_timeout", method=method, url=url)
            raise ApiError(f"Request timed out: {method} {url}") from e
        except httpx.TransportError as e:
            log.warning("api_unreachable", method=method, url=url, error=str(e))
            raise ApiError(f"Service unreachable: {e}") from e
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            raise error_for_status(response.status_code, body)
        return response.json()

    # Ledger

    async def create_transaction(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/v1/transactions", json=payload)

    async def update_transaction(self, transaction_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/v1/transactions/{transaction_id}", json=patch)

    async def get_transaction(self, transaction_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/v1/transactions/{transaction_id}")

    # Pricing / payments

    async def quote(self, lines: list[dict[str, Any]]) -> dict[str, Any]:
        return await self._request("POST", "/v1/pricing/quote", json={"lines": lines})

    async def create_order(
        self,
        lines: list[dict[str, Any]],
        transaction_id: str | None = None,
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"lines": lines, "currency": self.settings.currency, "notes": notes or {}}
        if transaction_id:
            body["transactionId"] = transaction_id
        return await self._request("POST", "/v1/payments/order", json=body)

    async def verify_payment(
        self,
        order_id: str,
        payment_id: str,
        signature: str,
        transaction_id: str | None = None,
    ) -> dict[str, Any]:
        body = {"orderId": order_id, "paymentId": payment_id, "signature": signature}
        if transaction_id:
            body["transactionId"] = transaction_id
        return await self._request("POST", "/v1/payments/verify", json=body)

    # Uploads

    async def upload_files(
        self,
        files: list[DraftFile],
        customer_info: dict[str, Any],
        pricing_snapshot: dict[str, Any],
        metadata: dict[str, Any],
        upload_timestamp: str,
    ) -> dict[str, Any]:
        data: dict[str, str] = {
            "customerInfo": json.dumps(customer_info, default=str),
            "pricingSnapshot": json.dumps(pricing_snapshot, default=str),
            "metadata": json.dumps(metadata, default=str),
            "uploadTimestamp": upload_timestamp,
        }
        for i, f in enumerate(files):
            data[f"fileMetadata[{i}][originalId]"] = f.id
            if f.document_type_id:
                data[f"fileMetadata[{i}][documentTypeId]"] = f.document_type_id
            data[f"fileMetadata[{i}][tier]"] = f.tier
        parts = [("files", (f.name, f.payload, f.type)) for f in files]
        return await self._request(
            "POST",
            "/v1/uploads/files",
            data=data,
            files=parts,
            timeout=self.settings.upload_timeout,
        )
