"""QuickBooks Online REST adapter (single attempt per call)."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping

import requests

from .contracts import (
    ADAPTER_API_ERROR,
    ADAPTER_INVALID_RESPONSE,
    ADAPTER_NOT_AUTHENTICATED,
    ADAPTER_TRANSPORT_ERROR,
    AdapterError,
)


logger = logging.getLogger("bookkeeping_agent.integrations.quickbooks")

QUICKBOOKS_BASE_URL = "https://quickbooks.api.intuit.com/v3/company"


@dataclass
class QuickBooksClient:
    realm_id: str | None = None
    access_token: str | None = None
    base_url: str = QUICKBOOKS_BASE_URL
    timeout_seconds: float = 30.0
    session: requests.Session | None = None

    def __post_init__(self) -> None:
        self._session = self.session or requests.Session()

    def set_credentials(self, realm_id: str, access_token: str) -> None:
        self.realm_id = realm_id
        self.access_token = access_token

    def find_vendor_by_name(self, name: str) -> dict[str, Any] | None:
        escaped = name.replace("'", "\\'")
        body = self._request("GET", "/query", params={"query": f"SELECT * FROM Vendor WHERE DisplayName = '{escaped}'"})
        vendors = (body.get("QueryResponse") or {}).get("Vendor") or []
        return dict(vendors[0]) if vendors else None

    def create_vendor(self, vendor: dict[str, Any]) -> dict[str, Any]:
        created = self._entity(self._request("POST", "/vendor", json_body=vendor), "Vendor")
        logger.info("quickbooks vendor created vendor_id=%s", created.get("Id"))
        return created

    def create_bill(self, bill: dict[str, Any]) -> dict[str, Any]:
        created = self._entity(self._request("POST", "/bill", json_body=bill), "Bill")
        logger.info("quickbooks bill created bill_id=%s", created.get("Id"))
        return created

    def delete_bill(self, bill_id: str, sync_token: str) -> None:
        self._request(
            "POST",
            "/bill",
            params={"operation": "delete"},
            json_body={"Id": bill_id, "SyncToken": sync_token},
        )
        logger.info("quickbooks bill deleted bill_id=%s", bill_id)

    def create_bill_payment(self, payment: dict[str, Any]) -> dict[str, Any]:
        created = self._entity(self._request("POST", "/billpayment", json_body=payment), "BillPayment")
        logger.info("quickbooks bill payment created payment_id=%s", created.get("Id"))
        return created

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        if not self.access_token or not self.realm_id:
            raise AdapterError(ADAPTER_NOT_AUTHENTICATED, "QuickBooks credentials not set")
        url = f"{self.base_url.rstrip('/')}/{self.realm_id}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            response = self._session.request(
                method,
                url,
                params=dict(params or {}),
                json=dict(json_body) if json_body is not None else None,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise AdapterError(ADAPTER_TRANSPORT_ERROR, "QuickBooks request timed out", status_code=408) from exc
        except requests.RequestException as exc:
            raise AdapterError(ADAPTER_TRANSPORT_ERROR, str(exc)[:256]) from exc
        if response.status_code >= 400:
            raise AdapterError(
                ADAPTER_API_ERROR,
                f"QuickBooks {method} {endpoint} failed: {response.reason or response.status_code}",
                status_code=response.status_code,
                fault=_json_or_empty(response).get("Fault"),
            )
        body = _json_or_empty(response)
        if not body and response.content:
            raise AdapterError(ADAPTER_INVALID_RESPONSE, "QuickBooks returned a non-JSON body", status_code=response.status_code)
        return body

    @staticmethod
    def _entity(body: Mapping[str, Any], key: str) -> dict[str, Any]:
        entity = body.get(key)
        if not isinstance(entity, Mapping):
            raise AdapterError(ADAPTER_INVALID_RESPONSE, f"QuickBooks response missing {key}")
        return dict(entity)


def _json_or_empty(response: Any) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return dict(body) if isinstance(body, Mapping) else {}
