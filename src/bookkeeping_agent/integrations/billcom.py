"""Bill.com v2 adapter (single attempt per call)."""

from __future__ import annotations

from dataclasses import dataclass
import json
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


logger = logging.getLogger("bookkeeping_agent.integrations.billcom")

BILLCOM_BASE_URL = "https://api.bill.com/api/v2"
BILLCOM_STATUS_ERROR = 1


@dataclass
class BillComClient:
    dev_key: str | None = None
    session_id: str | None = None
    base_url: str = BILLCOM_BASE_URL
    timeout_seconds: float = 30.0
    session: requests.Session | None = None

    def __post_init__(self) -> None:
        self._session = self.session or requests.Session()

    def login(self, user_name: str, password: str, org_id: str) -> None:
        data = self._request("Login", {"userName": user_name, "password": password, "orgId": org_id}, require_session=False)
        self.session_id = str(data.get("sessionId") or "") or None
        if not self.session_id:
            raise AdapterError(ADAPTER_INVALID_RESPONSE, "Bill.com login returned no sessionId")

    def find_vendor_by_name(self, name: str) -> dict[str, Any] | None:
        data = self._request("List/Vendor", {"filters": [{"field": "name", "op": "=", "value": name}]})
        if isinstance(data, list) and data:
            return dict(data[0])
        return None

    def create_vendor(self, vendor: dict[str, Any]) -> dict[str, Any]:
        created = _as_entity(self._request("Crud/Create/Vendor", {"obj": vendor}), "vendor")
        logger.info("billcom vendor created vendor_id=%s", created.get("id"))
        return created

    def create_bill(self, bill: dict[str, Any]) -> dict[str, Any]:
        created = _as_entity(self._request("Crud/Create/Bill", {"obj": bill}), "bill")
        logger.info("billcom bill created bill_id=%s", created.get("id"))
        return created

    def delete_bill(self, bill_id: str) -> None:
        self._request("Crud/Delete/Bill", {"id": bill_id})
        logger.info("billcom bill deleted bill_id=%s", bill_id)

    def schedule_payment(
        self,
        bill_id: str,
        vendor_id: str,
        amount: float,
        process_date: str,
        payment_type: str = "ACH",
    ) -> dict[str, Any]:
        payload = {
            "obj": {
                "billId": bill_id,
                "vendorId": vendor_id,
                "amount": amount,
                "processDate": process_date,
                "paymentType": payment_type,
            }
        }
        created = _as_entity(self._request("Crud/Create/SentPay", payload), "payment")
        logger.info("billcom payment scheduled payment_id=%s bill_id=%s", created.get("id"), bill_id)
        return created

    def void_payment(self, payment_id: str) -> None:
        self._request("VoidSentPay", {"sentPayId": payment_id})
        logger.info("billcom payment voided payment_id=%s", payment_id)

    def _request(self, operation: str, data: Mapping[str, Any], *, require_session: bool = True) -> Any:
        if not self.dev_key or (require_session and not self.session_id):
            raise AdapterError(ADAPTER_NOT_AUTHENTICATED, "Bill.com credentials not set")
        form = {
            "devKey": self.dev_key,
            "sessionId": self.session_id or "",
            "data": json.dumps(dict(data), sort_keys=True),
        }
        try:
            response = self._session.post(
                f"{self.base_url.rstrip('/')}/{operation}.json",
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise AdapterError(ADAPTER_TRANSPORT_ERROR, "Bill.com request timed out", status_code=408) from exc
        except requests.RequestException as exc:
            raise AdapterError(ADAPTER_TRANSPORT_ERROR, str(exc)[:256]) from exc
        if response.status_code >= 400:
            raise AdapterError(
                ADAPTER_API_ERROR,
                f"Bill.com {operation} failed: http_{response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise AdapterError(ADAPTER_INVALID_RESPONSE, "Bill.com returned a non-JSON body", status_code=response.status_code) from exc
        if not isinstance(body, Mapping):
            raise AdapterError(ADAPTER_INVALID_RESPONSE, "Bill.com response must be an object")
        if body.get("response_status") == BILLCOM_STATUS_ERROR:
            data_block = body.get("response_data")
            raise AdapterError(
                ADAPTER_API_ERROR,
                str(body.get("response_message") or _error_message(data_block) or "Bill.com API error"),
                status_code=response.status_code,
                fault=data_block,
            )
        return body.get("response_data")


def _as_entity(value: Any, label: str) -> dict[str, Any]:
    if not isinstance(value, Mapping):
        raise AdapterError(ADAPTER_INVALID_RESPONSE, f"Bill.com response missing {label}")
    return dict(value)


def _error_message(data_block: Any) -> str | None:
    if isinstance(data_block, Mapping):
        message = data_block.get("error_message")
        return str(message) if message else None
    return None
