"""Adapter contracts for the external accounting systems."""

from __future__ import annotations

from typing import Any, Protocol


ADAPTER_NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
ADAPTER_API_ERROR = "API_ERROR"
ADAPTER_TRANSPORT_ERROR = "TRANSPORT_ERROR"
ADAPTER_INVALID_RESPONSE = "INVALID_RESPONSE"


class AdapterError(RuntimeError):
    """Typed failure from one adapter call, carrying the upstream status and fault."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        status_code: int | None = None,
        fault: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.fault = fault


class QuickBooksAdapter(Protocol):
    def find_vendor_by_name(self, name: str) -> dict[str, Any] | None:
        ...

    def create_vendor(self, vendor: dict[str, Any]) -> dict[str, Any]:
        ...

    def create_bill(self, bill: dict[str, Any]) -> dict[str, Any]:
        ...

    def delete_bill(self, bill_id: str, sync_token: str) -> None:
        ...

    def create_bill_payment(self, payment: dict[str, Any]) -> dict[str, Any]:
        ...


class BillComAdapter(Protocol):
    def find_vendor_by_name(self, name: str) -> dict[str, Any] | None:
        ...

    def create_vendor(self, vendor: dict[str, Any]) -> dict[str, Any]:
        ...

    def create_bill(self, bill: dict[str, Any]) -> dict[str, Any]:
        ...

    def delete_bill(self, bill_id: str) -> None:
        ...

    def schedule_payment(
        self,
        bill_id: str,
        vendor_id: str,
        amount: float,
        process_date: str,
        payment_type: str = "ACH",
    ) -> dict[str, Any]:
        ...

    def void_payment(self, payment_id: str) -> None:
        ...
