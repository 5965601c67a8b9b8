"""Per-target-system operation tables used by the dispatcher.

Each handler declares the closed set of action types it can execute and the
closed set it can compensate. Anything outside those tables is unsupported.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date
import logging
from typing import Any, Mapping

from bookkeeping_agent.integrations.contracts import BillComAdapter, QuickBooksAdapter
from bookkeeping_agent.risk.engine import parse_amount

from .contracts import (
    ERROR_ACTION_FAILED,
    TARGET_BILLCOM,
    TARGET_INTERNAL,
    TARGET_QUICKBOOKS,
    ActionDispatchError,
    ActionRecord,
    ActionResult,
)


logger = logging.getLogger("bookkeeping_agent.action_layer.targets")

Guard = Callable[[str, Callable[[], Any]], Any]
Operation = Callable[[Mapping[str, Any], Guard], ActionResult]
Compensator = Callable[[ActionRecord, Mapping[str, Any], Guard], ActionResult]

_DEFAULT_EXPENSE_ACCOUNT = {"value": "1", "name": "Expenses"}


class TargetHandler:
    target_system: str = ""
    guarded: bool = True
    operation_names: dict[str, str] = {}
    compensation_names: dict[str, str] = {}

    def operation(self, action_type: str) -> Operation | None:
        name = self.operation_names.get(action_type)
        return getattr(self, name) if name else None

    def compensation(self, action_type: str) -> Compensator | None:
        name = self.compensation_names.get(action_type)
        return getattr(self, name) if name else None

    def supported_actions(self) -> tuple[str, ...]:
        return tuple(sorted(self.operation_names))


class QuickBooksHandler(TargetHandler):
    target_system = TARGET_QUICKBOOKS
    operation_names = {
        "create_bill": "create_bill",
        "delete_bill": "delete_bill",
        "record_payment": "record_payment",
    }
    compensation_names = {"create_bill": "undo_create_bill"}

    def __init__(self, adapter: QuickBooksAdapter, *, today: Callable[[], date] = date.today) -> None:
        self.adapter = adapter
        self._today = today

    def create_bill(self, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        vendor_name = _require_param(params, "vendorName")
        vendor = guard("find_vendor", lambda: self.adapter.find_vendor_by_name(vendor_name))
        if vendor is None:
            vendor = guard(
                "create_vendor",
                lambda: self.adapter.create_vendor({"DisplayName": vendor_name, "CompanyName": vendor_name}),
            )
        vendor_id = str(vendor["Id"])
        amount = parse_amount(params.get("amount"))
        bill = {
            "VendorRef": {"value": vendor_id, "name": vendor_name},
            "TxnDate": self._today().isoformat(),
            "DueDate": params.get("dueDate"),
            "TotalAmt": amount,
            "Balance": amount,
            "DocNumber": params.get("invoiceNumber"),
            "Line": self._bill_lines(params, amount),
            "PrivateNote": f"Created from email {params.get('emailId')}",
        }
        created = guard("create_bill", lambda: self.adapter.create_bill(bill))
        logger.info("quickbooks bill created bill_id=%s vendor_id=%s", created.get("Id"), vendor_id)
        return ActionResult(
            success=True,
            external_id=str(created["Id"]),
            data={"vendor_id": vendor_id, "total_amount": created.get("TotalAmt", amount)},
        )

    def delete_bill(self, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        bill_id = _require_param(params, "billId")
        sync_token = str(params.get("syncToken") or "0")
        guard("delete_bill", lambda: self.adapter.delete_bill(bill_id, sync_token))
        return ActionResult(success=True, external_id=bill_id, data={"deleted": True})

    def record_payment(self, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        amount = parse_amount(params.get("amount"))
        bill_id = params.get("billId")
        payment = {
            "TotalAmt": amount,
            "TxnDate": params.get("paymentDate") or self._today().isoformat(),
            "Line": [{"Amount": amount, "LinkedTxn": [{"TxnId": bill_id, "TxnType": "Bill"}]}] if bill_id else [],
        }
        created = guard("create_bill_payment", lambda: self.adapter.create_bill_payment(payment))
        return ActionResult(success=True, external_id=str(created["Id"]), data={"amount": amount})

    def undo_create_bill(self, record: ActionRecord, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        return self.delete_bill({"billId": record.external_id, "syncToken": params.get("syncToken") or "0"}, guard)

    @staticmethod
    def _bill_lines(params: Mapping[str, Any], amount: float) -> list[dict[str, Any]]:
        line_items = params.get("lineItems") or []
        if line_items:
            return [
                {
                    "Amount": parse_amount(item.get("amount")),
                    "DetailType": "AccountBasedExpenseLineDetail",
                    "Description": item.get("description"),
                    "AccountBasedExpenseLineDetail": {"AccountRef": dict(_DEFAULT_EXPENSE_ACCOUNT)},
                }
                for item in line_items
            ]
        return [
            {
                "Amount": amount,
                "DetailType": "AccountBasedExpenseLineDetail",
                "Description": params.get("description") or "Invoice payment",
                "AccountBasedExpenseLineDetail": {"AccountRef": dict(_DEFAULT_EXPENSE_ACCOUNT)},
            }
        ]


class BillComHandler(TargetHandler):
    target_system = TARGET_BILLCOM
    operation_names = {
        "create_bill": "create_bill",
        "schedule_payment": "schedule_payment",
    }
    compensation_names = {
        "create_bill": "undo_create_bill",
        "schedule_payment": "undo_schedule_payment",
    }

    def __init__(self, adapter: BillComAdapter, *, today: Callable[[], date] = date.today) -> None:
        self.adapter = adapter
        self._today = today

    def create_bill(self, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        vendor_name = _require_param(params, "vendorName")
        vendor = guard("find_vendor", lambda: self.adapter.find_vendor_by_name(vendor_name))
        if vendor is None:
            vendor = guard("create_vendor", lambda: self.adapter.create_vendor({"name": vendor_name, "isActive": True}))
        vendor_id = str(vendor["id"])
        amount = parse_amount(params.get("amount"))
        today = self._today().isoformat()
        line_items = params.get("lineItems") or []
        lines = (
            [{"amount": parse_amount(item.get("amount")), "description": item.get("description")} for item in line_items]
            if line_items
            else [{"amount": amount, "description": params.get("description") or "Invoice"}]
        )
        bill = {
            "vendorId": vendor_id,
            "invoiceNumber": params.get("invoiceNumber"),
            "invoiceDate": today,
            "dueDate": params.get("dueDate") or today,
            "amount": amount,
            "amountDue": amount,
            "description": params.get("description"),
            "lineItems": lines,
        }
        created = guard("create_bill", lambda: self.adapter.create_bill(bill))
        logger.info("billcom bill created bill_id=%s vendor_id=%s", created.get("id"), vendor_id)
        return ActionResult(
            success=True,
            external_id=str(created["id"]),
            data={"vendor_id": vendor_id, "total_amount": amount},
        )

    def schedule_payment(self, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        bill_id = _require_param(params, "billId")
        vendor_id = _require_param(params, "vendorId")
        process_date = _require_param(params, "processDate")
        amount = parse_amount(params.get("amount"))
        payment_type = str(params.get("paymentType") or "ACH")
        created = guard(
            "schedule_payment",
            lambda: self.adapter.schedule_payment(bill_id, vendor_id, amount, process_date, payment_type),
        )
        return ActionResult(
            success=True,
            external_id=str(created["id"]),
            data={"amount": amount, "process_date": process_date},
        )

    def undo_create_bill(self, record: ActionRecord, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        bill_id = str(record.external_id)
        guard("delete_bill", lambda: self.adapter.delete_bill(bill_id))
        return ActionResult(success=True, external_id=bill_id, data={"deleted": True})

    def undo_schedule_payment(self, record: ActionRecord, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        payment_id = str(record.external_id)
        guard("void_payment", lambda: self.adapter.void_payment(payment_id))
        return ActionResult(success=True, external_id=payment_id, data={"voided": True})


class InternalHandler(TargetHandler):
    """Accepts any action type and records the intent; never leaves the process."""

    target_system = TARGET_INTERNAL
    guarded = False

    def operation(self, action_type: str) -> Operation | None:
        return self.record

    def record(self, params: Mapping[str, Any], guard: Guard) -> ActionResult:
        logger.info("internal action recorded params=%s", sorted(params))
        return ActionResult(success=True, data={"recorded": True})


def _require_param(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ActionDispatchError(ERROR_ACTION_FAILED, f"missing required parameter: {name}", {"parameter": name})
    return text
