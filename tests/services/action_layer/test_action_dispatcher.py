from __future__ import annotations

from datetime import date
from typing import Any

import pytest

from bookkeeping_agent.action_layer.contracts import (
    ACTION_APPROVED,
    ACTION_COMPENSATED,
    ACTION_COMPLETED,
    ACTION_FAILED,
    ACTION_PENDING,
    ERROR_ACTION_FAILED,
    ERROR_CIRCUIT_OPEN,
    ERROR_COMPENSATION_FAILED,
    ERROR_EXTERNAL_API,
    ERROR_INVALID_STATE,
    ActionDispatchError,
    ActionRecord,
    Compensation,
)
from bookkeeping_agent.action_layer.dispatcher import ActionDispatcher, DispatchOptions
from bookkeeping_agent.action_layer.targets import BillComHandler, InternalHandler, QuickBooksHandler
from bookkeeping_agent.integrations.contracts import ADAPTER_API_ERROR, AdapterError
from bookkeeping_agent.observability import OrchestrationMetrics
from bookkeeping_agent.resilience.circuit_breaker import CircuitBreakerConfig
from bookkeeping_agent.resilience.layer import ResilienceLayer
from bookkeeping_agent.resilience.retry import RetryPolicy
from bookkeeping_agent.risk.engine import RiskAssessmentEngine
from bookkeeping_agent.risk.policy import RiskPolicy


class FakeQuickBooks:
    def __init__(self, *, vendor: dict[str, Any] | None = None, fail_with: Exception | None = None) -> None:
        self.vendor = vendor
        self.fail_with = fail_with
        self.calls: list[tuple[str, Any]] = []

    def find_vendor_by_name(self, name: str) -> dict[str, Any] | None:
        self.calls.append(("find_vendor_by_name", name))
        if self.fail_with is not None:
            raise self.fail_with
        return self.vendor

    def create_vendor(self, vendor: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create_vendor", vendor))
        return {"Id": "v-new", "DisplayName": vendor["DisplayName"]}

    def create_bill(self, bill: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create_bill", bill))
        return {"Id": "bill-1", "TotalAmt": bill["TotalAmt"]}

    def delete_bill(self, bill_id: str, sync_token: str) -> None:
        self.calls.append(("delete_bill", (bill_id, sync_token)))
        if self.fail_with is not None:
            raise self.fail_with

    def create_bill_payment(self, payment: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create_bill_payment", payment))
        return {"Id": "pay-1"}


class FakeBillCom:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []

    def find_vendor_by_name(self, name: str) -> dict[str, Any] | None:
        self.calls.append(("find_vendor_by_name", name))
        return {"id": "bv-1", "name": name}

    def create_vendor(self, vendor: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create_vendor", vendor))
        return {"id": "bv-new"}

    def create_bill(self, bill: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create_bill", bill))
        return {"id": "bb-1"}

    def delete_bill(self, bill_id: str) -> None:
        self.calls.append(("delete_bill", bill_id))

    def schedule_payment(self, bill_id, vendor_id, amount, process_date, payment_type="ACH"):
        self.calls.append(("schedule_payment", (bill_id, vendor_id, amount, process_date, payment_type)))
        return {"id": "sp-1"}

    def void_payment(self, payment_id: str) -> None:
        self.calls.append(("void_payment", payment_id))


def _resilience(**overrides: Any) -> ResilienceLayer:
    inline = CircuitBreakerConfig(failure_threshold=3, success_threshold=1, timeout_ms=0, reset_timeout_ms=60000)
    return ResilienceLayer(
        breaker_configs={"quickbooks": inline, "billcom": inline},
        retry_policy=RetryPolicy(max_attempts=2, initial_delay_ms=0, max_delay_ms=0, jitter=0, retry_on="any"),
        sleeper=lambda seconds: None,
        **overrides,
    )


def _dispatcher(
    quickbooks: FakeQuickBooks | None = None,
    billcom: FakeBillCom | None = None,
    **kwargs: Any,
) -> ActionDispatcher:
    today = lambda: date(2024, 3, 1)  # noqa: E731
    return ActionDispatcher(
        [
            QuickBooksHandler(quickbooks or FakeQuickBooks(vendor={"Id": "v-1"}), today=today),
            BillComHandler(billcom or FakeBillCom(), today=today),
            InternalHandler(),
        ],
        kwargs.pop("resilience", None) or _resilience(),
        id_factory=lambda: "comp-1",
        **kwargs,
    )


def _record(**overrides: Any) -> ActionRecord:
    payload: dict[str, Any] = {
        "id": "a-1",
        "action_type": "create_bill",
        "target_system": "quickbooks",
        "parameters": {"vendorName": "Acme Supplies", "amount": "$1,250.00", "invoiceNumber": "INV-7"},
    }
    payload.update(overrides)
    return ActionRecord(**payload)


@pytest.mark.parametrize("status", [ACTION_COMPLETED, ACTION_FAILED, ACTION_COMPENSATED])
def test_can_execute_is_false_for_finished_statuses_regardless_of_approval(status: str) -> None:
    dispatcher = _dispatcher(options=DispatchOptions(skip_approval_check=True))
    extra = {"is_compensated": True, "compensation_id": "c"} if status == ACTION_COMPENSATED else {}
    assert dispatcher.can_execute(_record(status=status, requires_approval=False, **extra)) is False


def test_can_execute_requires_approval_unless_approved_or_skipped() -> None:
    gated = _record(requires_approval=True)
    assert _dispatcher().can_execute(gated) is False
    assert _dispatcher().can_execute(_record(requires_approval=True, status=ACTION_APPROVED)) is True
    assert _dispatcher(options=DispatchOptions(skip_approval_check=True)).can_execute(gated) is True
    assert _dispatcher().can_execute(_record(status=ACTION_PENDING)) is True


def test_execute_create_bill_reuses_existing_vendor() -> None:
    quickbooks = FakeQuickBooks(vendor={"Id": "v-9"})
    result = _dispatcher(quickbooks).execute(_record())

    assert result.success is True
    assert result.external_id == "bill-1"
    assert result.data["vendor_id"] == "v-9"
    names = [name for name, _ in quickbooks.calls]
    assert names == ["find_vendor_by_name", "create_bill"]
    bill = quickbooks.calls[-1][1]
    assert bill["TotalAmt"] == 1250.0
    assert bill["TxnDate"] == "2024-03-01"
    assert bill["Line"][0]["AccountBasedExpenseLineDetail"]["AccountRef"]["value"] == "1"


def test_execute_create_bill_creates_missing_vendor() -> None:
    quickbooks = FakeQuickBooks(vendor=None)
    result = _dispatcher(quickbooks).execute(_record())

    assert result.data["vendor_id"] == "v-new"
    assert [name for name, _ in quickbooks.calls] == ["find_vendor_by_name", "create_vendor", "create_bill"]


def test_execute_refuses_unapproved_action_with_invalid_state() -> None:
    quickbooks = FakeQuickBooks(vendor={"Id": "v-1"})
    with pytest.raises(ActionDispatchError) as excinfo:
        _dispatcher(quickbooks).execute(_record(requires_approval=True))
    assert excinfo.value.kind == ERROR_INVALID_STATE
    assert quickbooks.calls == []


def test_dry_run_returns_synthetic_success_without_adapter_calls() -> None:
    quickbooks = FakeQuickBooks(vendor={"Id": "v-1"})
    result = _dispatcher(quickbooks, options=DispatchOptions(dry_run=True)).execute(_record())

    assert result.success is True
    assert result.data == {"dry_run": True}
    assert quickbooks.calls == []


def test_unknown_target_and_unsupported_type_are_distinct_kinds() -> None:
    dispatcher = _dispatcher()
    with pytest.raises(ActionDispatchError) as unknown:
        dispatcher.execute(_record(target_system="xero"))
    with pytest.raises(ActionDispatchError) as unsupported:
        dispatcher.execute(_record(action_type="reconcile_statement"))

    assert unknown.value.kind == ERROR_INVALID_STATE
    assert unsupported.value.kind == ERROR_ACTION_FAILED
    assert "create_bill" in unsupported.value.details["supported"]


def test_missing_required_parameter_is_action_failed() -> None:
    with pytest.raises(ActionDispatchError, match="vendorName") as excinfo:
        _dispatcher().execute(_record(parameters={"amount": 10}))
    assert excinfo.value.kind == ERROR_ACTION_FAILED


def test_adapter_error_maps_to_external_api_error_with_status_and_fault() -> None:
    fault = {"Error": [{"Message": "Duplicate"}]}
    quickbooks = FakeQuickBooks(fail_with=AdapterError(ADAPTER_API_ERROR, "bad request", status_code=400, fault=fault))
    with pytest.raises(ActionDispatchError) as excinfo:
        _dispatcher(quickbooks).execute(_record())

    error = excinfo.value
    assert error.kind == ERROR_EXTERNAL_API
    assert error.details["status_code"] == 400
    assert error.details["fault"] == fault
    assert error.details["attempts"] == 2


def test_open_circuit_short_circuits_with_circuit_open_kind() -> None:
    quickbooks = FakeQuickBooks(fail_with=AdapterError(ADAPTER_API_ERROR, "down", status_code=503))
    dispatcher = _dispatcher(quickbooks)
    for _ in range(3):
        with pytest.raises(ActionDispatchError):
            dispatcher.execute(_record())
    calls_before = len(quickbooks.calls)

    with pytest.raises(ActionDispatchError) as excinfo:
        dispatcher.execute(_record())

    assert excinfo.value.kind == ERROR_CIRCUIT_OPEN
    assert excinfo.value.details["circuit"] == "quickbooks"
    assert len(quickbooks.calls) == calls_before


def test_internal_target_records_intent_for_any_action_type() -> None:
    result = _dispatcher().execute(_record(target_system="internal", action_type="flag_for_review", parameters={}))
    assert result.success is True
    assert result.data == {"recorded": True}


def test_billcom_schedule_payment_passes_payment_fields() -> None:
    billcom = FakeBillCom()
    record = _record(
        target_system="billcom",
        action_type="schedule_payment",
        parameters={"billId": "bb-1", "vendorId": "bv-1", "amount": "900", "processDate": "2024-03-05"},
    )
    result = _dispatcher(billcom=billcom).execute(record)

    assert result.external_id == "sp-1"
    assert billcom.calls == [("schedule_payment", ("bb-1", "bv-1", 900.0, "2024-03-05", "ACH"))]


@pytest.mark.parametrize("status", [ACTION_PENDING, ACTION_APPROVED, ACTION_FAILED])
def test_compensate_requires_completed_status_and_never_calls_adapter(status: str) -> None:
    quickbooks = FakeQuickBooks(vendor={"Id": "v-1"})
    with pytest.raises(ActionDispatchError) as excinfo:
        _dispatcher(quickbooks).compensate(_record(status=status, external_id="bill-1"))
    assert excinfo.value.kind == ERROR_COMPENSATION_FAILED
    assert quickbooks.calls == []


def test_compensate_requires_external_id() -> None:
    with pytest.raises(ActionDispatchError, match="No external ID") as excinfo:
        _dispatcher().compensate(_record(status=ACTION_COMPLETED))
    assert excinfo.value.kind == ERROR_COMPENSATION_FAILED


def test_compensate_create_bill_deletes_the_bill_with_declared_sync_token() -> None:
    quickbooks = FakeQuickBooks(vendor={"Id": "v-1"})
    record = _record(
        status=ACTION_COMPLETED,
        external_id="bill-1",
        compensation=Compensation(action_type="delete_bill", parameters={"syncToken": "3"}),
    )
    result = _dispatcher(quickbooks).compensate(record)

    assert result.success is True
    assert result.data["compensation_id"] == "comp-1"
    assert quickbooks.calls == [("delete_bill", ("bill-1", "3"))]


def test_compensate_schedule_payment_voids_payment() -> None:
    billcom = FakeBillCom()
    record = _record(
        target_system="billcom",
        action_type="schedule_payment",
        status=ACTION_COMPLETED,
        external_id="sp-1",
    )
    _dispatcher(billcom=billcom).compensate(record)
    assert billcom.calls == [("void_payment", "sp-1")]


def test_compensate_without_mapping_fails() -> None:
    record = _record(action_type="record_payment", status=ACTION_COMPLETED, external_id="pay-1")
    with pytest.raises(ActionDispatchError, match="No compensation available") as excinfo:
        _dispatcher().compensate(record)
    assert excinfo.value.kind == ERROR_COMPENSATION_FAILED


def test_compensation_call_failure_is_compensation_failed_with_cause() -> None:
    quickbooks = FakeQuickBooks(fail_with=AdapterError(ADAPTER_API_ERROR, "gone", status_code=404))
    record = _record(status=ACTION_COMPLETED, external_id="bill-1")
    with pytest.raises(ActionDispatchError) as excinfo:
        _dispatcher(quickbooks).compensate(record)

    assert excinfo.value.kind == ERROR_COMPENSATION_FAILED
    assert excinfo.value.details["cause"] == ERROR_EXTERNAL_API
    assert excinfo.value.details["status_code"] == 404


def test_resolve_risk_gates_execution_when_policy_requires_approval() -> None:
    policy = RiskPolicy.model_validate(
        {
            "version": "t",
            "settings": {
                "default_risk_level": "low",
                "require_approval_for_new_vendors": False,
                "require_approval_for_new_clients": False,
            },
            "rules": [
                {
                    "name": "high_amount",
                    "condition": {"field": "amount", "operator": ">", "value": 1000},
                    "risk_level": "high",
                    "requires_approval": True,
                }
            ],
        }
    )
    quickbooks = FakeQuickBooks(vendor={"Id": "v-1"})
    dispatcher = _dispatcher(quickbooks, risk_engine=RiskAssessmentEngine(policy))

    assessed = dispatcher.resolve_risk(_record())
    assert assessed.risk_level == "high"
    assert assessed.requires_approval is True
    with pytest.raises(ActionDispatchError) as excinfo:
        dispatcher.execute(_record())
    assert excinfo.value.kind == ERROR_INVALID_STATE
    assert quickbooks.calls == []


def test_dispatch_outcomes_are_counted() -> None:
    metrics = OrchestrationMetrics()
    dispatcher = _dispatcher(metrics=metrics)
    dispatcher.execute(_record())
    with pytest.raises(ActionDispatchError):
        dispatcher.execute(_record(target_system="xero"))

    counters = metrics.snapshot()["metrics"]
    assert counters["dispatch_executed_total"] == 1
    assert counters["dispatch_failed_total"] == 1
