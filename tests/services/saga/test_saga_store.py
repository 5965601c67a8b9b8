from __future__ import annotations

from pathlib import Path

import pytest

from bookkeeping_agent.action_layer.contracts import Compensation
from bookkeeping_agent.saga.contracts import (
    SAGA_AWAITING_APPROVAL,
    SAGA_PENDING,
    SKIP_HARD_IRREVERSIBLE,
    SKIP_NO_COMPENSATION,
    Saga,
    SagaContractError,
    SagaStep,
)
from bookkeeping_agent.saga.storage import SagaStore, SagaStoreError


def _saga(saga_id: str = "saga-1", **overrides) -> Saga:
    payload = {
        "id": saga_id,
        "emailId": "email-1",
        "clientId": "client-1",
        "steps": [
            {
                "name": "create bill",
                "actionType": "create_bill",
                "targetSystem": "quickbooks",
                "parameters": {"vendorName": "Acme", "amount": 90},
                "compensation": {"actionType": "delete_bill", "parameters": {"syncToken": "0"}},
            },
            {
                "name": "notify",
                "actionType": "add_note",
                "targetSystem": "internal",
                "requiresApproval": True,
            },
        ],
    }
    payload.update(overrides)
    return Saga.from_payload(payload)


def test_from_payload_accepts_camel_case_and_defaults_step_ids() -> None:
    saga = _saga()

    assert saga.status == SAGA_PENDING
    assert saga.client_id == "client-1"
    assert [step.id for step in saga.steps] == ["step-0", "step-1"]
    assert saga.steps[0].compensation == Compensation(action_type="delete_bill", parameters={"syncToken": "0"})
    assert saga.steps[1].requires_approval is True
    assert saga.steps[0].skip_reason() is None
    assert saga.steps[1].skip_reason() == SKIP_NO_COMPENSATION


def test_hard_irreversible_wins_over_declared_compensation() -> None:
    step = SagaStep(
        id="s",
        name="pay",
        action_type="create_bill",
        target_system="quickbooks",
        compensation=Compensation(action_type="delete_bill"),
        reversibility="hard_irreversible",
    )
    assert step.skip_reason() == SKIP_HARD_IRREVERSIBLE


def test_invalid_payloads_are_rejected() -> None:
    with pytest.raises(SagaContractError, match="action_type"):
        Saga.from_payload({"id": "s", "email_id": "e", "steps": [{"target_system": "quickbooks"}]})
    with pytest.raises(SagaContractError, match="current_step"):
        _saga(currentStep=5)


def test_store_round_trips_status_cursor_and_step_list(tmp_path: Path) -> None:
    store = SagaStore(locator=str(tmp_path / "sagas.sqlite"))
    saga = store.create(_saga())

    step = saga.steps[0].mark_completed({"vendor_id": "v-1"}, external_id="bill-1", at="2024-03-01T00:00:00+00:00")
    paused = store.save(saga.with_step(0, step).advance().with_status(SAGA_AWAITING_APPROVAL))

    loaded = store.load("saga-1")
    assert loaded == paused
    assert loaded.current.name == "notify"
    assert [item.id for item in store.list_by_status(SAGA_AWAITING_APPROVAL)] == ["saga-1"]
    assert store.list_by_status(SAGA_PENDING) == []


def test_store_rejects_duplicates_and_unknown_ids(tmp_path: Path) -> None:
    store = SagaStore(locator=str(tmp_path / "sagas.sqlite"))
    store.create(_saga())

    with pytest.raises(SagaStoreError, match="already exists"):
        store.create(_saga())
    with pytest.raises(SagaStoreError):
        store.save(_saga("saga-2"))
    assert store.find("saga-2") is None
