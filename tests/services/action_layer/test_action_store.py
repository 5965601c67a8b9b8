from __future__ import annotations

from pathlib import Path

import pytest

from bookkeeping_agent.action_layer.contracts import (
    ACTION_APPROVED,
    ACTION_PENDING,
    ActionRecord,
    Compensation,
)
from bookkeeping_agent.action_layer.storage import ActionStore, ActionStoreError


def _record(action_id: str, **overrides) -> ActionRecord:
    payload = {
        "id": action_id,
        "action_type": "create_bill",
        "target_system": "quickbooks",
        "parameters": {"vendorName": "Acme", "amount": 120},
        "email_id": "email-1",
        "created_at": f"2024-03-01T10:00:0{action_id[-1]}+00:00",
    }
    payload.update(overrides)
    return ActionRecord(**payload)


def test_create_load_round_trips_the_full_record(tmp_path: Path) -> None:
    store = ActionStore(locator=str(tmp_path / "actions.sqlite"))
    record = _record(
        "a-1",
        compensation=Compensation(action_type="delete_bill", parameters={"syncToken": "0"}),
        risk_level="medium",
        risk_reasons=("amount_over_limit",),
    )
    store.create(record)

    assert store.load("a-1") == record
    assert store.find("missing") is None


def test_create_rejects_duplicate_ids(tmp_path: Path) -> None:
    store = ActionStore(locator=str(tmp_path / "actions.sqlite"))
    store.create(_record("a-1"))
    with pytest.raises(ActionStoreError, match="already exists"):
        store.create(_record("a-1"))


def test_save_replaces_record_and_requires_existing_row(tmp_path: Path) -> None:
    store = ActionStore(locator=str(tmp_path / "actions.sqlite"))
    store.create(_record("a-1"))
    store.save(store.load("a-1").approve("reviewer@example.com"))

    assert store.load("a-1").status == ACTION_APPROVED
    with pytest.raises(ActionStoreError, match="not found"):
        store.save(_record("a-9"))
    with pytest.raises(ActionStoreError, match="not found"):
        store.load("a-9")


def test_pending_approvals_lists_only_gated_pending_actions_in_creation_order(tmp_path: Path) -> None:
    store = ActionStore(locator=str(tmp_path / "actions.sqlite"))
    store.create(_record("a-2", requires_approval=True))
    store.create(_record("a-1", requires_approval=True))
    store.create(_record("a-3"))
    store.create(_record("a-4", requires_approval=True, status=ACTION_APPROVED))

    pending = store.list_pending_approvals()

    assert [item.id for item in pending] == ["a-1", "a-2"]
    assert all(item.status == ACTION_PENDING for item in pending)
    assert [item.id for item in store.list_pending_approvals(limit=1)] == ["a-1"]


def test_list_for_email_and_status_counts(tmp_path: Path) -> None:
    store = ActionStore(locator=str(tmp_path / "actions.sqlite"))
    store.create(_record("a-1"))
    store.create(_record("a-2", email_id="email-2"))
    store.create(_record("a-3", status=ACTION_APPROVED))

    assert [item.id for item in store.list_for_email("email-1")] == ["a-1", "a-3"]
    assert store.count_by_status() == {ACTION_PENDING: 2, ACTION_APPROVED: 1}
