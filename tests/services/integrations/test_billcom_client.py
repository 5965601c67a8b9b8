from __future__ import annotations

import json
from typing import Any

import pytest

from bookkeeping_agent.integrations.billcom import BillComClient
from bookkeeping_agent.integrations.contracts import ADAPTER_API_ERROR, ADAPTER_INVALID_RESPONSE, AdapterError


class FakeResponse:
    def __init__(self, status_code: int, body: Any) -> None:
        self.status_code = status_code
        self._body = body

    def json(self) -> Any:
        return self._body


class FakeSession:
    def __init__(self, *responses: FakeResponse) -> None:
        self.responses = list(responses)
        self.posts: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.posts.append({"url": url, **kwargs})
        return self.responses.pop(0)


def _ok(data: Any) -> FakeResponse:
    return FakeResponse(200, {"response_status": 0, "response_message": "Success", "response_data": data})


def _client(session: FakeSession, *, session_id: str | None = "sess-1") -> BillComClient:
    return BillComClient(dev_key="dev", session_id=session_id, base_url="https://billcom.test/api/v2", session=session)


def test_operations_post_form_encoded_payload_to_operation_endpoint() -> None:
    session = FakeSession(_ok({"id": "bill-9"}))
    created = _client(session).create_bill({"vendorId": "v-1", "amount": 10})

    assert created == {"id": "bill-9"}
    sent = session.posts[0]
    assert sent["url"] == "https://billcom.test/api/v2/Crud/Create/Bill.json"
    assert sent["data"]["devKey"] == "dev"
    assert sent["data"]["sessionId"] == "sess-1"
    assert json.loads(sent["data"]["data"]) == {"obj": {"amount": 10, "vendorId": "v-1"}}


def test_login_stores_session_id() -> None:
    session = FakeSession(_ok({"sessionId": "new-session"}))
    client = _client(session, session_id=None)
    client.login("user", "pw", "org")

    assert client.session_id == "new-session"
    assert session.posts[0]["url"].endswith("/Login.json")


def test_schedule_payment_and_void_payment() -> None:
    session = FakeSession(_ok({"id": "sp-1"}), _ok({}))
    client = _client(session)
    payment = client.schedule_payment("bill-1", "v-1", 120.5, "2024-03-05")
    client.void_payment("sp-1")

    assert payment["id"] == "sp-1"
    scheduled = json.loads(session.posts[0]["data"]["data"])["obj"]
    assert scheduled["paymentType"] == "ACH"
    assert session.posts[1]["url"].endswith("/VoidSentPay.json")
    assert json.loads(session.posts[1]["data"]["data"]) == {"sentPayId": "sp-1"}


def test_find_vendor_by_name_returns_first_match_or_none() -> None:
    session = FakeSession(_ok([{"id": "v-1", "name": "Acme"}]), _ok([]))
    client = _client(session)

    assert client.find_vendor_by_name("Acme") == {"id": "v-1", "name": "Acme"}
    assert client.find_vendor_by_name("Nobody") is None


def test_error_status_in_body_raises_with_response_data_as_fault() -> None:
    error_block = {"error_code": "BDC_1109", "error_message": "Invalid session"}
    session = FakeSession(FakeResponse(200, {"response_status": 1, "response_data": error_block}))
    with pytest.raises(AdapterError, match="Invalid session") as excinfo:
        _client(session).delete_bill("bill-1")

    assert excinfo.value.code == ADAPTER_API_ERROR
    assert excinfo.value.fault == error_block


def test_non_object_body_is_invalid_response() -> None:
    session = FakeSession(FakeResponse(200, ["unexpected"]))
    with pytest.raises(AdapterError) as excinfo:
        _client(session).void_payment("sp-1")
    assert excinfo.value.code == ADAPTER_INVALID_RESPONSE
