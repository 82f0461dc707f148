from __future__ import annotations

from typing import Any

import pytest
import requests
from conftest import no_sleep

from triageq.infrastructure.retry import RetryPolicy
from triageq.observability.telemetry import counter
from triageq.triage.errors import NotificationDeliveryError
from triageq.triage.notifications import ExpoPushGateway


class StaticTokens:
    def __init__(self, tokens: dict[str, list[str]]):
        self.tokens = tokens

    def tokens_for(self, user_id: str) -> list[str]:
        return self.tokens.get(user_id, [])


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None):
        self.status_code = status_code
        self._body = body if body is not None else {"data": [{"status": "ok", "id": "t1"}]}

    def json(self) -> Any:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class FakeSession:
    """requests.Session stand-in returning queued responses or raising queued errors."""

    def __init__(self, *responses: FakeResponse | Exception):
        self.responses = list(responses)
        self.posts: list[dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.posts.append({"url": url, **kwargs})
        item = self.responses.pop(0) if self.responses else FakeResponse()
        if isinstance(item, Exception):
            raise item
        return item


PAYLOAD = {
    "userId": "user-1",
    "title": "Urgent: Dana Lee",
    "body": "Board deck due at 3pm",
    "data": {"type": "high_priority_email", "urgencyScore": 91, "highPriorityCount": 1},
}


def _gateway(session: FakeSession, tokens: list[str] | None = None, **kwargs) -> ExpoPushGateway:
    return ExpoPushGateway(
        StaticTokens({"user-1": tokens if tokens is not None else ["ExponentPushToken[a]"]}),
        session=session,  # type: ignore[arg-type]
        url="https://push.test/send",
        retry_policy=RetryPolicy(
            stage="push.send", max_attempts=3, timeout_seconds=None, sleep_fn=no_sleep
        ),
        **kwargs,
    )


def test_sends_one_message_per_device():
    session = FakeSession()
    gateway = _gateway(session, tokens=["ExponentPushToken[a]", "ExponentPushToken[b]"])

    gateway.notify("user-1", PAYLOAD)

    assert len(session.posts) == 1
    post = session.posts[0]
    assert post["url"] == "https://push.test/send"
    assert [m["to"] for m in post["json"]] == ["ExponentPushToken[a]", "ExponentPushToken[b]"]
    first = post["json"][0]
    assert first["title"] == "Urgent: Dana Lee"
    assert first["body"] == "Board deck due at 3pm"
    assert first["data"]["type"] == "high_priority_email"
    assert first["priority"] == "high"
    assert counter("push.sent", 0) == 1


def test_body_omitted_when_none():
    session = FakeSession()
    _gateway(session).notify("user-1", {**PAYLOAD, "body": None})
    assert "body" not in session.posts[0]["json"][0]


def test_access_token_sent_as_bearer():
    session = FakeSession()
    _gateway(session, access_token="expo-secret").notify("user-1", PAYLOAD)
    assert session.posts[0]["headers"]["Authorization"] == "Bearer expo-secret"


def test_no_tokens_skips_without_request():
    session = FakeSession()
    _gateway(session, tokens=[]).notify("user-1", PAYLOAD)

    assert session.posts == []
    assert counter("push.no_tokens", 0) == 1


def test_server_errors_are_retried():
    session = FakeSession(FakeResponse(503, {}), FakeResponse(200))
    _gateway(session).notify("user-1", PAYLOAD)
    assert len(session.posts) == 2


def test_transport_errors_are_retried():
    session = FakeSession(requests.exceptions.ConnectionError("reset"), FakeResponse(200))
    _gateway(session).notify("user-1", PAYLOAD)
    assert len(session.posts) == 2


def test_client_error_fails_without_retry():
    session = FakeSession(FakeResponse(400, {}))
    with pytest.raises(NotificationDeliveryError):
        _gateway(session).notify("user-1", PAYLOAD)
    assert len(session.posts) == 1


def test_exhausted_retries_raise_delivery_error():
    session = FakeSession(*(FakeResponse(500, {}) for _ in range(3)))
    with pytest.raises(NotificationDeliveryError):
        _gateway(session).notify("user-1", PAYLOAD)
    assert len(session.posts) == 3
    assert counter("push.failed", 0) == 1


def test_all_tickets_rejected_raises():
    body = {"data": [{"status": "error", "details": {"error": "DeviceNotRegistered"}}]}
    session = FakeSession(FakeResponse(200, body))

    with pytest.raises(NotificationDeliveryError, match="rejected every device token"):
        _gateway(session).notify("user-1", PAYLOAD)
    assert counter("push.ticket_error.DeviceNotRegistered", 0) == 1


def test_partial_ticket_errors_still_count_as_sent():
    body = {
        "data": [
            {"status": "ok", "id": "t1"},
            {"status": "error", "details": {"error": "DeviceNotRegistered"}},
        ]
    }
    session = FakeSession(FakeResponse(200, body))
    _gateway(session, tokens=["ExponentPushToken[a]", "ExponentPushToken[b]"]).notify(
        "user-1", PAYLOAD
    )
    assert counter("push.sent", 0) == 1


def test_non_json_success_body_is_tolerated():
    session = FakeSession(FakeResponse(200, ValueError("not json")))
    _gateway(session).notify("user-1", PAYLOAD)
    assert counter("push.sent", 0) == 1
