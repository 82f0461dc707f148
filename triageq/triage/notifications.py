"""
Push notification delivery.

The workflow depends on the `NotificationGateway` protocol only. The gateway
is a plain retryable send; at-most-once delivery per batch is enforced by the
workflow's notification claim, not here.
"""

from __future__ import annotations

from typing import Any, Protocol

import requests

from triageq.config import PUSH_MAX_RETRIES, PUSH_TIMEOUT_SECONDS
from triageq.infrastructure.retry import AdapterError, RetryPolicy
from triageq.infrastructure.settings import EXPO_ACCESS_TOKEN, EXPO_PUSH_URL
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event, time_block
from triageq.triage.errors import NotificationDeliveryError
from triageq.utils.redaction import redact

logger = get_logger(__name__)


class NotificationGateway(Protocol):
    def notify(self, user_id: str, payload: dict[str, Any]) -> None:
        """Deliver one payload to the user's devices or raise NotificationDeliveryError."""
        ...


class PushTokenDirectory(Protocol):
    def tokens_for(self, user_id: str) -> list[str]:
        """Return the Expo push tokens registered for a user."""
        ...


class ExpoPushGateway:
    """
    Sends notifications through the Expo push API.

    One POST per call carries a message for every registered device token.
    429/5xx responses and transport errors are retried; other 4xx are not.
    """

    def __init__(
        self,
        tokens: PushTokenDirectory,
        session: requests.Session | None = None,
        url: str = EXPO_PUSH_URL,
        access_token: str | None = EXPO_ACCESS_TOKEN,
        timeout_seconds: float = PUSH_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
    ):
        self.tokens = tokens
        self.session = session or requests.Session()
        self.url = url
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        # requests enforces the timeout itself
        self.retry_policy = retry_policy or RetryPolicy(
            stage="push.send", max_attempts=PUSH_MAX_RETRIES, timeout_seconds=None
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _build_messages(self, tokens: list[str], payload: dict[str, Any]) -> list[dict[str, Any]]:
        messages = []
        for token in tokens:
            message: dict[str, Any] = {
                "to": token,
                "title": payload.get("title"),
                "data": payload.get("data", {}),
                "sound": "default",
                "priority": "high",
            }
            if payload.get("body"):
                message["body"] = payload["body"]
            messages.append(message)
        return messages

    def _post(self, messages: list[dict[str, Any]]) -> dict[str, Any]:
        try:
            response = self.session.post(
                self.url,
                json=messages,
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            raise AdapterError(f"push request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise AdapterError(f"push request failed: {e}") from e

        if response.status_code != 200:
            raise AdapterError(
                f"push service returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            return {}

    def notify(self, user_id: str, payload: dict[str, Any]) -> None:
        """
        Deliver ``payload`` to every device registered for ``user_id``.

        Side Effects:
            - POSTs to the Expo push API (retried on 429/5xx)
            - Logs push telemetry

        Raises:
            NotificationDeliveryError: retries exhausted or request rejected
        """
        tokens = self.tokens.tokens_for(user_id)
        if not tokens:
            counter("push.no_tokens")
            log_event("push.skipped", user_id_hash=redact(user_id), reason="no_tokens")
            return

        messages = self._build_messages(tokens, payload)
        try:
            with time_block("push.send.latency"):
                body = self.retry_policy.execute(self._post, messages)
        except AdapterError as e:
            counter("push.failed")
            logger.error("Push delivery failed: %s", e)
            log_event("push.failed", user_id_hash=redact(user_id), status=e.status_code)
            raise NotificationDeliveryError(str(e)) from e

        tickets = body.get("data") if isinstance(body, dict) else None
        if isinstance(tickets, list):
            errors = [t for t in tickets if isinstance(t, dict) and t.get("status") == "error"]
            for ticket in errors:
                reason = (ticket.get("details") or {}).get("error", "unknown")
                counter(f"push.ticket_error.{reason}")
                logger.warning("Push ticket error: %s", reason)
            if errors and len(errors) == len(tickets):
                raise NotificationDeliveryError("push service rejected every device token")

        counter("push.sent")
        log_event("push.sent", user_id_hash=redact(user_id), devices=len(tokens))
