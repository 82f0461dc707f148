"""Gmail message source (read-only)

The fetcher depends only on the `MessageSource` protocol. `GmailMessageSource`
implements it over the Gmail API; credentials come from an injected
`GmailServiceProvider` so token refresh stays outside this package.
"""

from __future__ import annotations

from typing import Any, Protocol

from googleapiclient.errors import HttpError

from triageq.gmail.parser import parse_message_strict
from triageq.infrastructure.retry import AdapterError
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event, time_block
from triageq.storage.models import MessageRecord

logger = get_logger(__name__)


class MessageSource(Protocol):
    def get_message(self, user_id: str, external_id: str) -> MessageRecord:
        """Return the normalized message or raise (AdapterError / GmailParsingError)."""
        ...


class GmailServiceProvider(Protocol):
    def build_gmail_service(self, user_id: str) -> Any:
        """Return an authenticated ``googleapiclient`` Gmail service for the user."""
        ...


class GmailMessageSource:
    """
    Authenticated Gmail API source

    Fetches one message per call with ``users.messages.get(format="full")`` and
    normalizes it. HTTP failures surface as `AdapterError` carrying the status
    code so retry policies can tell 4xx from 429/5xx.
    """

    def __init__(self, service_provider: GmailServiceProvider):
        self.service_provider = service_provider
        self._services: dict[str, Any] = {}

    def _service(self, user_id: str) -> Any:
        if user_id not in self._services:
            self._services[user_id] = self.service_provider.build_gmail_service(user_id)
        return self._services[user_id]

    def get_message(self, user_id: str, external_id: str) -> MessageRecord:
        try:
            with time_block("gmail.get_message.latency"):
                raw = (
                    self._service(user_id)
                    .users()
                    .messages()
                    .get(userId="me", id=external_id, format="full")
                    .execute()
                )
        except HttpError as e:
            status = getattr(e.resp, "status", None)
            logger.warning("Gmail API error fetching message: %s", e)
            log_event("gmail.get_message.error", status=status)
            counter("gmail.get_message.error")
            raise AdapterError(
                f"gmail get failed: {e}", status_code=int(status) if status else None
            ) from e

        return parse_message_strict(raw, user_id)
