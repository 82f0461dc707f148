"""
Pytest configuration for TriageQ tests

Every test gets its own SQLite file and in-memory fakes for the three external
dependencies (mail provider, LLM, push gateway). No test touches the network.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from triageq.gmail.fetcher import MailFetcher
from triageq.infrastructure.database import Database
from triageq.infrastructure.retry import AdapterError, CircuitBreaker, RetryPolicy
from triageq.observability.telemetry import reset_counters, reset_latencies
from triageq.storage.checkpoint import CheckpointStore
from triageq.storage.message_store import MessageStore
from triageq.storage.models import MessageRecord
from triageq.triage.errors import GmailParsingError
from triageq.triage.filters import SubscriptionFilter
from triageq.triage.summarizer import Summarizer
from triageq.triage.workflow import TriageWorkflow

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def no_sleep(_: float) -> None:
    return None


def make_message(
    external_id: str,
    user_id: str = "user-1",
    subject: str | None = None,
    sender: str = "Alice Smith <alice@acme-corp.com>",
    minutes: int = 0,
    **extra: Any,
) -> MessageRecord:
    return MessageRecord(
        external_id=external_id,
        user_id=user_id,
        subject=subject if subject is not None else f"Subject {external_id}",
        sender=sender,
        received_at=BASE_TIME + timedelta(minutes=minutes),
        body_ref=f"gmail:{external_id}",
        body_preview=f"Body of {external_id}",
        **extra,
    )


class FakeMessageSource:
    """MessageSource over a dict; values may be exceptions to raise."""

    def __init__(self, messages: dict[str, MessageRecord | Exception] | None = None):
        self.messages: dict[str, MessageRecord | Exception] = dict(messages or {})
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def add(self, message: MessageRecord) -> None:
        self.messages[message.external_id] = message

    def get_message(self, user_id: str, external_id: str) -> MessageRecord:
        with self._lock:
            self.calls.append(external_id)
        value = self.messages.get(external_id)
        if value is None:
            raise AdapterError("not found", status_code=404)
        if isinstance(value, Exception):
            raise value
        return value


class FakeLLM:
    """Scores prompts by the subject line they contain."""

    _SUBJECT = re.compile(r"^Subject: (.*)$", re.MULTILINE)

    def __init__(self, scores: dict[str, int | Exception | str] | None = None, default: int = 10):
        self.scores: dict[str, int | Exception | str] = dict(scores or {})
        self.default = default
        self.prompts: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, prompt: str) -> str:
        with self._lock:
            self.prompts.append(prompt)
        match = self._SUBJECT.search(prompt)
        subject = match.group(1).strip() if match else ""
        value = self.scores.get(subject, self.default)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, str):
            return value
        return (
            '{"summary": "You have a message", "urgencyScore": %d, '
            '"urgencyReason": "test", "actionRequired": "reply"}' % value
        )

    @property
    def call_count(self) -> int:
        return len(self.prompts)


class RecordingGateway:
    """NotificationGateway that records payloads; optionally fails or hooks."""

    def __init__(self, fail_with: BaseException | None = None):
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.fail_with = fail_with
        self.before_send: Callable[[], None] | None = None

    def notify(self, user_id: str, payload: dict[str, Any]) -> None:
        if self.before_send is not None:
            self.before_send()
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((user_id, payload))


@pytest.fixture(autouse=True)
def _reset_telemetry():
    reset_counters()
    reset_latencies()
    yield


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "triageq.db", pool_size=2)
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def store(db) -> MessageStore:
    return MessageStore(db)


@pytest.fixture
def checkpoints(db) -> CheckpointStore:
    return CheckpointStore(db)


@pytest.fixture
def source() -> FakeMessageSource:
    return FakeMessageSource()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def fast_fetch_policy() -> RetryPolicy:
    return RetryPolicy(
        stage="gmail.fetch",
        max_attempts=2,
        timeout_seconds=None,
        sleep_fn=no_sleep,
        non_retryable=(GmailParsingError,),
    )


@pytest.fixture
def fetcher(store, source, fast_fetch_policy) -> MailFetcher:
    return MailFetcher(
        store,
        source,
        max_workers=3,
        retry_policy=fast_fetch_policy,
        circuit=CircuitBreaker(stage="gmail.fetch", fail_max=50),
    )


@pytest.fixture
def subscription_filter(store, tmp_path) -> SubscriptionFilter:
    return SubscriptionFilter(store, bulk_senders_path=tmp_path / "no_overrides.yaml")


@pytest.fixture
def make_workflow(store, checkpoints, fetcher, subscription_filter, llm, gateway):
    """Factory so tests can override any collaborator or setting."""

    def _make(**overrides: Any) -> TriageWorkflow:
        kwargs: dict[str, Any] = {
            "store": store,
            "checkpoints": checkpoints,
            "fetcher": fetcher,
            "summarizer": Summarizer(llm=llm, timeout_seconds=5),
            "subscription_filter": subscription_filter,
            "gateway": gateway,
            "threshold": 70,
            "summarize_max_workers": 2,
            "stage_max_attempts": 2,
            "stage_retry_base_delay": 0.0,
            "reuse_existing_summaries": True,
            "sleep_fn": no_sleep,
            "owner_id": "test-worker",
        }
        kwargs.update(overrides)
        return TriageWorkflow(**kwargs)

    return _make
