from __future__ import annotations

from conftest import FakeMessageSource, make_message

from triageq.gmail.fetcher import MailFetcher
from triageq.infrastructure.retry import AdapterError, CircuitBreaker
from triageq.observability.telemetry import counter
from triageq.triage.errors import GmailParsingError


def test_fetch_stores_every_message(fetcher, source, store):
    for i in range(1, 4):
        source.add(make_message(f"m{i}"))

    result = fetcher.fetch_many("user-1", ["m1", "m2", "m3"])

    assert result.stored == ["m1", "m2", "m3"]
    assert result.failed == []
    assert store.count_messages("user-1") == 3


def test_refetch_does_not_duplicate_or_call_provider(fetcher, source, store):
    source.add(make_message("m1"))
    fetcher.fetch_many("user-1", ["m1"])
    fetcher.fetch_many("user-1", ["m1", "m1"])

    assert store.count_messages("user-1") == 1
    assert source.calls == ["m1"]
    assert counter("fetch.already_stored", 0) == 1


def test_partial_failures_are_reported_in_order(fetcher, source):
    for external_id in ("m1", "m3", "m5"):
        source.add(make_message(external_id))

    result = fetcher.fetch_many("user-1", ["m1", "m2", "m3", "m4", "m5"])

    assert result.stored == ["m1", "m3", "m5"]
    assert result.failed == ["m2", "m4"]
    assert counter("fetch.failed", 0) == 2


def test_transient_errors_are_retried(fetcher, store):
    class FlakySource(FakeMessageSource):
        def get_message(self, user_id, external_id):
            if external_id not in self.calls:
                self.calls.append(external_id)
                raise AdapterError("backend error", status_code=503)
            return super().get_message(user_id, external_id)

    source = FlakySource({"m1": make_message("m1")})
    flaky_fetcher = MailFetcher(store, source, retry_policy=fetcher.retry_policy)

    assert flaky_fetcher.fetch_many("user-1", ["m1"]).stored == ["m1"]


def test_parse_errors_are_not_retried(fetcher, source):
    source.messages["bad"] = GmailParsingError("missing From")

    result = fetcher.fetch_many("user-1", ["bad"])

    assert result.failed == ["bad"]
    assert source.calls == ["bad"]


def test_mismatched_provider_record_is_rejected(fetcher, source, store):
    source.messages["m1"] = make_message("other-id")

    assert fetcher.fetch_many("user-1", ["m1"]).failed == ["m1"]
    assert store.count_messages("user-1") == 0


def test_open_circuit_short_circuits_provider(store, source, fast_fetch_policy):
    circuit = CircuitBreaker(stage="gmail.fetch", fail_max=1, reset_timeout=300.0)
    fetcher = MailFetcher(
        store, source, max_workers=1, retry_policy=fast_fetch_policy, circuit=circuit
    )
    source.messages["m1"] = AdapterError("backend error", status_code=500)
    source.add(make_message("m2"))

    result = fetcher.fetch_many("user-1", ["m1", "m2"])

    assert result.failed == ["m1", "m2"]
    assert "m2" not in source.calls
    assert circuit.state == "open"


def test_empty_input(fetcher, source):
    result = fetcher.fetch_many("user-1", [])
    assert result.stored == []
    assert result.failed == []
    assert source.calls == []
