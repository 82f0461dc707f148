"""
Fetch-and-persist stage for arrival batches.

Each id is fetched at most once: ids already in the MessageStore count as stored
without a provider call. Provider calls fan out to a bounded thread pool, each
under a timeout and a RetryPolicy, with a CircuitBreaker guarding the provider.
Per-id failures are reported, never raised.
"""

from __future__ import annotations

import concurrent.futures

from triageq.config import FETCH_MAX_RETRIES, FETCH_MAX_WORKERS, FETCH_TIMEOUT_SECONDS
from triageq.gmail.client import MessageSource
from triageq.infrastructure.retry import AdapterError, CircuitBreaker, RetryPolicy
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event, time_block
from triageq.storage.message_store import MessageStore
from triageq.triage.errors import GmailParsingError
from triageq.triage.types import FetchResult
from triageq.utils.redaction import redact

logger = get_logger(__name__)


class CircuitOpenError(RuntimeError):
    """Provider circuit is open; the call was not attempted."""


class MailFetcher:
    def __init__(
        self,
        store: MessageStore,
        source: MessageSource,
        max_workers: int = FETCH_MAX_WORKERS,
        retry_policy: RetryPolicy | None = None,
        circuit: CircuitBreaker | None = None,
    ):
        self.store = store
        self.source = source
        self.max_workers = max(1, max_workers)
        self.retry_policy = retry_policy or RetryPolicy(
            stage="gmail.fetch",
            max_attempts=FETCH_MAX_RETRIES,
            timeout_seconds=FETCH_TIMEOUT_SECONDS,
            non_retryable=(GmailParsingError,),
        )
        self.circuit = circuit or CircuitBreaker(stage="gmail.fetch", fail_max=5, reset_timeout=30.0)

    def _fetch_one(self, user_id: str, external_id: str) -> None:
        if not self.circuit.allow_request():
            raise CircuitOpenError("gmail circuit open")

        try:
            record = self.retry_policy.execute(self.source.get_message, user_id, external_id)
        except GmailParsingError:
            # Malformed payloads say nothing about provider health
            raise
        except Exception:
            self.circuit.record_failure()
            raise
        self.circuit.record_success()

        if record.external_id != external_id or record.user_id != user_id:
            raise GmailParsingError("provider returned a different message than requested")
        self.store.upsert_message(record)

    def fetch_many(self, user_id: str, external_ids: list[str]) -> FetchResult:
        """
        Fetch and persist every id, reporting per-id success/failure.

        Result lists preserve input order.

        Side Effects:
            - Upserts MessageRecords via the MessageStore
            - Calls the provider for ids not yet stored
            - Updates circuit breaker state and fetch counters
        """
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return FetchResult()

        outcome: dict[str, bool] = {}
        pending: list[str] = []
        for external_id in ids:
            if self.store.has_message(user_id, external_id):
                outcome[external_id] = True
                counter("fetch.already_stored")
            else:
                pending.append(external_id)

        with time_block("fetch.batch.latency"):
            if pending:
                workers = min(self.max_workers, len(pending))
                with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                    future_to_id = {
                        executor.submit(self._fetch_one, user_id, external_id): external_id
                        for external_id in pending
                    }
                    for future in concurrent.futures.as_completed(future_to_id):
                        external_id = future_to_id[future]
                        try:
                            future.result()
                            outcome[external_id] = True
                            counter("fetch.stored")
                        except Exception as exc:
                            outcome[external_id] = False
                            counter("fetch.failed")
                            log_event(
                                "fetch.message_failed",
                                message_id_hash=redact(external_id),
                                error=str(exc),
                                status=getattr(exc, "status_code", None)
                                if isinstance(exc, AdapterError)
                                else None,
                            )

        result = FetchResult(
            stored=[i for i in ids if outcome.get(i)],
            failed=[i for i in ids if not outcome.get(i)],
        )
        log_event(
            "fetch.completed",
            user_id_hash=redact(user_id),
            requested=len(ids),
            stored=len(result.stored),
            failed=len(result.failed),
        )
        return result
