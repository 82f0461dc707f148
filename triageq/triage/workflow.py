"""
Triage Workflow - durable five-stage pipeline for one arrival batch.

    fetching -> summarizing -> filtering -> deciding -> notifying -> done

Each stage result is written to the batch's WorkflowCheckpoint before the next
stage starts, so a crashed or failed run resumes where it stopped. A lease row
keeps concurrent submissions of the same batch out, and a notification claim
recorded before the push call keeps delivery at most once per batch.

Side effects are loud: every stage documents what it persists.
"""

from __future__ import annotations

import concurrent.futures
import os
import socket
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from triageq.config import (
    HIGH_PRIORITY_THRESHOLD,
    REUSE_EXISTING_SUMMARIES,
    STAGE_MAX_ATTEMPTS,
    STAGE_RETRY_BASE_DELAY,
    SUMMARIZE_MAX_WORKERS,
)
from triageq.gmail.fetcher import MailFetcher
from triageq.infrastructure.retry import RetryPolicy
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event, time_block
from triageq.storage.checkpoint import CheckpointStore
from triageq.storage.message_store import MessageStore
from triageq.storage.models import Batch, MessageRecord, WorkflowCheckpoint
from triageq.triage.decision import build_payload, decide, high_priority_candidates
from triageq.triage.errors import (
    CheckpointError,
    InvalidBatchError,
    StageFailedError,
    WorkflowCancelledError,
)
from triageq.triage.filters import SubscriptionFilter
from triageq.triage.notifications import NotificationGateway
from triageq.triage.summarizer import Summarizer
from triageq.triage.types import NotificationDecision, TriageResult
from triageq.utils.redaction import redact

logger = get_logger(__name__)

__all__ = ["TriageResult", "TriageWorkflow"]


@dataclass(frozen=True)
class _Run:
    """One invocation of `run`: the lease owner it writes as and its cancel flag."""

    owner: str
    cancel_event: threading.Event


StageHandler = Callable[[Batch, WorkflowCheckpoint, _Run], WorkflowCheckpoint]


def _default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class TriageWorkflow:
    """
    Orchestrates fetch, summarize, filter, decide and notify for a batch.

    All collaborators are injected; the workflow holds no module-level state.
    """

    def __init__(
        self,
        store: MessageStore,
        checkpoints: CheckpointStore,
        fetcher: MailFetcher,
        summarizer: Summarizer,
        subscription_filter: SubscriptionFilter,
        gateway: NotificationGateway,
        threshold: int = HIGH_PRIORITY_THRESHOLD,
        summarize_max_workers: int = SUMMARIZE_MAX_WORKERS,
        stage_max_attempts: int = STAGE_MAX_ATTEMPTS,
        stage_retry_base_delay: float = STAGE_RETRY_BASE_DELAY,
        reuse_existing_summaries: bool = REUSE_EXISTING_SUMMARIES,
        user_lookup: Callable[[str], bool] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        owner_id: str | None = None,
    ):
        self.store = store
        self.checkpoints = checkpoints
        self.fetcher = fetcher
        self.summarizer = summarizer
        self.subscription_filter = subscription_filter
        self.gateway = gateway
        self.threshold = threshold
        self.summarize_max_workers = max(1, summarize_max_workers)
        self.stage_max_attempts = max(1, stage_max_attempts)
        self.stage_retry_base_delay = stage_retry_base_delay
        self.reuse_existing_summaries = reuse_existing_summaries
        self.user_lookup = user_lookup
        self.sleep_fn = sleep_fn
        self.owner_id = owner_id or _default_owner()

        self._handlers: dict[str, StageHandler] = {
            "fetching": self._fetch_stage,
            "summarizing": self._summarize_stage,
            "filtering": self._filter_stage,
            "deciding": self._decide_stage,
            "notifying": self._notify_stage,
        }

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self, batch: Batch, cancel_event: threading.Event | None = None) -> TriageResult:
        """
        Run (or resume) the batch to completion.

        Returns the recorded result without side effects when the batch is
        already done. Fatal input (empty batch, unknown user) yields a zero
        result and no checkpoint.

        Side Effects:
            - Acquires and releases the batch lease
            - Persists the checkpoint after every stage
            - Fetches, summarizes and may notify (see stage docstrings)

        Raises:
            BatchInProgressError: another run holds the lease
            LeaseLostError: the lease expired mid-run and another run took over
            StageFailedError: a stage failed after its retries (resumable)
            WorkflowCancelledError: ``cancel_event`` was set (resumable)
        """
        try:
            self._validate(batch)
        except InvalidBatchError as exc:
            counter("workflow.invalid_batch")
            log_event("workflow.invalid_batch", reason=str(exc))
            return TriageResult()

        run = _Run(f"{self.owner_id}:{uuid.uuid4().hex[:8]}", cancel_event or threading.Event())
        self.checkpoints.acquire_lease(batch.user_id, batch.batch_id, run.owner)
        try:
            with time_block("workflow.run.latency"):
                return self._drive(batch, run)
        finally:
            self.checkpoints.release_lease(batch.user_id, batch.batch_id, run.owner)

    def _validate(self, batch: Batch) -> None:
        if not batch.user_id:
            raise InvalidBatchError("user_id is required")
        if not batch.external_ids:
            raise InvalidBatchError("batch has no message ids")
        if self.user_lookup is not None and not self.user_lookup(batch.user_id):
            raise InvalidBatchError("unknown user")

    def _drive(self, batch: Batch, run: _Run) -> TriageResult:
        checkpoint = self.checkpoints.load(batch.user_id, batch.batch_id)
        if checkpoint is not None and checkpoint.stage == "done":
            counter("workflow.already_done")
            log_event("workflow.already_done", batch_id=batch.batch_id)
            return self.result_from(checkpoint)

        if checkpoint is None:
            checkpoint = WorkflowCheckpoint(
                batch_id=batch.batch_id,
                user_id=batch.user_id,
                user_email=batch.user_email,
                external_ids=list(batch.external_ids),
                attempts=1,
            )
        else:
            log_event(
                "workflow.resumed",
                batch_id=batch.batch_id,
                stage=checkpoint.stage,
                previous_status=checkpoint.status,
            )
            counter("workflow.resumed")
            checkpoint = checkpoint.with_status(
                "running", attempts=checkpoint.attempts + 1, failed_stage=None, error=None
            )
        checkpoint = self.checkpoints.save(checkpoint, owner=run.owner)

        while checkpoint.stage != "done":
            stage = checkpoint.stage
            if run.cancel_event.is_set():
                self._mark_cancelled(checkpoint, stage, run)

            try:
                with time_block(f"workflow.{stage}.latency"):
                    checkpoint = self._run_stage(stage, batch, checkpoint, run)
            except WorkflowCancelledError:
                self._mark_cancelled(self._reload(checkpoint), stage, run)
            except CheckpointError:
                raise
            except Exception as exc:
                self._mark_failed(self._reload(checkpoint), stage, exc, run)
                raise StageFailedError(stage, batch.batch_id, exc) from exc

            if checkpoint.stage == "done":
                checkpoint = checkpoint.with_status("done")
            checkpoint = self.checkpoints.save(checkpoint, owner=run.owner)
            log_event("workflow.stage_completed", batch_id=batch.batch_id, stage=stage)

        result = self.result_from(checkpoint)
        counter("workflow.completed")
        log_event("workflow.completed", batch_id=batch.batch_id, **result.to_dict())
        return result

    def _run_stage(
        self,
        stage: str,
        batch: Batch,
        checkpoint: WorkflowCheckpoint,
        run: _Run,
    ) -> WorkflowCheckpoint:
        # Delivery retries belong to the gateway; a second workflow attempt
        # could double-send
        policy = RetryPolicy(
            stage=f"workflow.{stage}",
            max_attempts=1 if stage == "notifying" else self.stage_max_attempts,
            base_delay=self.stage_retry_base_delay,
            timeout_seconds=None,
            sleep_fn=self.sleep_fn,
            non_retryable=(WorkflowCancelledError, CheckpointError),
        )
        return policy.execute(self._handlers[stage], batch, checkpoint, run)

    def _reload(self, checkpoint: WorkflowCheckpoint) -> WorkflowCheckpoint:
        return self.checkpoints.load(checkpoint.user_id, checkpoint.batch_id) or checkpoint

    def _mark_cancelled(self, checkpoint: WorkflowCheckpoint, stage: str, run: _Run) -> None:
        self.checkpoints.save(checkpoint.with_status("cancelled"), owner=run.owner)
        counter("workflow.cancelled")
        log_event("workflow.cancelled", batch_id=checkpoint.batch_id, stage=stage)
        raise WorkflowCancelledError(stage, checkpoint.batch_id)

    def _mark_failed(
        self, checkpoint: WorkflowCheckpoint, stage: str, exc: Exception, run: _Run
    ) -> None:
        self.checkpoints.save(
            checkpoint.with_status("failed", failed_stage=stage, error=str(exc)[:500]),
            owner=run.owner,
        )
        counter("workflow.stage_failed")
        logger.error("Stage %s failed for batch %s: %s", stage, checkpoint.batch_id, exc)
        log_event("workflow.stage_failed", batch_id=checkpoint.batch_id, stage=stage)

    @staticmethod
    def result_from(checkpoint: WorkflowCheckpoint) -> TriageResult:
        return TriageResult(
            stored=len(checkpoint.stored),
            summarized=checkpoint.summarized_count,
            high_priority_count=len(checkpoint.filter_result or []),
            notification_sent=checkpoint.notification_sent,
        )

    def status(self, user_id: str, batch_id: str) -> WorkflowCheckpoint | None:
        return self.checkpoints.load(user_id, batch_id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _fetch_stage(
        self, batch: Batch, checkpoint: WorkflowCheckpoint, run: _Run
    ) -> WorkflowCheckpoint:
        """
        Fetch and persist every id in the batch.

        Side Effects:
            - Upserts MessageRecords (via MailFetcher)
            - Zero stored messages short-circuits the batch to done
        """
        fetch_result = self.fetcher.fetch_many(batch.user_id, batch.external_ids)
        if not fetch_result.stored:
            log_event("workflow.nothing_fetched", batch_id=batch.batch_id)
            return checkpoint.advance(
                "done",
                fetch_result=fetch_result.to_dict(),
                summary_result={},
                filter_result=[],
                notification_sent=False,
            )
        return checkpoint.advance("summarizing", fetch_result=fetch_result.to_dict())

    def _summarize_stage(
        self, batch: Batch, checkpoint: WorkflowCheckpoint, run: _Run
    ) -> WorkflowCheckpoint:
        """
        Score every fetched message, reusing stored summaries.

        Side Effects:
            - Calls the summarizer for messages without a usable summary
            - Appends SummaryRecords for this batch's cycle
            - Summaries finishing after cancellation are discarded
        """
        stored_ids = checkpoint.stored
        messages = self.store.get_messages(batch.user_id, stored_ids)

        scores: dict[str, int] = {}
        pending: list[MessageRecord] = []
        for external_id in stored_ids:
            existing = self.store.get_summary(batch.user_id, external_id, batch.batch_id)
            if existing is None and self.reuse_existing_summaries:
                existing = self.store.get_summary(batch.user_id, external_id)
            if existing is not None:
                scores[external_id] = existing.urgency_score
                counter("summarize.reused")
                continue
            message = messages.get(external_id)
            if message is None:
                counter("summarize.missing_message")
                log_event("summarize.missing_message", message_id_hash=redact(external_id))
                continue
            pending.append(message)

        if pending:
            workers = min(self.summarize_max_workers, len(pending))
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
                future_to_id = {
                    executor.submit(self.summarizer.summarize, message, batch.batch_id): (
                        message.external_id
                    )
                    for message in pending
                }
                for future in concurrent.futures.as_completed(future_to_id):
                    external_id = future_to_id[future]
                    try:
                        summary = future.result()
                    except Exception as exc:
                        counter("summarize.failed")
                        log_event(
                            "summarize.message_failed",
                            message_id_hash=redact(external_id),
                            error=str(exc),
                        )
                        continue
                    if run.cancel_event.is_set():
                        counter("summarize.discarded_after_cancel")
                        continue
                    scores[external_id] = self.store.put_summary(summary).urgency_score

        if run.cancel_event.is_set():
            raise WorkflowCancelledError("summarizing", batch.batch_id)

        # Keep fetch order for deterministic downstream iteration
        ordered = {i: scores[i] for i in stored_ids if i in scores}
        log_event(
            "summarize.completed",
            batch_id=batch.batch_id,
            requested=len(stored_ids),
            summarized=len(ordered),
        )
        return checkpoint.advance("filtering", summary_result=ordered)

    def _filter_stage(
        self, batch: Batch, checkpoint: WorkflowCheckpoint, run: _Run
    ) -> WorkflowCheckpoint:
        """
        Drop bulk senders from the above-threshold candidates.

        Side Effects:
            - Reads MessageRecords; persists surviving ids in the checkpoint
        """
        candidates = high_priority_candidates(checkpoint.summary_result or {}, self.threshold)
        surviving = self.subscription_filter.filter(batch.user_id, candidates) if candidates else []
        log_event(
            "filter.completed",
            batch_id=batch.batch_id,
            candidates=len(candidates),
            surviving=len(surviving),
        )
        return checkpoint.advance("deciding", filter_result=surviving)

    def _decision(
        self, batch: Batch, checkpoint: WorkflowCheckpoint
    ) -> tuple[NotificationDecision, dict[str, MessageRecord]]:
        surviving = list(checkpoint.filter_result or [])
        messages = self.store.get_messages(batch.user_id, surviving)
        decision = decide(
            surviving,
            checkpoint.summary_result or {},
            messages,
            total_count=len(checkpoint.stored),
        )
        return decision, messages

    def _decide_stage(
        self, batch: Batch, checkpoint: WorkflowCheckpoint, run: _Run
    ) -> WorkflowCheckpoint:
        """
        Pick the most urgent survivor.

        Side Effects:
            - None beyond the checkpoint; the decision is recomputed on resume
        """
        decision, _ = self._decision(batch, checkpoint)
        log_event(
            "decision.made",
            batch_id=batch.batch_id,
            should_notify=decision.should_notify,
            urgency_score=decision.urgency_score,
            high_priority_count=decision.high_priority_count,
        )
        if not decision.should_notify:
            return checkpoint.advance("done", notification_sent=False)
        return checkpoint.advance("notifying")

    def _notify_stage(
        self, batch: Batch, checkpoint: WorkflowCheckpoint, run: _Run
    ) -> WorkflowCheckpoint:
        """
        Send the batch's single notification.

        The claim is a guarded write that succeeds for one caller only, made
        while this run still holds the lease and before the gateway call. A
        checkpoint that is already claimed is never sent again, even if
        delivery was unconfirmed.

        Side Effects:
            - Persists the notification claim
            - Calls the NotificationGateway at most once
        """
        if checkpoint.notification_claimed:
            counter("notify.claim_unconfirmed")
            log_event("notify.skipped_claimed", batch_id=batch.batch_id)
            return checkpoint.advance("done", notification_sent=checkpoint.notification_sent)

        decision, messages = self._decision(batch, checkpoint)
        if not decision.should_notify:
            return checkpoint.advance("done", notification_sent=False)

        winner = messages.get(decision.most_urgent_external_id or "")
        payload = build_payload(batch.user_id, decision, winner)

        claimed = self.checkpoints.claim_notification(checkpoint, owner=run.owner)
        if claimed is None:
            stored = self._reload(checkpoint)
            return stored.advance("done", notification_sent=stored.notification_sent)

        try:
            self.gateway.notify(batch.user_id, payload)
        except Exception:
            # Delivery failed outright; release the claim so a resume can retry
            self.checkpoints.save(
                claimed.with_status("running", notification_claimed=False), owner=run.owner
            )
            counter("notify.failed")
            raise

        counter("notify.sent")
        log_event(
            "notify.sent",
            batch_id=batch.batch_id,
            urgency_score=decision.urgency_score,
            high_priority_count=decision.high_priority_count,
        )
        return claimed.advance("done", notification_sent=True)
