"""
Exception taxonomy for the triage workflow.

Per-item errors (summarization, parsing) are recovered by excluding the item.
Stage-level errors leave the checkpoint resumable.
"""

from __future__ import annotations


class TriageError(RuntimeError):
    """Base class for triage failures."""


class SummarizationError(TriageError):
    """Summarizer could not produce a valid score for one message."""


class JSONExtractionError(ValueError):
    """Model output contained no parseable JSON."""


class GmailParsingError(TriageError):
    """Provider payload could not be normalized into a message."""


class CheckpointError(TriageError):
    """Illegal checkpoint transition (stages only move forward)."""


class LeaseLostError(CheckpointError):
    """The run's batch lease expired and another run took the batch over."""

    def __init__(self, batch_id: str, owner: str):
        super().__init__(f"lease on batch {batch_id} no longer held by {owner}")
        self.batch_id = batch_id
        self.owner = owner


class InvalidBatchError(TriageError):
    """Trigger input cannot be processed (empty batch, unknown user)."""


class NotificationDeliveryError(TriageError):
    """Push gateway exhausted its retries."""


class BatchInProgressError(TriageError):
    """Another run currently owns the batch lease."""

    def __init__(self, user_id: str, batch_id: str):
        super().__init__(f"batch {batch_id} is already being processed")
        self.user_id = user_id
        self.batch_id = batch_id


class StageFailedError(TriageError):
    """A stage failed after its retries; the batch can be resumed."""

    def __init__(self, stage: str, batch_id: str, cause: BaseException | None = None):
        super().__init__(f"stage '{stage}' failed for batch {batch_id}: {cause}")
        self.stage = stage
        self.batch_id = batch_id
        self.cause = cause


class WorkflowCancelledError(TriageError):
    """Run was cancelled before ``stage`` started; the batch can be resumed."""

    def __init__(self, stage: str, batch_id: str):
        super().__init__(f"batch {batch_id} cancelled before stage '{stage}'")
        self.stage = stage
        self.batch_id = batch_id
