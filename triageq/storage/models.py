"""
Domain models (Pydantic v2) for the triage workflow.

Models validate at ingress (trigger input, stored rows, LLM output). Sensitive
fields (subjects, addresses, summaries) are redacted in repr and telemetry dumps.
"""

from __future__ import annotations

from datetime import datetime, timezone
from hashlib import sha256
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from triageq.infrastructure.idempotency import batch_key, dedupe_ids

ActionClassification = Literal["reply_needed", "action_required", "fyi", "none"]
TriageAction = Literal["done", "reply_needed", "delegated"]

STAGES: tuple[str, ...] = ("fetching", "summarizing", "filtering", "deciding", "notifying", "done")
STATUSES: tuple[str, ...] = ("running", "failed", "cancelled", "done")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _hash_value(value: str) -> str:
    digest = sha256(value.encode("utf-8")).hexdigest()
    return f"hash:{digest[:12]}"


def stage_index(stage: str) -> int:
    return STAGES.index(stage)


class RedactedModel(BaseModel):
    """Base model that redacts sensitive fields in repr/dumps."""

    model_config = ConfigDict(frozen=True)
    _redact_fields = {
        "subject",
        "sender",
        "user_email",
        "rationale",
        "action_description",
        "summary",
        "body_preview",
    }

    def _redacted_dump(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        for field in self._redact_fields:
            if field in data and isinstance(data[field], str) and data[field]:
                data[field] = _hash_value(data[field])
        return data

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._redacted_dump()})"

    def redacted(self) -> dict[str, Any]:
        """Public helper for telemetry-safe dumps."""
        return self._redacted_dump()


class Batch(RedactedModel):
    """One set of newly-arrived message ids processed together."""

    batch_id: str = ""
    user_id: str
    user_email: str = ""
    external_ids: list[str] = Field(default_factory=list)

    @field_validator("user_id", "user_email")
    @classmethod
    def _strip(cls, value: str) -> str:
        return (value or "").strip()

    @field_validator("external_ids")
    @classmethod
    def _dedupe(cls, value: list[str]) -> list[str]:
        return dedupe_ids(value)

    @model_validator(mode="before")
    @classmethod
    def _derive_batch_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("batch_id"):
            user_id = (data.get("user_id") or "").strip()
            ids = dedupe_ids(data.get("external_ids") or [])
            if user_id and ids:
                data = {**data, "batch_id": batch_key(user_id, ids)}
        return data


class MessageRecord(RedactedModel):
    external_id: str
    user_id: str
    subject: str = ""
    sender: str = ""
    received_at: datetime
    body_ref: str = ""
    body_preview: str = ""
    list_unsubscribe: str | None = None
    precedence: str | None = None
    auto_submitted: str | None = None
    triage_action: TriageAction | None = None
    triaged_at: datetime | None = None

    @field_validator("received_at", "triaged_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_ids(self) -> MessageRecord:
        if not self.external_id or not self.user_id:
            raise ValueError("MessageRecord requires external_id and user_id")
        return self


class SummaryRecord(RedactedModel):
    external_id: str
    user_id: str
    batch_id: str
    urgency_score: int = Field(ge=0, le=100)
    action_classification: ActionClassification = "fyi"
    rationale: str = ""
    action_description: str = ""
    summary: str = ""
    created_at: str = Field(default_factory=utc_now)

    @property
    def urgency_band(self) -> str:
        """0-20 low, 21-50 normal, 51-80 important, 81-100 urgent."""
        if self.urgency_score <= 20:
            return "low"
        if self.urgency_score <= 50:
            return "normal"
        if self.urgency_score <= 80:
            return "important"
        return "urgent"


class WorkflowCheckpoint(RedactedModel):
    """Durable progress of one batch through the triage stages.

    ``stage`` names the next stage to run and only ever moves forward.
    """

    batch_id: str
    user_id: str
    user_email: str = ""
    external_ids: list[str] = Field(default_factory=list)
    stage: Literal["fetching", "summarizing", "filtering", "deciding", "notifying", "done"] = (
        "fetching"
    )
    status: Literal["running", "failed", "cancelled", "done"] = "running"
    failed_stage: str | None = None
    error: str | None = None
    fetch_result: dict[str, list[str]] | None = None
    summary_result: dict[str, int] | None = None
    filter_result: list[str] | None = None
    notification_claimed: bool = False
    notification_sent: bool = False
    attempts: int = 0
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def stored(self) -> list[str]:
        return list((self.fetch_result or {}).get("stored", []))

    @property
    def summarized_count(self) -> int:
        return len(self.summary_result or {})

    def advance(self, stage: str, **changes: Any) -> WorkflowCheckpoint:
        """Return a copy moved to ``stage`` with ``changes`` applied."""
        return self.model_copy(
            update={"stage": stage, "status": "running", "failed_stage": None, "error": None}
            | changes
            | {"updated_at": utc_now()}
        )

    def with_status(self, status: str, **changes: Any) -> WorkflowCheckpoint:
        return self.model_copy(update={"status": status, **changes, "updated_at": utc_now()})
