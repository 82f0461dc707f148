"""
Summarizer - LLM-based urgency scoring for stored messages.

Produces a decision-ready summary, a 0-100 urgency score and an action class
for one message. Scores use the bands 0-20 low, 21-50 normal, 51-80 important,
81-100 urgent. Any failure (timeout, provider error, malformed output) raises
SummarizationError so the workflow can exclude just that message.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from triageq.config import LLM_TIMEOUT_SECONDS, SUMMARIZE_BODY_CHARS
from triageq.infrastructure.retry import run_with_timeout
from triageq.llm.json_extraction import extract_json
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event, time_block
from triageq.storage.models import MessageRecord, SummaryRecord
from triageq.triage.errors import JSONExtractionError, SummarizationError
from triageq.utils.redaction import redact, sanitize_for_prompt

logger = get_logger(__name__)

# Model vocabulary -> stored action classes
ACTION_ALIASES = {
    "reply": "reply_needed",
    "reply_needed": "reply_needed",
    "action": "action_required",
    "action_required": "action_required",
    "fyi": "fyi",
    "none": "none",
}


class SummarySchema(BaseModel):
    """Schema for LLM response validation."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    summary: str = ""
    urgency_score: int = Field(alias="urgencyScore")
    urgency_reason: str = Field(default="", alias="urgencyReason")
    action_required: str = Field(default="fyi", alias="actionRequired")
    action_description: str = Field(default="", alias="actionDescription")

    @field_validator("urgency_score", mode="before")
    @classmethod
    def _clamp_score(cls, value: Any) -> int:
        if isinstance(value, bool):
            raise ValueError("urgencyScore must be a number")
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError, OverflowError) as e:
            raise ValueError("urgencyScore must be a number") from e
        return max(0, min(100, score))

    @field_validator("action_required", mode="before")
    @classmethod
    def _normalize_action(cls, value: Any) -> str:
        key = str(value or "").strip().lower()
        return ACTION_ALIASES.get(key, "fyi")

    @field_validator("summary", "urgency_reason", "action_description", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value)


def _default_llm(prompt: str) -> str:
    from triageq.llm.retry import call_llm

    return call_llm(prompt, counter_prefix="summarizer")


class Summarizer:
    """Scores one message at a time; safe to share across worker threads."""

    PROMPT_TEMPLATE = """Analyze this email and return a JSON triage summary.

The sender name and subject line are ALREADY displayed next to the summary. DO NOT repeat them.

SUMMARY GUIDELINES:
- Be concise but include the details needed to decide without opening the email
- Include specific dates, amounts, deadlines, or asks
- If it's a newsletter/marketing, say what it's promoting
- Use "you" to address the user directly

FIELDS:
1. summary: Decision-ready synopsis (what, when, how much, deadline)
2. urgencyScore: 0-100 (0-20 low, 21-50 normal, 51-80 important, 81-100 urgent)
3. urgencyReason: Brief explanation
4. actionRequired: "reply" | "action" | "fyi" | "none"
5. actionDescription: Specific action needed, if any

Email:
From: {sender}
Subject: {subject}
Body: {body}

Respond with only valid JSON, no markdown or explanation."""

    def __init__(
        self,
        llm: Callable[[str], str] | None = None,
        timeout_seconds: float = LLM_TIMEOUT_SECONDS,
    ):
        self._llm = llm or _default_llm
        self.timeout_seconds = timeout_seconds

    def build_prompt(self, message: MessageRecord) -> str:
        """Build the scoring prompt with sanitized inputs."""
        return self.PROMPT_TEMPLATE.format(
            sender=sanitize_for_prompt(message.sender, max_length=200),
            subject=sanitize_for_prompt(message.subject, max_length=300),
            body=sanitize_for_prompt(message.body_preview, max_length=SUMMARIZE_BODY_CHARS),
        )

    def summarize(self, message: MessageRecord, batch_id: str) -> SummaryRecord:
        """
        Score one message for the given triage cycle.

        Side Effects:
            - Calls the LLM once (plus its transient-error retries)
            - Logs summarizer events, increments telemetry counters

        Raises:
            SummarizationError: timeout, provider failure or malformed output
        """
        prompt = self.build_prompt(message)

        try:
            with time_block("summarizer.latency"):
                response_text = run_with_timeout(self._llm, self.timeout_seconds, prompt)
        except Exception as e:
            counter("summarizer.error")
            log_event(
                "summarizer.llm_error",
                message_id_hash=redact(message.external_id),
                error=str(e),
            )
            raise SummarizationError(f"LLM call failed: {e}") from e

        schema = self._parse_response(response_text, message.external_id)

        record = SummaryRecord(
            external_id=message.external_id,
            user_id=message.user_id,
            batch_id=batch_id,
            urgency_score=schema.urgency_score,
            action_classification=schema.action_required,
            rationale=schema.urgency_reason,
            action_description=schema.action_description,
            summary=schema.summary,
        )
        counter("summarizer.success")
        counter(f"summarizer.band.{record.urgency_band}")
        log_event(
            "summarizer.result",
            message_id_hash=redact(message.external_id),
            urgency_score=record.urgency_score,
            urgency_band=record.urgency_band,
            action=record.action_classification,
        )
        return record

    def _parse_response(self, response_text: str, external_id: str) -> SummarySchema:
        """Parse LLM response into a validated SummarySchema."""
        try:
            data = extract_json(response_text)
            if isinstance(data, list):
                # Some responses wrap the object in a one-element array
                data = data[0] if data and isinstance(data[0], dict) else None
            if not isinstance(data, dict):
                raise SummarizationError("model response is not a JSON object")
            return SummarySchema.model_validate(data)
        except (JSONExtractionError, ValidationError) as e:
            counter("summarizer.parse_error")
            logger.warning("Failed to parse summarizer response: %s", e)
            log_event("summarizer.parse_error", message_id_hash=redact(external_id))
            raise SummarizationError(f"malformed summarizer output: {e}") from e
