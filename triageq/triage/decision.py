"""
Select-most-urgent and notification payload construction.

Pure functions over summaries and stored metadata; recomputed on every resume
instead of being persisted.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Any

from triageq.storage.models import MessageRecord
from triageq.triage.types import NotificationDecision

NOTIFICATION_TYPE = "high_priority_email"

_LATEST = datetime.max.replace(tzinfo=timezone.utc)


def high_priority_candidates(scores: Mapping[str, int], threshold: int) -> list[str]:
    """Ids whose score meets the threshold, in the order given."""
    return [external_id for external_id, score in scores.items() if score >= threshold]


def select_most_urgent(
    candidate_ids: list[str],
    scores: Mapping[str, int],
    messages: Mapping[str, MessageRecord],
) -> str | None:
    """
    Highest score wins; ties go to the earliest ``received_at``, then the
    smallest external id.
    """
    if not candidate_ids:
        return None

    def _rank(external_id: str) -> tuple[int, datetime, str]:
        message = messages.get(external_id)
        received_at = message.received_at if message is not None else _LATEST
        return (-scores[external_id], received_at, external_id)

    return min(candidate_ids, key=_rank)


def decide(
    surviving_ids: list[str],
    scores: Mapping[str, int],
    messages: Mapping[str, MessageRecord],
    total_count: int,
) -> NotificationDecision:
    """Build the decision from filter survivors (all already above threshold)."""
    winner = select_most_urgent(surviving_ids, scores, messages)
    if winner is None:
        return NotificationDecision(should_notify=False, total_count=total_count)
    return NotificationDecision(
        should_notify=True,
        most_urgent_external_id=winner,
        urgency_score=scores[winner],
        high_priority_count=len(surviving_ids),
        total_count=total_count,
    )


def sender_display_name(sender: str) -> str:
    """Display name from a From header; bare addresses are returned as-is."""
    name, address = parseaddr(sender or "")
    return name.strip() or address.strip() or (sender or "").strip()


def build_payload(
    user_id: str,
    decision: NotificationDecision,
    message: MessageRecord | None,
) -> dict[str, Any]:
    """
    Build the push payload for a positive decision.

    One survivor: title "Urgent: {sender}", body is the subject.
    Several: title "{n} urgent emails need attention", body "Including: {subject}".
    """
    sender = sender_display_name(message.sender) if message else ""
    subject = message.subject if message else ""

    if decision.high_priority_count == 1:
        title = f"Urgent: {sender or 'New email'}"
        body: str | None = subject or None
    else:
        title = f"{decision.high_priority_count} urgent emails need attention"
        body = f"Including: {subject}" if subject else None

    data: dict[str, Any] = {
        "type": NOTIFICATION_TYPE,
        "urgencyScore": decision.urgency_score,
        "highPriorityCount": decision.high_priority_count,
    }
    if decision.most_urgent_external_id:
        data["emailId"] = decision.most_urgent_external_id
    if sender:
        data["senderName"] = sender

    return {"userId": user_id, "title": title, "body": body, "data": data}
