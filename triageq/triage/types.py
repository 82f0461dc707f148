"""
Transient values passed between triage stages. None of these are persisted
directly; checkpoints store their plain-data projections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class FetchResult:
    stored: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"stored": list(self.stored), "failed": list(self.failed)}


@dataclass
class FilterResult:
    """Verdict for one message from the subscription filter."""

    is_bulk: bool
    reason: str = ""


@dataclass
class NotificationDecision:
    should_notify: bool
    most_urgent_external_id: str | None = None
    urgency_score: int = 0
    high_priority_count: int = 0
    total_count: int = 0


@dataclass
class TriageResult:
    stored: int = 0
    summarized: int = 0
    high_priority_count: int = 0
    notification_sent: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stored": self.stored,
            "summarized": self.summarized,
            "highPriorityCount": self.high_priority_count,
            "notificationSent": self.notification_sent,
        }
