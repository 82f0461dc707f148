"""
Subscription/bulk-sender filter for high-priority candidates.

Runs after scoring, on above-threshold candidates only. Pure rule-based
decisions over stored message metadata: no LLM and no provider calls.
"""

from __future__ import annotations

import re
from email.utils import parseaddr
from pathlib import Path

import yaml

from triageq.config import BULK_SENDERS_PATH
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event
from triageq.storage.message_store import MessageStore
from triageq.storage.models import MessageRecord
from triageq.triage.filter_data import (
    AUTO_SUBMITTED_HUMAN_VALUE,
    BULK_PRECEDENCE_VALUES,
    DEFAULT_BULK_DOMAINS,
    NEWSLETTER_SUBJECT_MARKERS,
    NO_REPLY_LOCAL_PARTS,
)
from triageq.triage.types import FilterResult
from triageq.utils.redaction import redact

logger = get_logger(__name__)


class SubscriptionFilter:
    """
    Drop candidates sent by bulk/automated senders.

    Checks, in order:
    1. List-Unsubscribe header present
    2. Precedence: bulk | list | junk
    3. Auto-Submitted other than "no"
    4. No-reply style local part (noreply@, newsletter@, ...)
    5. Known bulk-sender domain, including subdomains
    6. Newsletter/promotion subject markers

    Keyword/domain constants live in filter_data.py; extra domains load from
    config/bulk_senders.yaml.
    """

    def __init__(
        self,
        store: MessageStore,
        bulk_senders_path: Path | None = None,
    ):
        self.store = store

        # Per-instance copy; rules files differ between filters
        self.bulk_domains: set[str] = set(DEFAULT_BULK_DOMAINS)
        self.allow_domains: set[str] = set()

        rules = self._load_rules(bulk_senders_path or BULK_SENDERS_PATH)
        self.bulk_domains.update(d.lower() for d in rules.get("bulk_domains") or [])
        self.allow_domains.update(d.lower() for d in rules.get("allow_domains") or [])

        logger.info(
            "SubscriptionFilter initialized: %d bulk domains, %d allow domains",
            len(self.bulk_domains),
            len(self.allow_domains),
        )

    def _load_rules(self, path: Path) -> dict:
        """Load bulk-sender overrides from YAML config."""
        if not path.exists():
            logger.warning("Bulk sender rules not found at %s, using defaults", path)
            return {}

        with open(path) as f:
            return yaml.safe_load(f) or {}

    def filter(self, user_id: str, candidate_ids: list[str]) -> list[str]:
        """
        Return the candidates that are not bulk mail, preserving order.

        Ids missing from the store are dropped since they cannot be checked.

        Side Effects:
            - Reads MessageRecords from the store
            - Logs one event per dropped candidate
        """
        messages = self.store.get_messages(user_id, candidate_ids)
        surviving: list[str] = []
        for external_id in candidate_ids:
            message = messages.get(external_id)
            if message is None:
                counter("filter.missing")
                log_event("filter.dropped", message_id_hash=redact(external_id), reason="missing")
                continue

            verdict = self.is_bulk(message)
            if verdict.is_bulk:
                counter("filter.bulk")
                log_event(
                    "filter.dropped",
                    message_id_hash=redact(external_id),
                    reason=verdict.reason,
                )
                continue
            surviving.append(external_id)
        return surviving

    def is_bulk(self, message: MessageRecord) -> FilterResult:
        """Classify one message. Pure; no I/O."""
        domain = self._extract_domain(message.sender)
        if domain and self._matches(domain, self.allow_domains):
            return FilterResult(is_bulk=False, reason="allowlisted_domain")

        if message.list_unsubscribe and message.list_unsubscribe.strip():
            return FilterResult(is_bulk=True, reason="list_unsubscribe")

        precedence = (message.precedence or "").strip().lower()
        if precedence in BULK_PRECEDENCE_VALUES:
            return FilterResult(is_bulk=True, reason=f"precedence:{precedence}")

        auto_submitted = (message.auto_submitted or "").strip().lower()
        if auto_submitted and auto_submitted != AUTO_SUBMITTED_HUMAN_VALUE:
            return FilterResult(is_bulk=True, reason=f"auto_submitted:{auto_submitted}")

        local_part = self._extract_local_part(message.sender)
        if local_part in NO_REPLY_LOCAL_PARTS:
            return FilterResult(is_bulk=True, reason=f"no_reply_sender:{local_part}")

        if domain and self._matches(domain, self.bulk_domains):
            return FilterResult(is_bulk=True, reason=f"bulk_domain:{domain}")

        subject_lower = message.subject.lower()
        for marker in NEWSLETTER_SUBJECT_MARKERS:
            if marker in subject_lower:
                return FilterResult(is_bulk=True, reason=f"newsletter_subject:{marker}")

        return FilterResult(is_bulk=False, reason="personal")

    def _extract_domain(self, sender: str) -> str:
        """
        Extract domain from a From header.

        Handles formats:
        - "noreply@amazon.com" -> "amazon.com"
        - "Amazon <noreply@amazon.com>" -> "amazon.com"
        """
        address = parseaddr(sender or "")[1] or (sender or "")
        if "@" not in address:
            return ""
        return address.rsplit("@", 1)[-1].lower().strip().rstrip(">")

    def _extract_local_part(self, sender: str) -> str:
        address = parseaddr(sender or "")[1] or (sender or "")
        if "@" not in address:
            return ""
        local = address.rsplit("@", 1)[0].lower()
        local = local.split("+", 1)[0]
        return re.sub(r"[._\-]", "", local)

    @staticmethod
    def _matches(domain: str, domains: set[str]) -> bool:
        """Exact match or any parent domain match ("em.x.com" matches "x.com")."""
        parts = domain.split(".")
        return any(".".join(parts[i:]) in domains for i in range(len(parts) - 1))
