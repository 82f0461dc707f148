"""
Deterministic batch identity for trigger submissions.

A trigger that omits ``batchId`` gets one derived from the user and the sorted,
de-duplicated message ids, so resubmitting the same arrival maps onto the same
workflow checkpoint (and therefore the same at-most-once notification claim).
"""

from __future__ import annotations

from collections.abc import Iterable
from hashlib import sha256

from triageq.observability.telemetry import counter, log_event


def dedupe_ids(external_ids: Iterable[str]) -> list[str]:
    """Drop blanks and duplicates, preserving first occurrence order."""
    seen: set[str] = set()
    ordered: list[str] = []
    for raw in external_ids:
        external_id = (raw or "").strip()
        if not external_id or external_id in seen:
            continue
        seen.add(external_id)
        ordered.append(external_id)
    return ordered


def batch_key(user_id: str, external_ids: Iterable[str]) -> str:
    """
    Compute deterministic batch id. Raises ValueError if required inputs are missing.
    """
    ids = sorted(dedupe_ids(external_ids))
    missing = [name for name, val in (("user_id", user_id), ("external_ids", ids)) if not val]
    if missing:
        counter("idempotency_drops")
        log_event("idempotency.drop", missing_fields=missing)
        raise ValueError(f"batch key requires: {', '.join(missing)}")

    digest = sha256("\n".join([user_id, *ids]).encode("utf-8")).hexdigest()
    return f"batch_{digest[:24]}"
