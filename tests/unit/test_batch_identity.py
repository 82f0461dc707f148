from __future__ import annotations

import pytest

from triageq.infrastructure.idempotency import batch_key, dedupe_ids
from triageq.observability.telemetry import counter


def test_dedupe_ids_strips_blanks_and_keeps_first_occurrence():
    assert dedupe_ids([" m2", "m1", "", "m2", "  ", "m3", "m1"]) == ["m2", "m1", "m3"]


def test_batch_key_is_order_independent():
    assert batch_key("user-1", ["m1", "m2", "m3"]) == batch_key("user-1", ["m3", "m1", "m2"])


def test_batch_key_ignores_duplicates():
    assert batch_key("user-1", ["m1", "m1", "m2"]) == batch_key("user-1", ["m2", "m1"])


def test_batch_key_differs_per_user():
    assert batch_key("user-1", ["m1"]) != batch_key("user-2", ["m1"])


def test_batch_key_format():
    key = batch_key("user-1", ["m1"])
    assert key.startswith("batch_")
    assert len(key) == len("batch_") + 24


@pytest.mark.parametrize(
    ("user_id", "ids"),
    [("", ["m1"]), ("user-1", []), ("user-1", ["", "  "])],
)
def test_batch_key_requires_user_and_ids(user_id, ids):
    with pytest.raises(ValueError, match="batch key requires"):
        batch_key(user_id, ids)
    assert counter("idempotency_drops", 0) == 1
