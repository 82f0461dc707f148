from __future__ import annotations

import pytest
from conftest import make_message

from triageq.storage.checkpoint import CheckpointStore
from triageq.storage.models import SummaryRecord, WorkflowCheckpoint
from triageq.triage.errors import BatchInProgressError, CheckpointError, LeaseLostError


def _summary(external_id: str, batch_id: str, score: int) -> SummaryRecord:
    return SummaryRecord(
        external_id=external_id, user_id="user-1", batch_id=batch_id, urgency_score=score
    )


class TestMessageStore:
    def test_upsert_is_idempotent(self, store):
        store.upsert_message(make_message("m1", subject="First"))
        store.upsert_message(make_message("m1", subject="Edited"))

        assert store.count_messages("user-1") == 1
        assert store.get_message("user-1", "m1").subject == "Edited"

    def test_messages_are_scoped_per_user(self, store):
        store.upsert_message(make_message("m1", user_id="user-1"))
        store.upsert_message(make_message("m1", user_id="user-2"))

        assert store.count_messages("user-1") == 1
        assert store.has_message("user-2", "m1")
        assert not store.has_message("user-3", "m1")

    def test_get_messages_skips_unknown_ids(self, store):
        store.upsert_message(make_message("m1"))
        store.upsert_message(make_message("m2"))

        messages = store.get_messages("user-1", ["m2", "ghost", "m1"])
        assert set(messages) == {"m1", "m2"}
        assert store.get_messages("user-1", []) == {}

    def test_received_at_round_trips_as_utc(self, store):
        original = make_message("m1", minutes=42)
        store.upsert_message(original)
        assert store.get_message("user-1", "m1").received_at == original.received_at

    def test_triage_annotation_survives_refetch(self, store):
        store.upsert_message(make_message("m1"))
        assert store.annotate_triage_action("user-1", "m1", "reply_needed")

        store.upsert_message(make_message("m1", subject="Refetched"))

        stored = store.get_message("user-1", "m1")
        assert stored.triage_action == "reply_needed"
        assert stored.triaged_at is not None

    def test_annotate_unknown_message(self, store):
        assert not store.annotate_triage_action("user-1", "ghost", "done")

    def test_annotate_rejects_unknown_action(self, store):
        store.upsert_message(make_message("m1"))
        with pytest.raises(ValueError):
            store.annotate_triage_action("user-1", "m1", "snoozed")  # type: ignore[arg-type]

    def test_one_summary_per_cycle(self, store):
        first = store.put_summary(_summary("m1", "b1", 80))
        second = store.put_summary(_summary("m1", "b1", 20))

        assert first.urgency_score == 80
        assert second.urgency_score == 80
        assert store.count_summaries("user-1", "m1") == 1

    def test_latest_summary_across_cycles(self, store):
        store.put_summary(_summary("m1", "b1", 30))
        store.put_summary(_summary("m1", "b2", 75))

        assert store.get_summary("user-1", "m1").urgency_score == 75
        assert store.get_summary("user-1", "m1", "b1").urgency_score == 30
        assert store.get_summary("user-1", "m1", "b3") is None
        assert store.count_summaries("user-1") == 2


class TestCheckpointStore:
    def test_save_and_load(self, checkpoints):
        checkpoint = WorkflowCheckpoint(batch_id="b1", user_id="user-1", external_ids=["m1"])
        checkpoints.save(checkpoint)

        assert checkpoints.load("user-1", "b1") == checkpoint
        assert checkpoints.load("user-1", "b2") is None
        assert checkpoints.load("user-2", "b1") is None

    def test_stage_never_moves_backwards(self, checkpoints):
        checkpoint = WorkflowCheckpoint(batch_id="b1", user_id="user-1")
        checkpoints.save(checkpoint.advance("filtering"))

        with pytest.raises(CheckpointError, match="cannot move"):
            checkpoints.save(checkpoint.advance("summarizing"))
        assert checkpoints.load("user-1", "b1").stage == "filtering"

    def test_same_stage_can_be_resaved(self, checkpoints):
        checkpoint = WorkflowCheckpoint(batch_id="b1", user_id="user-1", stage="notifying")
        checkpoints.save(checkpoint)
        checkpoints.save(checkpoint.with_status("running", notification_claimed=True))

        assert checkpoints.load("user-1", "b1").notification_claimed

    def test_lease_excludes_other_owners(self, checkpoints):
        checkpoints.acquire_lease("user-1", "b1", "worker-a")

        with pytest.raises(BatchInProgressError):
            checkpoints.acquire_lease("user-1", "b1", "worker-b")
        assert checkpoints.lease_owner("user-1", "b1") == "worker-a"

    def test_lease_is_reentrant_for_owner(self, checkpoints):
        checkpoints.acquire_lease("user-1", "b1", "worker-a")
        checkpoints.acquire_lease("user-1", "b1", "worker-a")
        assert checkpoints.lease_owner("user-1", "b1") == "worker-a"

    def test_released_lease_can_be_taken(self, checkpoints):
        checkpoints.acquire_lease("user-1", "b1", "worker-a")
        checkpoints.release_lease("user-1", "b1", "worker-a")

        checkpoints.acquire_lease("user-1", "b1", "worker-b")
        assert checkpoints.lease_owner("user-1", "b1") == "worker-b"

    def test_release_by_non_owner_is_ignored(self, checkpoints):
        checkpoints.acquire_lease("user-1", "b1", "worker-a")
        checkpoints.release_lease("user-1", "b1", "worker-b")
        assert checkpoints.lease_owner("user-1", "b1") == "worker-a"

    def test_expired_lease_can_be_taken_over(self, db):
        now = [1000.0]
        checkpoints = CheckpointStore(db, lease_seconds=60, clock=lambda: now[0])
        checkpoints.acquire_lease("user-1", "b1", "worker-a")

        now[0] += 61
        assert checkpoints.lease_owner("user-1", "b1") is None
        checkpoints.acquire_lease("user-1", "b1", "worker-b")
        assert checkpoints.lease_owner("user-1", "b1") == "worker-b"

    def test_leases_are_per_batch(self, checkpoints):
        checkpoints.acquire_lease("user-1", "b1", "worker-a")
        checkpoints.acquire_lease("user-1", "b2", "worker-b")
        assert checkpoints.lease_owner("user-1", "b2") == "worker-b"

    def test_notification_claim_succeeds_once(self, checkpoints):
        checkpoint = WorkflowCheckpoint(batch_id="b1", user_id="user-1", stage="notifying")
        checkpoints.save(checkpoint)

        first = checkpoints.claim_notification(checkpoint)
        second = checkpoints.claim_notification(checkpoint)

        assert first is not None
        assert first.notification_claimed
        assert second is None
        assert checkpoints.load("user-1", "b1").notification_claimed

    def test_released_claim_can_be_claimed_again(self, checkpoints):
        checkpoint = WorkflowCheckpoint(batch_id="b1", user_id="user-1", stage="notifying")
        checkpoints.save(checkpoint)
        claimed = checkpoints.claim_notification(checkpoint)

        checkpoints.save(claimed.with_status("running", notification_claimed=False))

        assert checkpoints.claim_notification(checkpoint) is not None

    def test_save_by_owner_renews_lease(self, db):
        now = [1000.0]
        checkpoints = CheckpointStore(db, lease_seconds=60, clock=lambda: now[0])
        checkpoints.acquire_lease("user-1", "b1", "worker-a")

        now[0] += 50
        checkpoints.save(WorkflowCheckpoint(batch_id="b1", user_id="user-1"), owner="worker-a")
        now[0] += 50

        assert checkpoints.lease_owner("user-1", "b1") == "worker-a"

    def test_owner_that_lost_its_lease_cannot_write(self, db):
        now = [1000.0]
        checkpoints = CheckpointStore(db, lease_seconds=60, clock=lambda: now[0])
        checkpoint = WorkflowCheckpoint(batch_id="b1", user_id="user-1", stage="notifying")
        checkpoints.acquire_lease("user-1", "b1", "worker-a")
        checkpoints.save(checkpoint, owner="worker-a")

        now[0] += 61
        checkpoints.acquire_lease("user-1", "b1", "worker-b")

        with pytest.raises(LeaseLostError):
            checkpoints.save(checkpoint.advance("done"), owner="worker-a")
        with pytest.raises(LeaseLostError):
            checkpoints.claim_notification(checkpoint, owner="worker-a")
        stored = checkpoints.load("user-1", "b1")
        assert stored.stage == "notifying"
        assert not stored.notification_claimed
        assert checkpoints.claim_notification(checkpoint, owner="worker-b") is not None
