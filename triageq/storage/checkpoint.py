"""Durable workflow checkpoints and batch leases.

A checkpoint row records the next stage a batch must run plus every stage
result needed to resume. A lease row gives one run exclusive ownership of a
batch until it is released or expires.
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable

from triageq.config import BATCH_LEASE_SECONDS
from triageq.infrastructure.database import Database, retry_on_db_lock
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter, log_event
from triageq.storage import BaseRepository
from triageq.storage.models import WorkflowCheckpoint, stage_index
from triageq.triage.errors import BatchInProgressError, CheckpointError, LeaseLostError

logger = get_logger(__name__)


class CheckpointStore(BaseRepository):
    def __init__(
        self,
        db: Database,
        lease_seconds: float = BATCH_LEASE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(db, "workflow_checkpoints")
        self.lease_seconds = lease_seconds
        self.clock = clock

    def load(self, user_id: str, batch_id: str) -> WorkflowCheckpoint | None:
        row = self.query_one(
            "SELECT payload FROM workflow_checkpoints WHERE user_id = ? AND batch_id = ?",
            (user_id, batch_id),
        )
        if row is None:
            return None
        return WorkflowCheckpoint.model_validate_json(row["payload"])

    def _renew_lease(
        self, conn: sqlite3.Connection, user_id: str, batch_id: str, owner: str
    ) -> None:
        # Takes the write lock, so the rest of the caller's transaction is serialized
        renewed = conn.execute(
            """
            UPDATE workflow_leases SET expires_at = ?
            WHERE user_id = ? AND batch_id = ? AND owner = ?
            """,
            (self.clock() + self.lease_seconds, user_id, batch_id, owner),
        ).rowcount
        if not renewed:
            counter("workflow.lease_lost")
            log_event("workflow.lease_lost", batch_id=batch_id)
            raise LeaseLostError(batch_id, owner)

    @retry_on_db_lock()
    def save(self, checkpoint: WorkflowCheckpoint, owner: str | None = None) -> WorkflowCheckpoint:
        """Persist a checkpoint, refusing to move its stage backwards.

        With ``owner``, the write only happens while that run still holds the
        batch lease, and the lease is extended in the same transaction.

        Side Effects:
            - Upserts the workflow_checkpoints row
            - Renews the batch lease when ``owner`` is given
            - Logs ``checkpoint.saved`` telemetry

        Raises:
            LeaseLostError: ``owner`` no longer holds the lease
            CheckpointError: stored stage is later than ``checkpoint.stage``
        """
        with self.db.transaction() as conn:
            if owner is not None:
                self._renew_lease(conn, checkpoint.user_id, checkpoint.batch_id, owner)
            row = conn.execute(
                "SELECT stage FROM workflow_checkpoints WHERE user_id = ? AND batch_id = ?",
                (checkpoint.user_id, checkpoint.batch_id),
            ).fetchone()
            if row is not None and stage_index(row["stage"]) > stage_index(checkpoint.stage):
                counter("checkpoint.backwards_rejected")
                raise CheckpointError(
                    f"checkpoint for {checkpoint.batch_id} cannot move from "
                    f"'{row['stage']}' back to '{checkpoint.stage}'"
                )
            conn.execute(
                """
                INSERT INTO workflow_checkpoints
                    (user_id, batch_id, payload, stage, status, notification_claimed,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, batch_id) DO UPDATE SET
                    payload = excluded.payload,
                    stage = excluded.stage,
                    status = excluded.status,
                    notification_claimed = excluded.notification_claimed,
                    updated_at = excluded.updated_at
                """,
                (
                    checkpoint.user_id,
                    checkpoint.batch_id,
                    checkpoint.model_dump_json(),
                    checkpoint.stage,
                    checkpoint.status,
                    int(checkpoint.notification_claimed),
                    checkpoint.created_at,
                    checkpoint.updated_at,
                ),
            )

        log_event(
            "checkpoint.saved",
            batch_id=checkpoint.batch_id,
            stage=checkpoint.stage,
            status=checkpoint.status,
        )
        return checkpoint

    @retry_on_db_lock()
    def claim_notification(
        self, checkpoint: WorkflowCheckpoint, owner: str | None = None
    ) -> WorkflowCheckpoint | None:
        """Record the batch's notification claim unless one is already stored.

        The guarded UPDATE only matches an unclaimed row, so of any number of
        concurrent callers exactly one gets the claimed checkpoint back; the
        rest get None and must not send.

        Raises:
            LeaseLostError: ``owner`` no longer holds the lease
        """
        claimed = checkpoint.with_status("running", notification_claimed=True)
        with self.db.transaction() as conn:
            if owner is not None:
                self._renew_lease(conn, checkpoint.user_id, checkpoint.batch_id, owner)
            won = conn.execute(
                """
                UPDATE workflow_checkpoints
                SET payload = ?, status = ?, notification_claimed = 1, updated_at = ?
                WHERE user_id = ? AND batch_id = ? AND notification_claimed = 0
                """,
                (
                    claimed.model_dump_json(),
                    claimed.status,
                    claimed.updated_at,
                    checkpoint.user_id,
                    checkpoint.batch_id,
                ),
            ).rowcount

        if not won:
            counter("notify.claim_conflict")
            log_event("notify.claim_conflict", batch_id=checkpoint.batch_id)
            return None
        return claimed

    @retry_on_db_lock()
    def acquire_lease(self, user_id: str, batch_id: str, owner: str) -> None:
        """Claim exclusive ownership of a batch.

        An existing lease is taken over only when it has expired or already
        belongs to ``owner``.

        Raises:
            BatchInProgressError: another live run holds the lease
        """
        now = self.clock()
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO workflow_leases (user_id, batch_id, owner, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, batch_id) DO UPDATE SET
                    owner = excluded.owner,
                    expires_at = excluded.expires_at
                WHERE workflow_leases.expires_at < ?
                   OR workflow_leases.owner = excluded.owner
                """,
                (user_id, batch_id, owner, now + self.lease_seconds, now),
            )
            row = conn.execute(
                "SELECT owner FROM workflow_leases WHERE user_id = ? AND batch_id = ?",
                (user_id, batch_id),
            ).fetchone()

        if row is None or row["owner"] != owner:
            counter("workflow.lease_rejected")
            log_event("workflow.lease_rejected", batch_id=batch_id)
            raise BatchInProgressError(user_id, batch_id)
        logger.debug("Lease acquired for batch %s by %s", batch_id, owner)

    @retry_on_db_lock()
    def release_lease(self, user_id: str, batch_id: str, owner: str) -> None:
        self.execute(
            "DELETE FROM workflow_leases WHERE user_id = ? AND batch_id = ? AND owner = ?",
            (user_id, batch_id, owner),
        )

    def lease_owner(self, user_id: str, batch_id: str) -> str | None:
        row = self.query_one(
            "SELECT owner, expires_at FROM workflow_leases WHERE user_id = ? AND batch_id = ?",
            (user_id, batch_id),
        )
        if row is None or row["expires_at"] < self.clock():
            return None
        return row["owner"]
