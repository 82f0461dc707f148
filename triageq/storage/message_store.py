"""
Message and summary persistence.

Messages are keyed by ``(user_id, external_id)`` and upserted, so refetching an
id never creates a second row. Summaries are append-only: at most one row per
``(user_id, external_id, batch_id)`` triage cycle, and the newest row wins on
reads that don't name a cycle.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime, timezone

from triageq.infrastructure.database import Database, retry_on_db_lock
from triageq.observability.logging import get_logger
from triageq.observability.telemetry import counter
from triageq.storage import BaseRepository
from triageq.storage.models import MessageRecord, SummaryRecord, TriageAction, utc_now

logger = get_logger(__name__)

_MESSAGE_COLUMNS = (
    "user_id, external_id, subject, sender, received_at, body_ref, body_preview, "
    "list_unsubscribe, precedence, auto_submitted, triage_action, triaged_at"
)
_SUMMARY_COLUMNS = (
    "user_id, external_id, batch_id, urgency_score, action_classification, "
    "rationale, action_description, summary, created_at"
)


def _row_to_message(row: sqlite3.Row) -> MessageRecord:
    return MessageRecord(
        user_id=row["user_id"],
        external_id=row["external_id"],
        subject=row["subject"],
        sender=row["sender"],
        received_at=row["received_at"],
        body_ref=row["body_ref"],
        body_preview=row["body_preview"],
        list_unsubscribe=row["list_unsubscribe"],
        precedence=row["precedence"],
        auto_submitted=row["auto_submitted"],
        triage_action=row["triage_action"],
        triaged_at=row["triaged_at"],
    )


def _row_to_summary(row: sqlite3.Row) -> SummaryRecord:
    return SummaryRecord(
        user_id=row["user_id"],
        external_id=row["external_id"],
        batch_id=row["batch_id"],
        urgency_score=row["urgency_score"],
        action_classification=row["action_classification"],
        rationale=row["rationale"],
        action_description=row["action_description"],
        summary=row["summary"],
        created_at=row["created_at"],
    )


class MessageStore(BaseRepository):
    """Repository for fetched messages and their per-cycle summaries."""

    def __init__(self, db: Database) -> None:
        super().__init__(db, "messages")

    @retry_on_db_lock()
    def upsert_message(self, record: MessageRecord) -> MessageRecord:
        """
        Insert or update a message by ``(user_id, external_id)``.

        The triage annotation is left untouched on update.

        Side Effects:
            - Writes one row to the messages table
            - Increments ``message_store.upsert`` counter
        """
        now = utc_now()
        self.execute(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS}, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, external_id) DO UPDATE SET
                subject = excluded.subject,
                sender = excluded.sender,
                received_at = excluded.received_at,
                body_ref = excluded.body_ref,
                body_preview = excluded.body_preview,
                list_unsubscribe = excluded.list_unsubscribe,
                precedence = excluded.precedence,
                auto_submitted = excluded.auto_submitted,
                updated_at = excluded.updated_at
            """,
            (
                record.user_id,
                record.external_id,
                record.subject,
                record.sender,
                record.received_at.isoformat(),
                record.body_ref,
                record.body_preview,
                record.list_unsubscribe,
                record.precedence,
                record.auto_submitted,
                record.triage_action,
                record.triaged_at.isoformat() if record.triaged_at else None,
                now,
                now,
            ),
        )
        counter("message_store.upsert")
        return record

    def get_message(self, user_id: str, external_id: str) -> MessageRecord | None:
        row = self.query_one(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE user_id = ? AND external_id = ?",
            (user_id, external_id),
        )
        return _row_to_message(row) if row else None

    def get_messages(self, user_id: str, external_ids: Iterable[str]) -> dict[str, MessageRecord]:
        """Return stored messages for ``external_ids``; missing ids are absent."""
        ids = list(dict.fromkeys(external_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self.query_all(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            f"WHERE user_id = ? AND external_id IN ({placeholders})",
            (user_id, *ids),
        )
        return {row["external_id"]: _row_to_message(row) for row in rows}

    def has_message(self, user_id: str, external_id: str) -> bool:
        row = self.query_one(
            "SELECT 1 FROM messages WHERE user_id = ? AND external_id = ?",
            (user_id, external_id),
        )
        return row is not None

    def count_messages(self, user_id: str) -> int:
        row = self.query_one("SELECT COUNT(*) FROM messages WHERE user_id = ?", (user_id,))
        return int(row[0]) if row else 0

    @retry_on_db_lock()
    def annotate_triage_action(
        self, user_id: str, external_id: str, action: TriageAction
    ) -> bool:
        """
        Record the user's triage decision on a stored message.

        Returns False when the message is unknown.

        Side Effects:
            - Updates triage_action/triaged_at on the messages row
        """
        if action not in ("done", "reply_needed", "delegated"):
            raise ValueError(f"unsupported triage action '{action}'")
        updated = self.execute(
            "UPDATE messages SET triage_action = ?, triaged_at = ?, updated_at = ? "
            "WHERE user_id = ? AND external_id = ?",
            (
                action,
                datetime.now(timezone.utc).isoformat(),
                utc_now(),
                user_id,
                external_id,
            ),
        )
        return updated > 0

    @retry_on_db_lock()
    def put_summary(self, summary: SummaryRecord) -> SummaryRecord:
        """
        Insert a summary unless one already exists for this cycle.

        Returns the stored record, which is the earlier one on conflict.

        Side Effects:
            - Writes at most one row to the summaries table
        """
        inserted = self.execute(
            f"""
            INSERT INTO summaries ({_SUMMARY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id, external_id, batch_id) DO NOTHING
            """,
            (
                summary.user_id,
                summary.external_id,
                summary.batch_id,
                summary.urgency_score,
                summary.action_classification,
                summary.rationale,
                summary.action_description,
                summary.summary,
                summary.created_at,
            ),
        )
        if not inserted:
            counter("message_store.summary_conflict")
            logger.debug("Summary already stored for cycle %s", summary.batch_id)
        stored = self.get_summary(summary.user_id, summary.external_id, summary.batch_id)
        assert stored is not None
        return stored

    def get_summary(
        self, user_id: str, external_id: str, batch_id: str | None = None
    ) -> SummaryRecord | None:
        """Return the summary for a cycle, or the newest one when no cycle is given."""
        if batch_id is not None:
            row = self.query_one(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries "
                "WHERE user_id = ? AND external_id = ? AND batch_id = ?",
                (user_id, external_id, batch_id),
            )
        else:
            row = self.query_one(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries "
                "WHERE user_id = ? AND external_id = ? ORDER BY id DESC LIMIT 1",
                (user_id, external_id),
            )
        return _row_to_summary(row) if row else None

    def count_summaries(self, user_id: str, external_id: str | None = None) -> int:
        if external_id is None:
            row = self.query_one("SELECT COUNT(*) FROM summaries WHERE user_id = ?", (user_id,))
        else:
            row = self.query_one(
                "SELECT COUNT(*) FROM summaries WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            )
        return int(row[0]) if row else 0
