"""
Database schema initialization for TriageQ.

Contains the SQL schema and validation logic, kept apart from database.py so the
pool code stays small.
"""

from __future__ import annotations

import sqlite3

SCHEMA = """
    -- One row per fetched message, unique per user
    CREATE TABLE IF NOT EXISTS messages (
        user_id TEXT NOT NULL,
        external_id TEXT NOT NULL,
        subject TEXT NOT NULL DEFAULT '',
        sender TEXT NOT NULL DEFAULT '',
        received_at TEXT NOT NULL,
        body_ref TEXT NOT NULL DEFAULT '',
        body_preview TEXT NOT NULL DEFAULT '',
        list_unsubscribe TEXT,
        precedence TEXT,
        auto_submitted TEXT,
        triage_action TEXT,
        triaged_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, external_id)
    );

    -- Append-only summaries, one per message per triage cycle
    CREATE TABLE IF NOT EXISTS summaries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        external_id TEXT NOT NULL,
        batch_id TEXT NOT NULL,
        urgency_score INTEGER NOT NULL,
        action_classification TEXT NOT NULL,
        rationale TEXT NOT NULL DEFAULT '',
        action_description TEXT NOT NULL DEFAULT '',
        summary TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL,
        UNIQUE(user_id, external_id, batch_id)
    );

    CREATE INDEX IF NOT EXISTS idx_summaries_user_message
    ON summaries(user_id, external_id, id);

    CREATE TABLE IF NOT EXISTS workflow_checkpoints (
        user_id TEXT NOT NULL,
        batch_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        stage TEXT NOT NULL,
        status TEXT NOT NULL,
        -- Mirrors payload.notification_claimed so the claim can be a guarded UPDATE
        notification_claimed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (user_id, batch_id)
    );

    CREATE INDEX IF NOT EXISTS idx_workflow_checkpoints_status
    ON workflow_checkpoints(status);

    CREATE TABLE IF NOT EXISTS workflow_leases (
        user_id TEXT NOT NULL,
        batch_id TEXT NOT NULL,
        owner TEXT NOT NULL,
        expires_at REAL NOT NULL,
        PRIMARY KEY (user_id, batch_id)
    );
"""

REQUIRED_TABLES = {
    "messages": ["user_id", "external_id", "subject", "sender", "received_at", "body_ref"],
    "summaries": ["user_id", "external_id", "batch_id", "urgency_score", "action_classification"],
    "workflow_checkpoints": [
        "user_id",
        "batch_id",
        "payload",
        "stage",
        "status",
        "notification_claimed",
    ],
    "workflow_leases": ["user_id", "batch_id", "owner", "expires_at"],
}


def init_schema(conn: sqlite3.Connection) -> None:
    """
    Create all tables and indexes (idempotent).

    Side Effects:
        - Creates tables/indexes if they don't exist
    """
    conn.executescript(SCHEMA)


def validate_schema(conn: sqlite3.Connection) -> bool:
    """
    Validate database has expected schema

    Raises:
        ValueError: If tables or columns are missing
    """
    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    existing_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = set(REQUIRED_TABLES) - existing_tables
    if missing_tables:
        raise ValueError(f"Database missing tables: {missing_tables}")

    for table, required_cols in REQUIRED_TABLES.items():
        # Identifiers cannot be parameterized; names come from the dict above
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table}")

        cursor.execute(f"PRAGMA table_info({table})")
        existing_cols = {row[1] for row in cursor.fetchall()}

        missing_cols = set(required_cols) - existing_cols
        if missing_cols:
            raise ValueError(f"Table '{table}' missing columns: {missing_cols}")

    return True
