"""Storage - database-backed repositories and domain models"""

from __future__ import annotations

import sqlite3
from typing import Any

from triageq.infrastructure.database import Database


class BaseRepository:
    """Base class for repositories sharing one injected Database."""

    def __init__(self, db: Database, table_name: str) -> None:
        if not isinstance(table_name, str) or not table_name.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {table_name}")
        self.db = db
        self.table_name = table_name

    def query_one(self, query: str, params: tuple[Any, ...] | None = None) -> sqlite3.Row | None:
        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())
            return cursor.fetchone()

    def query_all(self, query: str, params: tuple[Any, ...] | None = None) -> list[sqlite3.Row]:
        with self.db.connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())
            return cursor.fetchall()

    def execute(self, query: str, params: tuple[Any, ...] | None = None) -> int:
        """
        Execute a write query (INSERT, UPDATE, DELETE)

        Returns:
            Number of rows affected

        Side Effects:
            - Writes to database table specified in query
            - Commits transaction automatically (rolls back on error)
        """
        with self.db.transaction() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())
            return cursor.rowcount


__all__ = ["BaseRepository"]
