"""Storage - models, repositories, offline cache, migrations"""

from __future__ import annotations

import sqlite3
from typing import Any

from trackq.infrastructure.database import Database


class BaseRepository:
    """Base class for repositories sharing one injected Database."""

    table_name: str = ""

    def __init__(self, db: Database) -> None:
        if not self.table_name.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name: {self.table_name!r}")
        self.db = db

    def query_one(self, query: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> sqlite3.Row | None:
        with self.db.connection() as conn:
            return conn.execute(query, params).fetchone()

    def query_all(self, query: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> list[sqlite3.Row]:
        with self.db.connection() as conn:
            return conn.execute(query, params).fetchall()

    def execute(self, query: str, params: tuple[Any, ...] | dict[str, Any] = ()) -> int | None:
        """
        Execute a write query (INSERT, UPDATE, DELETE)

        Returns:
            Last inserted row ID

        Side Effects:
            - Commits automatically (or joins the caller's open transaction)
            - Rolls back on error
        """
        with self.db.transaction() as conn:
            return conn.execute(query, params).lastrowid

    def count(self, where: str = "", params: tuple[Any, ...] = ()) -> int:
        query = f"SELECT COUNT(*) FROM {self.table_name}"
        if where:
            query += f" WHERE {where}"
        row = self.query_one(query, params)
        return int(row[0]) if row else 0

    def delete_by_id(self, row_id: int) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {self.table_name} WHERE id = ?", (row_id,))
            return cursor.rowcount > 0


def placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


__all__ = ["BaseRepository", "placeholders"]
