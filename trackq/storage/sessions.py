"""
Session Repository - CRUD, range queries and bulk updates for activity_sessions.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from trackq.infrastructure.database import retry_on_db_lock
from trackq.observability.logging import get_logger
from trackq.storage import BaseRepository, placeholders
from trackq.storage.models import ActivitySession, parse_dt, to_iso, utc_now

logger = get_logger(__name__)

_COLUMNS = (
    "start_time",
    "end_time",
    "duration",
    "app_name",
    "window_title",
    "bundle_identifier",
    "summary",
    "key_insights",
    "work_type",
    "project_name",
    "category_id",
    "project_id",
    "ai_confidence",
    "is_ai_categorized",
    "concurrent_context_ids",
    "is_active",
    "screenshot_count",
    "created_at",
    "updated_at",
)


class SessionRepository(BaseRepository):
    table_name = "activity_sessions"

    @retry_on_db_lock()
    def save(self, session: ActivitySession) -> ActivitySession:
        """
        Insert a new session or update an existing one.

        Side Effects:
            - Inserts or updates a row in activity_sessions
        """
        session.updated_at = utc_now()
        row = session.to_db_dict()
        with self.db.transaction() as conn:
            if session.id is None:
                row.pop("id")
                cursor = conn.execute(
                    f"INSERT INTO activity_sessions ({', '.join(_COLUMNS)}) "
                    f"VALUES ({', '.join(':' + c for c in _COLUMNS)})",
                    row,
                )
                session.id = cursor.lastrowid
            else:
                assignments = ", ".join(f"{c} = :{c}" for c in _COLUMNS)
                conn.execute(f"UPDATE activity_sessions SET {assignments} WHERE id = :id", row)
        return session

    @retry_on_db_lock()
    def update_categorization(self, session: ActivitySession) -> bool:
        """
        Write only the categorization columns of an existing session.

        A session that is still active in memory is only written while the
        stored row is active too, so a categorization finishing after the
        session was closed never reopens it.

        Returns:
            False when no row was written (deleted, or closed meanwhile)
        """
        if session.id is None:
            self.save(session)
            return True

        session.updated_at = utc_now()
        row = session.to_db_dict()
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE activity_sessions
                SET category_id = :category_id, project_id = :project_id,
                    ai_confidence = :ai_confidence, is_ai_categorized = :is_ai_categorized,
                    summary = :summary, key_insights = :key_insights, updated_at = :updated_at
                WHERE id = :id AND (is_active = 1 OR :is_active = 0)
                """,
                row,
            )
            return cursor.rowcount > 0

    def get(self, session_id: int) -> ActivitySession | None:
        row = self.query_one("SELECT * FROM activity_sessions WHERE id = ?", (session_id,))
        return ActivitySession.from_db_row(dict(row)) if row else None

    def delete(self, session_id: int) -> bool:
        return self.delete_by_id(session_id)

    def fetch_range(self, start: datetime, end: datetime) -> list[ActivitySession]:
        """Sessions whose start time falls in [start, end], newest first."""
        rows = self.query_all(
            """
            SELECT * FROM activity_sessions
            WHERE start_time >= ? AND start_time <= ?
            ORDER BY start_time DESC, id DESC
            """,
            (to_iso(start), to_iso(end)),
        )
        return [ActivitySession.from_db_row(dict(row)) for row in rows]

    def fetch_recent(self, limit: int = 100) -> list[ActivitySession]:
        rows = self.query_all(
            "SELECT * FROM activity_sessions ORDER BY start_time DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [ActivitySession.from_db_row(dict(row)) for row in rows]

    def fetch_active(self) -> list[ActivitySession]:
        rows = self.query_all(
            "SELECT * FROM activity_sessions WHERE is_active = 1 ORDER BY start_time DESC"
        )
        return [ActivitySession.from_db_row(dict(row)) for row in rows]

    def fetch_for_project(self, project_id: int) -> list[ActivitySession]:
        rows = self.query_all(
            "SELECT * FROM activity_sessions WHERE project_id = ? ORDER BY start_time DESC",
            (project_id,),
        )
        return [ActivitySession.from_db_row(dict(row)) for row in rows]

    def bulk_update_category(self, session_ids: Sequence[int], category_id: int) -> int:
        """Set category (and the AI-categorized flag) on exactly the listed sessions."""
        ids = list(session_ids)
        if not ids:
            return 0
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE activity_sessions
                SET category_id = ?, is_ai_categorized = 1, updated_at = ?
                WHERE id IN ({placeholders(ids)})
                """,
                [category_id, to_iso(utc_now()), *ids],
            )
        logger.info("Bulk-categorized %d sessions", cursor.rowcount)
        return cursor.rowcount

    def bulk_update_project(self, session_ids: Sequence[int], project_id: int) -> int:
        ids = list(session_ids)
        if not ids:
            return 0
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE activity_sessions
                SET project_id = ?, updated_at = ?
                WHERE id IN ({placeholders(ids)})
                """,
                [project_id, to_iso(utc_now()), *ids],
            )
        logger.info("Bulk-assigned %d sessions to project %s", cursor.rowcount, project_id)
        return cursor.rowcount

    def category_durations(self, start: datetime, end: datetime) -> dict[int, float]:
        rows = self.query_all(
            """
            SELECT category_id, SUM(duration) AS total
            FROM activity_sessions
            WHERE category_id IS NOT NULL AND start_time >= ? AND start_time <= ?
            GROUP BY category_id
            """,
            (to_iso(start), to_iso(end)),
        )
        return {row["category_id"]: row["total"] or 0.0 for row in rows}

    def project_durations(self, start: datetime, end: datetime) -> dict[int, float]:
        rows = self.query_all(
            """
            SELECT project_id, SUM(duration) AS total
            FROM activity_sessions
            WHERE project_id IS NOT NULL AND start_time >= ? AND start_time <= ?
            GROUP BY project_id
            """,
            (to_iso(start), to_iso(end)),
        )
        return {row["project_id"]: row["total"] or 0.0 for row in rows}

    def total_duration(self, start: datetime, end: datetime) -> float:
        row = self.query_one(
            """
            SELECT COALESCE(SUM(duration), 0) FROM activity_sessions
            WHERE start_time >= ? AND start_time <= ?
            """,
            (to_iso(start), to_iso(end)),
        )
        return float(row[0]) if row else 0.0

    def project_aggregates(self, project_id: int) -> tuple[float, datetime | None]:
        """Sum of session duration and latest session start for a project."""
        row = self.query_one(
            """
            SELECT COALESCE(SUM(duration), 0) AS total, MAX(start_time) AS last_start
            FROM activity_sessions WHERE project_id = ?
            """,
            (project_id,),
        )
        if row is None:
            return 0.0, None
        return float(row["total"]), parse_dt(row["last_start"])
