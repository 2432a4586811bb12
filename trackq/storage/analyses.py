"""
Analysis Repository - cached period analyses and their follow-up exchanges.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from trackq.infrastructure.database import retry_on_db_lock
from trackq.storage import BaseRepository
from trackq.storage.models import (
    AnalysisExchange,
    ComprehensiveAnalysis,
    TimePeriod,
    start_of_day,
    to_iso,
    utc_now,
)

_COLUMNS = (
    "date",
    "period",
    "overview",
    "work_segments",
    "timeline_segments",
    "context_analysis",
    "key_insights",
    "recommendations",
    "total_time",
    "session_count",
    "analysis_timestamp",
    "follow_up_exchanges",
    "created_at",
    "updated_at",
)


class AnalysisRepository(BaseRepository):
    table_name = "comprehensive_analyses"

    @retry_on_db_lock()
    def save(self, analysis: ComprehensiveAnalysis) -> ComprehensiveAnalysis:
        """
        Insert a new analysis or update an existing one.

        Side Effects:
            - Inserts or updates a row in comprehensive_analyses
        """
        analysis.updated_at = utc_now()
        row = analysis.to_db_dict()
        with self.db.transaction() as conn:
            if analysis.id is None:
                row.pop("id")
                cursor = conn.execute(
                    f"INSERT INTO comprehensive_analyses ({', '.join(_COLUMNS)}) "
                    f"VALUES ({', '.join(':' + c for c in _COLUMNS)})",
                    row,
                )
                analysis.id = cursor.lastrowid
            else:
                assignments = ", ".join(f"{c} = :{c}" for c in _COLUMNS)
                conn.execute(f"UPDATE comprehensive_analyses SET {assignments} WHERE id = :id", row)
        return analysis

    def get(self, analysis_id: int) -> ComprehensiveAnalysis | None:
        row = self.query_one("SELECT * FROM comprehensive_analyses WHERE id = ?", (analysis_id,))
        return ComprehensiveAnalysis.from_db_row(dict(row)) if row else None

    def get_for(self, date: datetime, period: TimePeriod) -> ComprehensiveAnalysis | None:
        """Newest analysis whose date falls on the same UTC day as ``date``."""
        day = start_of_day(date)
        row = self.query_one(
            """
            SELECT * FROM comprehensive_analyses
            WHERE date >= ? AND date < ? AND period = ?
            ORDER BY analysis_timestamp DESC, id DESC
            LIMIT 1
            """,
            (to_iso(day), to_iso(day + timedelta(days=1)), period.value),
        )
        return ComprehensiveAnalysis.from_db_row(dict(row)) if row else None

    def fetch_recent(self, limit: int = 10) -> list[ComprehensiveAnalysis]:
        rows = self.query_all(
            "SELECT * FROM comprehensive_analyses ORDER BY analysis_timestamp DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [ComprehensiveAnalysis.from_db_row(dict(row)) for row in rows]

    @retry_on_db_lock()
    def append_exchange(self, analysis_id: int, exchange: AnalysisExchange) -> ComprehensiveAnalysis | None:
        """
        Add one follow-up exchange to the stored conversation.

        Re-reads the row inside the write so concurrent questions all land.

        Returns:
            The updated analysis, or None when it no longer exists
        """
        with self.db.transaction():
            analysis = self.get(analysis_id)
            if analysis is None:
                return None
            analysis.follow_up_exchanges.append(exchange)
            return self.save(analysis)

    def delete(self, analysis_id: int) -> bool:
        return self.delete_by_id(analysis_id)

    def delete_for(self, date: datetime, period: TimePeriod) -> int:
        day = start_of_day(date)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM comprehensive_analyses WHERE date >= ? AND date < ? AND period = ?",
                (to_iso(day), to_iso(day + timedelta(days=1)), period.value),
            )
            return cursor.rowcount
