"""
Feedback Repository - append-only insight_feedback rows and their queries.
"""

from __future__ import annotations

from trackq.infrastructure.database import retry_on_db_lock
from trackq.storage import BaseRepository
from trackq.storage.models import FeedbackAction, InsightFeedback, InsightType


class FeedbackRepository(BaseRepository):
    table_name = "insight_feedback"

    @retry_on_db_lock()
    def record(self, feedback: InsightFeedback) -> InsightFeedback:
        """
        Append one feedback row.

        Side Effects:
            - Inserts row into insight_feedback
        """
        row = feedback.to_db_dict()
        row.pop("id")
        feedback.id = self.execute(
            """
            INSERT INTO insight_feedback (
                insight_type, insight_text, action, target_type, target_id,
                target_name, changes, confidence, created_at, applied_at
            ) VALUES (
                :insight_type, :insight_text, :action, :target_type, :target_id,
                :target_name, :changes, :confidence, :created_at, :applied_at
            )
            """,
            row,
        )
        return feedback

    def fetch_recent(self, limit: int = 50) -> list[InsightFeedback]:
        rows = self.query_all(
            "SELECT * FROM insight_feedback ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        )
        return [InsightFeedback.from_db_row(dict(row)) for row in rows]

    def fetch_by_type(self, insight_type: InsightType) -> list[InsightFeedback]:
        rows = self.query_all(
            "SELECT * FROM insight_feedback WHERE insight_type = ? ORDER BY created_at DESC, id DESC",
            (insight_type.value,),
        )
        return [InsightFeedback.from_db_row(dict(row)) for row in rows]

    def fetch_applied(self) -> list[InsightFeedback]:
        rows = self.query_all(
            "SELECT * FROM insight_feedback WHERE action = ? ORDER BY created_at DESC, id DESC",
            (FeedbackAction.APPLIED.value,),
        )
        return [InsightFeedback.from_db_row(dict(row)) for row in rows]

    def counts_by_action(self) -> dict[FeedbackAction, int]:
        rows = self.query_all("SELECT action, COUNT(*) AS n FROM insight_feedback GROUP BY action")
        counts = {action: 0 for action in FeedbackAction}
        for row in rows:
            counts[FeedbackAction(row["action"])] = row["n"]
        return counts
