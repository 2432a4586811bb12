"""
Suggestion Repository - persistence for ai_suggestions.
"""

from __future__ import annotations

from collections.abc import Sequence

from trackq.infrastructure.database import retry_on_db_lock
from trackq.storage import BaseRepository
from trackq.storage.models import AISuggestion, SuggestionStatus


class SuggestionRepository(BaseRepository):
    table_name = "ai_suggestions"

    @retry_on_db_lock()
    def create_many(self, suggestions: Sequence[AISuggestion]) -> list[AISuggestion]:
        """
        Insert suggestions in one transaction.

        Side Effects:
            - Inserts rows into ai_suggestions
        """
        with self.db.transaction() as conn:
            for suggestion in suggestions:
                row = suggestion.to_db_dict()
                row.pop("id")
                cursor = conn.execute(
                    """
                    INSERT INTO ai_suggestions (
                        session_id, suggestion_type, suggested_value, confidence,
                        reasoning, context, status, user_modified_value,
                        created_at, resolved_at
                    ) VALUES (
                        :session_id, :suggestion_type, :suggested_value, :confidence,
                        :reasoning, :context, :status, :user_modified_value,
                        :created_at, :resolved_at
                    )
                    """,
                    row,
                )
                suggestion.id = cursor.lastrowid
        return list(suggestions)

    @retry_on_db_lock()
    def update_status(self, suggestion: AISuggestion) -> int:
        """
        Persist a resolution. Only rows still pending are updated.

        Returns:
            Number of rows updated (0 when the stored row was already resolved)
        """
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE ai_suggestions
                SET status = ?, user_modified_value = ?, resolved_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (
                    suggestion.status.value,
                    suggestion.user_modified_value,
                    suggestion.to_db_dict()["resolved_at"],
                    suggestion.id,
                ),
            )
            return cursor.rowcount

    def get(self, suggestion_id: int) -> AISuggestion | None:
        row = self.query_one("SELECT * FROM ai_suggestions WHERE id = ?", (suggestion_id,))
        return AISuggestion.from_db_row(dict(row)) if row else None

    def fetch_pending(self) -> list[AISuggestion]:
        rows = self.query_all(
            "SELECT * FROM ai_suggestions WHERE status = 'pending' ORDER BY created_at DESC, id DESC"
        )
        return [AISuggestion.from_db_row(dict(row)) for row in rows]

    def fetch_for_session(self, session_id: int) -> list[AISuggestion]:
        rows = self.query_all(
            "SELECT * FROM ai_suggestions WHERE session_id = ? ORDER BY id", (session_id,)
        )
        return [AISuggestion.from_db_row(dict(row)) for row in rows]

    def count_pending(self) -> int:
        return self.count("status = ?", (SuggestionStatus.PENDING.value,))
