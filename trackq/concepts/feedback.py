"""
User feedback on categorizations: direct corrections and suggestion review.

CorrectionRecorder is the direct-edit path (a user fixing a session). It
confirms the corrected project and learns the session's window title as a new
detection pattern. SuggestionReview resolves pending low-confidence
suggestions and routes accepted/modified project and role values through the
same correction path.

Key: CorrectionRecorder.apply_correction(), SuggestionReview.accept/reject/modify
"""

from __future__ import annotations

from trackq.config import CORRECTION_PATTERN_MIN_LENGTH
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, log_event
from trackq.storage.models import (
    AISuggestion,
    ActivitySession,
    SuggestionStateError,
    SuggestionType,
)
from trackq.storage.sessions import SessionRepository
from trackq.storage.suggestions import SuggestionRepository
from trackq.storage.taxonomy import TaxonomyStore

logger = get_logger(__name__)


class CorrectionRecorder:
    """Applies user corrections to sessions and learns patterns from them."""

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        sessions: SessionRepository,
        min_pattern_length: int = CORRECTION_PATTERN_MIN_LENGTH,
    ):
        self.taxonomy = taxonomy
        self.sessions = sessions
        self.min_pattern_length = min_pattern_length

    def apply_correction(
        self,
        session_id: int,
        project_id: int | None = None,
        category_id: int | None = None,
        role_id: int | None = None,
    ) -> ActivitySession | None:
        """
        Record a user correction for one session.

        Returns:
            The updated session, or None if the session no longer exists

        Side Effects:
            - Updates the session's project/category (still AI-categorized)
            - Adds the lowercased window title as a project pattern when distinctive
            - Confirms the project (confidence 1.0) and applies the role correction
        """
        with self.sessions.db.transaction():
            session = self.sessions.get(session_id)
            if session is None:
                logger.info("Correction skipped: session %s not found", session_id)
                return None

            if project_id is not None:
                session.project_id = project_id
            if category_id is not None:
                session.category_id = category_id
            session.is_ai_categorized = True
            self.sessions.save(session)

            if project_id is not None:
                self._learn_from_correction(session, project_id, role_id)

        counter("feedback.correction")
        log_event(
            "feedback.correction",
            session_id=session_id,
            project_id=project_id,
            category_id=category_id,
            role_id=role_id,
        )
        return session

    def _learn_from_correction(
        self, session: ActivitySession, project_id: int, role_id: int | None
    ) -> None:
        project = self.taxonomy.projects.get(project_id)
        if project is None:
            logger.warning("Correction references missing project %s", project_id)
            return

        title = (session.window_title or "").lower()
        if len(title) > self.min_pattern_length and project.add_pattern(title):
            counter("feedback.pattern_learned")
            logger.debug("Learned pattern for project %s", project_id)

        if role_id is not None:
            project.role_id = role_id
        project.is_user_confirmed = True
        project.confidence = 1.0
        self.taxonomy.projects.save(project)


class SuggestionReview:
    """Resolves pending AI suggestions and reflects decisions onto sessions."""

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        sessions: SessionRepository,
        suggestions: SuggestionRepository,
        corrections: CorrectionRecorder,
    ):
        self.taxonomy = taxonomy
        self.sessions = sessions
        self.suggestions = suggestions
        self.corrections = corrections

    def pending(self) -> list[AISuggestion]:
        return self.suggestions.fetch_pending()

    def accept(self, suggestion: AISuggestion) -> AISuggestion:
        """
        Accept a suggestion as proposed.

        Raises:
            SuggestionStateError: If the suggestion is not pending (in memory or in storage)
        """
        with self.suggestions.db.transaction():
            suggestion.accept()
            self._persist_resolution(suggestion)
            self._reflect(suggestion)
        counter("review.accepted")
        return suggestion

    def modify(self, suggestion: AISuggestion, new_value: str) -> AISuggestion:
        """Resolve a suggestion with the user's replacement value."""
        with self.suggestions.db.transaction():
            suggestion.modify(new_value)
            self._persist_resolution(suggestion)
            self._reflect(suggestion)
        counter("review.modified")
        return suggestion

    def reject(self, suggestion: AISuggestion) -> AISuggestion:
        """Reject a suggestion; no session or taxonomy change."""
        with self.suggestions.db.transaction():
            suggestion.reject()
            self._persist_resolution(suggestion)
        counter("review.rejected")
        return suggestion

    def _persist_resolution(self, suggestion: AISuggestion) -> None:
        # A stale copy may still look pending after another copy was resolved
        if self.suggestions.update_status(suggestion) == 0:
            stored = self.suggestions.get(suggestion.id) if suggestion.id is not None else None
            state = stored.status.value if stored else "missing"
            raise SuggestionStateError(f"Suggestion {suggestion.id} already resolved as {state}")

    def accept_all(self, min_confidence: float = 0.0) -> list[AISuggestion]:
        accepted = []
        for suggestion in self.pending():
            if suggestion.confidence >= min_confidence:
                accepted.append(self.accept(suggestion))
        logger.info("Accepted %d pending suggestions", len(accepted))
        return accepted

    def reject_all(self) -> list[AISuggestion]:
        rejected = [self.reject(suggestion) for suggestion in self.pending()]
        logger.info("Rejected %d pending suggestions", len(rejected))
        return rejected

    def _reflect(self, suggestion: AISuggestion) -> None:
        value = suggestion.effective_value.strip()
        if not value:
            return

        match suggestion.suggestion_type:
            case SuggestionType.PROJECT | SuggestionType.NEW_PROJECT:
                project = self.taxonomy.projects.get_by_name(value)
                if project is None:
                    role = self.taxonomy.roles.get_by_name(suggestion.context.project_role)
                    project = self.taxonomy.projects.create(
                        name=value,
                        role_id=role.id if role else None,
                        patterns=suggestion.context.patterns,
                    )
                self.corrections.apply_correction(suggestion.session_id, project_id=project.id)

            case SuggestionType.CATEGORY:
                category = self.taxonomy.categories.get_by_slug(value.lower())
                if category is None:
                    logger.info("Suggestion %s names unknown category; session unchanged", suggestion.id)
                    return
                self.corrections.apply_correction(suggestion.session_id, category_id=category.id)

            case SuggestionType.ROLE:
                role = self.taxonomy.roles.get_by_name(value)
                session = self.sessions.get(suggestion.session_id)
                if role is None or session is None or session.project_id is None:
                    return
                self.corrections.apply_correction(
                    suggestion.session_id, project_id=session.project_id, role_id=role.id
                )
