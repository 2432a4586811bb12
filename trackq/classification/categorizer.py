"""
Categorizer - turns one captured screenshot into a categorized session.

Flow: load taxonomy -> remote classifier (optionally retried) -> on any
classifier failure, offline cache with discounted confidence -> reconcile
project/category -> write session -> queue review suggestions when confidence
is below the review threshold -> add session duration to the project.

Key: Categorizer.categorize(screenshot, session) -> CategorizationOutcome
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from trackq.classification.matching import find_by_pattern
from trackq.config import (
    LLM_MAX_ATTEMPTS,
    OFFLINE_CONFIDENCE_DISCOUNT,
    RECALCULATE_SESSION_LIMIT,
    REVIEW_CONFIDENCE_THRESHOLD,
    STATS_SESSION_LIMIT,
)
from trackq.llm.client import (
    Categorization,
    ClassifierError,
    ClassifierGateway,
    RateLimitOrServerError,
    TransportError,
)
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, log_event
from trackq.storage.cache import OfflineCache
from trackq.storage.models import (
    ActivitySession,
    AISuggestion,
    Category,
    Project,
    Role,
    SuggestionContext,
    SuggestionType,
    utc_now,
)
from trackq.storage.sessions import SessionRepository
from trackq.storage.suggestions import SuggestionRepository
from trackq.storage.taxonomy import TaxonomyStore

logger = get_logger(__name__)

OFFLINE_REASONING = "Categorized using cached pattern (offline mode)"
OFFLINE_INSIGHT = "Offline categorization based on previous activity"


class NoCategorizationAvailable(RuntimeError):
    """Neither the remote classifier nor the offline cache produced a result."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "Unable to categorize activity. No online connection or cached patterns available."
        )


@dataclass
class CategorizationOutcome:
    session: ActivitySession
    categorization: Categorization
    project: Project
    category: Category | None
    offline: bool
    suggestions: list[AISuggestion] = field(default_factory=list)


@dataclass(frozen=True)
class CategorizerStats:
    total_sessions: int
    categorized_sessions: int
    pending_suggestions: int
    average_confidence: float


class Categorizer:
    """Orchestrates classification, offline fallback and taxonomy reconciliation."""

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        sessions: SessionRepository,
        suggestions: SuggestionRepository,
        cache: OfflineCache,
        gateway: ClassifierGateway,
        review_threshold: float = REVIEW_CONFIDENCE_THRESHOLD,
        offline_discount: float = OFFLINE_CONFIDENCE_DISCOUNT,
        max_attempts: int = LLM_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.taxonomy = taxonomy
        self.sessions = sessions
        self.suggestions = suggestions
        self.cache = cache
        self.gateway = gateway
        self.review_threshold = review_threshold
        self.offline_discount = offline_discount
        self.max_attempts = max(1, max_attempts)
        self.clock = clock
        self.is_offline = False

    def categorize(self, screenshot: bytes, session: ActivitySession) -> CategorizationOutcome | None:
        """
        Categorize a session from a screenshot.

        Returns:
            The outcome, or None when the session was deleted or closed while classifying

        Raises:
            NoCategorizationAvailable: If neither online nor offline produced a result
            sqlite3.Error: Persistence failures propagate unchanged

        Side Effects:
            - Calls the remote classifier (network)
            - Appends to / touches the offline cache
            - Updates the session, may create a project and three suggestions
        """
        roles = self.taxonomy.roles.fetch_all()
        categories = self.taxonomy.categories.fetch_all()
        projects = self.taxonomy.projects.fetch_all()

        offline = False
        try:
            categorization = self._classify_online(
                screenshot, session, roles, categories, projects
            )
        except ClassifierError as e:
            logger.warning("Online categorization failed (%s), trying offline cache", type(e).__name__)
            counter("categorizer.online_failed")
            cached = self._classify_offline(session.app_name, session.window_title)
            if cached is None:
                counter("categorizer.unavailable")
                raise NoCategorizationAvailable() from e
            categorization = cached
            offline = True
        else:
            self.cache.record(
                app_name=session.app_name or "Unknown",
                window_title=session.window_title,
                project_name=categorization.project_name,
                project_role=categorization.project_role,
                work_category=categorization.work_category,
                patterns=categorization.suggested_patterns,
                confidence=categorization.confidence,
                now=self.clock(),
            )

        self.is_offline = offline
        counter("categorizer.offline" if offline else "categorizer.online")

        if session.id is not None:
            stored = self.sessions.get(session.id)
            # Deleted, or ended by someone else, while the classifier call was running
            if stored is None or (session.is_active and not stored.is_active):
                logger.info("Session %s closed during classification; result discarded", session.id)
                counter("categorizer.discarded")
                return None

        return self.apply_categorization(
            session, categorization, roles, categories, projects, offline=offline
        )

    def _classify_online(
        self,
        screenshot: bytes,
        session: ActivitySession,
        roles: Sequence[Role],
        categories: Sequence[Category],
        projects: Sequence[Project],
    ) -> Categorization:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type((TransportError, RateLimitOrServerError)),
            reraise=True,
        )
        return retrying(
            self.gateway.classify,
            screenshot,
            session.app_name,
            session.window_title,
            roles,
            categories,
            projects,
        )

    def _classify_offline(self, app_name: str | None, window_title: str | None) -> Categorization | None:
        entry = self.cache.lookup(app_name, window_title)
        if entry is None or entry.id is None:
            return None
        self.cache.touch(entry.id)
        return Categorization(
            project_name=entry.project_name,
            project_role=entry.project_role,
            work_category=entry.work_category,
            confidence=entry.confidence * self.offline_discount,
            reasoning=OFFLINE_REASONING,
            suggested_patterns=list(entry.patterns),
            key_insights=[OFFLINE_INSIGHT],
            summary=f"Working on {entry.project_name}",
        )

    def apply_categorization(
        self,
        session: ActivitySession,
        categorization: Categorization,
        roles: Sequence[Role],
        categories: Sequence[Category],
        projects: Sequence[Project],
        offline: bool = False,
    ) -> CategorizationOutcome | None:
        """
        Reconcile a categorization with the taxonomy and persist it on the session.

        Returns:
            None when the session was closed before the write landed

        Side Effects:
            - Writes the categorization columns of the session; may create/update a project
            - Inserts three pending suggestions when confidence is below threshold
            - Adds the session duration to the project total
        """
        category = next((c for c in categories if c.slug == categorization.work_category), None)
        if category is None:
            logger.info("Unknown category slug from classifier; leaving category unset")
            counter("categorizer.unknown_category")

        with self.taxonomy.db.transaction():
            project = self.taxonomy.find_or_create_project(
                name=categorization.project_name,
                role_name=categorization.project_role,
                patterns=categorization.suggested_patterns,
                app_name=session.app_name,
                window_title=session.window_title,
                known_projects=projects,
                roles=roles,
                now=self.clock(),
            )

            session.category_id = category.id if category else None
            session.project_id = project.id
            session.ai_confidence = categorization.confidence
            session.is_ai_categorized = True
            session.summary = categorization.summary
            session.key_insights = list(categorization.key_insights or [])
            if not self.sessions.update_categorization(session):
                logger.info("Session %s closed before its categorization was written; discarded", session.id)
                counter("categorizer.discarded")
                return None

            queued: list[AISuggestion] = []
            if categorization.confidence < self.review_threshold and session.id is not None:
                queued = self.suggestions.create_many(
                    self._review_suggestions(session.id, categorization)
                )
                counter("categorizer.queued_for_review")

            if project.id is not None:
                self.taxonomy.projects.record_activity(project.id, session.duration, self.clock())

        log_event(
            "categorizer.applied",
            session_id=session.id,
            project_id=project.id,
            offline=offline,
            confidence=round(categorization.confidence, 3),
        )
        return CategorizationOutcome(
            session=session,
            categorization=categorization,
            project=project,
            category=category,
            offline=offline,
            suggestions=queued,
        )

    @staticmethod
    def _review_suggestions(session_id: int, categorization: Categorization) -> list[AISuggestion]:
        shared = {
            "session_id": session_id,
            "confidence": categorization.confidence,
            "reasoning": categorization.reasoning,
        }
        return [
            AISuggestion(
                suggestion_type=SuggestionType.PROJECT,
                suggested_value=categorization.project_name,
                context=SuggestionContext(
                    project_role=categorization.project_role,
                    patterns=list(categorization.suggested_patterns),
                ),
                **shared,
            ),
            AISuggestion(
                suggestion_type=SuggestionType.CATEGORY,
                suggested_value=categorization.work_category,
                context=SuggestionContext(summary=categorization.summary),
                **shared,
            ),
            AISuggestion(
                suggestion_type=SuggestionType.ROLE,
                suggested_value=categorization.project_role,
                **shared,
            ),
        ]

    def recalculate_assignments(self, limit: int = RECALCULATE_SESSION_LIMIT) -> int:
        """
        Attach recent uncategorized sessions to the first project whose pattern matches.

        Returns:
            Number of sessions updated
        """
        projects = self.taxonomy.projects.fetch_all()
        if not projects:
            return 0

        updated = 0
        with self.sessions.db.transaction():
            for session in self.sessions.fetch_recent(limit):
                if session.is_ai_categorized or session.project_id is not None:
                    continue
                project = find_by_pattern(projects, None, session.app_name, session.window_title)
                if project is None:
                    continue
                session.project_id = project.id
                if project.default_category_id is not None:
                    session.category_id = project.default_category_id
                self.sessions.save(session)
                updated += 1

        logger.info("Recalculated project assignments for %d sessions", updated)
        return updated

    def get_stats(self, limit: int = STATS_SESSION_LIMIT) -> CategorizerStats:
        recent = self.sessions.fetch_recent(limit)
        categorized = [s for s in recent if s.is_ai_categorized]
        confidences = [s.ai_confidence for s in categorized if s.ai_confidence is not None]
        return CategorizerStats(
            total_sessions=len(recent),
            categorized_sessions=len(categorized),
            pending_suggestions=self.suggestions.count_pending(),
            average_confidence=sum(confidences) / len(confidences) if confidences else 0.0,
        )
