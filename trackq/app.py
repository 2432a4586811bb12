"""
Composition root.

Builds every service exactly once around a single Database and hands them
out together; nothing in the package constructs its own store, cache or
gateway.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from trackq.capture.service import CaptureService, CaptureSource
from trackq.classification.categorizer import Categorizer
from trackq.concepts.feedback import CorrectionRecorder, SuggestionReview
from trackq.infrastructure.database import Database
from trackq.infrastructure.env import ensure_env_loaded
from trackq.infrastructure.secrets import ApiKeyProvider, EnvApiKeyProvider
from trackq.insights.analysis import ComprehensiveAnalyzer
from trackq.insights.engine import InsightEngine
from trackq.llm.client import ClassifierGateway
from trackq.observability.logging import get_logger
from trackq.storage.analyses import AnalysisRepository
from trackq.storage.cache import OfflineCache
from trackq.storage.feedback import FeedbackRepository
from trackq.storage.migrations import Migrator
from trackq.storage.sessions import SessionRepository
from trackq.storage.suggestions import SuggestionRepository
from trackq.storage.taxonomy import TaxonomyStore

logger = get_logger(__name__)


@dataclass
class Services:
    db: Database
    taxonomy: TaxonomyStore
    sessions: SessionRepository
    suggestions: SuggestionRepository
    feedback: FeedbackRepository
    cache: OfflineCache
    gateway: ClassifierGateway
    categorizer: Categorizer
    corrections: CorrectionRecorder
    review: SuggestionReview
    insights: InsightEngine
    analyzer: ComprehensiveAnalyzer
    migrator: Migrator

    def capture_service(self, source: CaptureSource, interval: float | None = None) -> CaptureService:
        """Bind a capture collaborator to the shared categorizer."""
        kwargs = {} if interval is None else {"interval": interval}
        return CaptureService(self.categorizer, self.sessions, self.taxonomy, source, **kwargs)

    def close(self) -> None:
        self.gateway.close()
        self.db.close()


def build_services(
    db_path: Path | str | None = None,
    gateway: ClassifierGateway | None = None,
    api_key_provider: ApiKeyProvider | None = None,
) -> Services:
    """
    Construct the full service graph.

    Args:
        db_path: SQLite file; defaults to TRACKQ_DB_PATH or trackq/data/trackq.db
        gateway: Pre-built classifier gateway (tests inject one on MockTransport)
        api_key_provider: Key source for a gateway built here; defaults to the environment

    Side Effects:
        - Loads .env once
        - Opens the database, creating schema and seeding built-ins on first run
    """
    ensure_env_loaded()
    db = Database(db_path)

    taxonomy = TaxonomyStore(db)
    sessions = SessionRepository(db)
    suggestions = SuggestionRepository(db)
    feedback = FeedbackRepository(db)
    cache = OfflineCache(db)

    if gateway is None:
        gateway = ClassifierGateway(api_key_provider or EnvApiKeyProvider())

    categorizer = Categorizer(taxonomy, sessions, suggestions, cache, gateway)
    corrections = CorrectionRecorder(taxonomy, sessions)
    review = SuggestionReview(taxonomy, sessions, suggestions, corrections)

    logger.info("TrackQ services ready (db=%s)", db.db_path)
    return Services(
        db=db,
        taxonomy=taxonomy,
        sessions=sessions,
        suggestions=suggestions,
        feedback=feedback,
        cache=cache,
        gateway=gateway,
        categorizer=categorizer,
        corrections=corrections,
        review=review,
        insights=InsightEngine(taxonomy, sessions, feedback),
        analyzer=ComprehensiveAnalyzer(gateway, sessions, feedback, AnalysisRepository(db)),
        migrator=Migrator(db, taxonomy, sessions),
    )
