"""
Pytest configuration for TrackQ tests

Provides a throwaway SQLite database per test, the repositories built on it,
a scriptable fake classifier gateway and a fixed clock.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from trackq.infrastructure.database import Database
from trackq.llm.client import Categorization
from trackq.observability.telemetry import reset_counters
from trackq.storage.cache import OfflineCache
from trackq.storage.feedback import FeedbackRepository
from trackq.storage.models import ActivitySession
from trackq.storage.sessions import SessionRepository
from trackq.storage.suggestions import SuggestionRepository
from trackq.storage.taxonomy import TaxonomyStore

FIXED_NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=UTC)


def fixed_clock() -> datetime:
    return FIXED_NOW


def make_categorization(**overrides) -> Categorization:
    data = {
        "projectName": "Dispute Resolution Flow",
        "projectRole": "Disputes",
        "workCategory": "creating",
        "confidence": 0.9,
        "reasoning": "Editing dispute handling code",
        "suggestedPatterns": ["DISP-"],
        "keyInsights": ["Working on chargeback flow"],
        "summary": "Fixing a dispute bug.",
    }
    data.update(overrides)
    return Categorization.model_validate(data)


class FakeGateway:
    """Stands in for ClassifierGateway; returns or raises queued results in order."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls: list[dict] = []

    def classify(self, image, app_name, window_title, roles, categories, known_projects):
        self.calls.append(
            {
                "image": image,
                "app_name": app_name,
                "window_title": window_title,
                "roles": list(roles),
                "categories": list(categories),
                "known_projects": list(known_projects),
            }
        )
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result

    def close(self):
        pass


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def clock():
    return fixed_clock


@pytest.fixture
def categorization():
    """Factory for Categorization results (camelCase keys as the classifier sends them)."""
    return make_categorization


@pytest.fixture
def gateway_factory():
    return FakeGateway


@pytest.fixture(autouse=True)
def _reset_telemetry():
    reset_counters()
    yield
    reset_counters()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "trackq.db", pool_size=2)
    yield database
    database.close()


@pytest.fixture
def taxonomy(db):
    return TaxonomyStore(db)


@pytest.fixture
def sessions(db):
    return SessionRepository(db)


@pytest.fixture
def suggestions(db):
    return SuggestionRepository(db)


@pytest.fixture
def feedback(db):
    return FeedbackRepository(db)


@pytest.fixture
def cache(db):
    return OfflineCache(db)


@pytest.fixture
def make_session(sessions):
    """Persist a session starting ``hours_ago`` before FIXED_NOW."""

    def _make(hours_ago: float = 1, **fields) -> ActivitySession:
        fields.setdefault("duration", 60.0)
        session = ActivitySession(start_time=FIXED_NOW - timedelta(hours=hours_ago), **fields)
        return sessions.save(session)

    return _make
