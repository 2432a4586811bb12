"""Tests for the Categorizer: online path, review queueing, offline fallback, reassignment."""

from __future__ import annotations

import pytest

from trackq.classification.categorizer import (
    OFFLINE_REASONING,
    Categorizer,
    NoCategorizationAvailable,
)
from trackq.llm.client import AuthError, MalformedResponseError, TransportError
from trackq.observability.telemetry import get_counter
from trackq.storage.models import SuggestionType


@pytest.fixture
def build(taxonomy, sessions, suggestions, cache, clock):
    def _build(gateway, **kwargs) -> Categorizer:
        return Categorizer(taxonomy, sessions, suggestions, cache, gateway, clock=clock, **kwargs)

    return _build


class TestOnline:
    def test_xcode_scenario_creates_ai_project(
        self, build, gateway_factory, categorization, make_session, taxonomy, sessions, now
    ):
        result = categorization(
            projectName="Crash Fix DISP-42", suggestedPatterns=["DISP-42"], confidence=0.85
        )
        session = make_session(app_name="Xcode", window_title="DISP-42 Fix crash", duration=300)

        outcome = build(gateway_factory(result)).categorize(b"png", session)

        project = taxonomy.projects.get(outcome.project.id)
        assert project.name == "Crash Fix DISP-42"
        assert project.patterns == ["DISP-42"]
        assert project.confidence == pytest.approx(0.8)
        assert project.is_ai_suggested is True
        assert project.is_user_confirmed is False
        assert project.total_duration == pytest.approx(300)
        assert project.last_seen == now

        stored = sessions.get(session.id)
        assert stored.project_id == project.id
        assert stored.category_id == taxonomy.categories.get_by_slug("creating").id
        assert stored.ai_confidence == pytest.approx(0.85)
        assert stored.is_ai_categorized is True
        assert stored.key_insights == ["Working on chargeback flow"]
        assert outcome.offline is False
        assert outcome.suggestions == []

    def test_online_result_is_cached(self, build, gateway_factory, categorization, make_session, cache):
        session = make_session(app_name="Xcode", window_title="DISP-42 Fix crash")
        build(gateway_factory(categorization())).categorize(b"png", session)

        entry = cache.lookup("Xcode", "DISP-42 Fix crash")
        assert entry.project_name == "Dispute Resolution Flow"
        assert entry.confidence == pytest.approx(0.9)
        assert entry.patterns == ["DISP-"]

    def test_low_confidence_queues_three_suggestions(
        self, build, gateway_factory, categorization, make_session, suggestions
    ):
        session = make_session(app_name="Chrome", window_title="Docs")
        outcome = build(gateway_factory(categorization(confidence=0.6))).categorize(b"png", session)

        stored = suggestions.fetch_for_session(session.id)
        assert len(stored) == 3
        assert {s.suggestion_type for s in stored} == {
            SuggestionType.PROJECT,
            SuggestionType.CATEGORY,
            SuggestionType.ROLE,
        }
        assert all(s.confidence == pytest.approx(0.6) for s in stored)
        assert all(s.session_id == session.id for s in stored)
        assert all(s.reasoning == "Editing dispute handling code" for s in stored)
        assert len(outcome.suggestions) == 3

    def test_threshold_is_strict(self, build, gateway_factory, categorization, make_session, suggestions):
        session = make_session(app_name="Chrome")
        build(gateway_factory(categorization(confidence=0.7))).categorize(b"png", session)
        assert suggestions.fetch_for_session(session.id) == []

    def test_unknown_category_slug_left_unset(
        self, build, gateway_factory, categorization, make_session, sessions, taxonomy
    ):
        session = make_session(app_name="Chrome")
        build(gateway_factory(categorization(workCategory="gardening"))).categorize(b"png", session)

        assert sessions.get(session.id).category_id is None
        assert taxonomy.categories.get_by_slug("gardening") is None

    def test_duration_accumulates_per_categorization(
        self, build, gateway_factory, categorization, make_session, taxonomy
    ):
        categorizer = build(gateway_factory(categorization()))
        first = categorizer.categorize(b"png", make_session(app_name="Xcode", duration=100))
        second = categorizer.categorize(b"png", make_session(app_name="Xcode", duration=50))

        assert first.project.id == second.project.id
        assert taxonomy.projects.get(first.project.id).total_duration == pytest.approx(150)

    def test_existing_project_reused_by_pattern(
        self, build, gateway_factory, categorization, make_session, taxonomy
    ):
        disputes = taxonomy.projects.create("Disputes Queue", patterns=["DISP-"])
        taxonomy.projects.create("Scams Queue", patterns=["SCAM-"])
        session = make_session(app_name="Xcode", window_title="DISP-42 Fix crash")

        outcome = build(gateway_factory(categorization(projectName="Something New"))).categorize(
            b"png", session
        )
        assert outcome.project.id == disputes.id

    def test_already_ended_session_is_still_categorized(
        self, build, gateway_factory, categorization, make_session, sessions, now
    ):
        session = make_session(app_name="Xcode", is_active=False, end_time=now)

        outcome = build(gateway_factory(categorization())).categorize(b"png", session)

        stored = sessions.get(session.id)
        assert stored.project_id == outcome.project.id
        assert stored.is_active is False

    def test_session_deleted_mid_flight_is_discarded(
        self, build, gateway_factory, categorization, make_session, sessions
    ):
        session = make_session(app_name="Xcode")
        sessions.delete(session.id)

        assert build(gateway_factory(categorization())).categorize(b"png", session) is None
        assert get_counter("categorizer.discarded") == 1


class TestOffline:
    @pytest.mark.parametrize(
        "error",
        [TransportError("down"), AuthError("no key"), MalformedResponseError("bad json")],
    )
    def test_fallback_discounts_confidence(
        self, build, gateway_factory, make_session, cache, now, error
    ):
        entry = cache.record("Slack", "#disputes", "Disputes Inbox", "Disputes", "responding", ["#disputes"], 0.9, now)
        session = make_session(app_name="Slack", window_title="#disputes")
        categorizer = build(gateway_factory(error))

        outcome = categorizer.categorize(b"png", session)

        assert outcome.offline is True
        assert categorizer.is_offline is True
        assert outcome.categorization.confidence == pytest.approx(0.72)
        assert outcome.categorization.reasoning == OFFLINE_REASONING
        assert outcome.project.name == "Disputes Inbox"
        assert cache.get(entry.id).use_count == 1
        # offline results are not written back
        assert cache.stats().total_entries == 1

    def test_offline_low_confidence_still_queues(
        self, build, gateway_factory, make_session, cache, suggestions, now
    ):
        cache.record("Slack", None, "Inbox", "Disputes", "responding", [], 0.8, now)
        session = make_session(app_name="Slack", window_title="random")

        build(gateway_factory(TransportError("down"))).categorize(b"png", session)

        # 0.8 * 0.8 = 0.64 < 0.7
        assert len(suggestions.fetch_for_session(session.id)) == 3

    def test_no_cache_raises(self, build, gateway_factory, make_session, sessions):
        session = make_session(app_name="Figma", window_title="Mockups")

        with pytest.raises(NoCategorizationAvailable, match="Unable to categorize activity"):
            build(gateway_factory(TransportError("down"))).categorize(b"png", session)

        stored = sessions.get(session.id)
        assert stored.project_id is None
        assert stored.is_ai_categorized is False
        assert get_counter("categorizer.unavailable") == 1


class TestRetries:
    def test_auth_errors_not_retried(self, build, gateway_factory, make_session, cache, now):
        cache.record("Slack", None, "Inbox", "Disputes", "responding", [], 0.9, now)
        gateway = gateway_factory(AuthError("no key"))

        build(gateway, max_attempts=3).categorize(b"png", make_session(app_name="Slack"))

        assert len(gateway.calls) == 1

    def test_default_is_single_attempt(self, build, gateway_factory, make_session, cache, now):
        cache.record("Slack", None, "Inbox", "Disputes", "responding", [], 0.9, now)
        gateway = gateway_factory(TransportError("down"))

        build(gateway).categorize(b"png", make_session(app_name="Slack"))

        assert len(gateway.calls) == 1

    def test_transport_error_retried_when_configured(
        self, build, gateway_factory, categorization, make_session
    ):
        gateway = gateway_factory(TransportError("blip"), categorization())

        outcome = build(gateway, max_attempts=2).categorize(b"png", make_session(app_name="Xcode"))

        assert outcome.offline is False
        assert len(gateway.calls) == 2


class TestMaintenance:
    def test_recalculate_assigns_by_pattern(self, build, gateway_factory, make_session, taxonomy, sessions):
        meetings = taxonomy.categories.get_by_slug("meetings")
        project = taxonomy.projects.create("Standups", patterns=["standup"], default_category_id=meetings.id)
        match = make_session(app_name="Zoom", window_title="Daily Standup")
        miss = make_session(app_name="Zoom", window_title="1:1")
        already = make_session(app_name="Zoom", window_title="standup", is_ai_categorized=True)

        updated = build(gateway_factory(TransportError("unused"))).recalculate_assignments()

        assert updated == 1
        assert sessions.get(match.id).project_id == project.id
        assert sessions.get(match.id).category_id == meetings.id
        assert sessions.get(miss.id).project_id is None
        assert sessions.get(already.id).project_id is None

    def test_stats(self, build, gateway_factory, categorization, make_session):
        categorizer = build(gateway_factory(categorization(confidence=0.5)))
        categorizer.categorize(b"png", make_session(app_name="Xcode"))
        make_session(app_name="Finder")

        stats = categorizer.get_stats()

        assert stats.total_sessions == 2
        assert stats.categorized_sessions == 1
        assert stats.pending_suggestions == 3
        assert stats.average_confidence == pytest.approx(0.5)
