"""Tests for suggestion review and learning from user corrections."""

from __future__ import annotations

import pytest

from trackq.concepts.feedback import CorrectionRecorder, SuggestionReview
from trackq.storage.models import (
    AISuggestion,
    SuggestionContext,
    SuggestionStateError,
    SuggestionStatus,
    SuggestionType,
)


@pytest.fixture
def corrections(taxonomy, sessions):
    return CorrectionRecorder(taxonomy, sessions)


@pytest.fixture
def review(taxonomy, sessions, suggestions, corrections):
    return SuggestionReview(taxonomy, sessions, suggestions, corrections)


def queue(suggestions, session_id, kind, value, confidence=0.5, **context):
    return suggestions.create_many(
        [
            AISuggestion(
                session_id=session_id,
                suggestion_type=kind,
                suggested_value=value,
                confidence=confidence,
                reasoning="unsure",
                context=SuggestionContext(**context),
            )
        ]
    )[0]


class TestCorrections:
    def test_learns_lowercased_title_and_confirms(self, corrections, taxonomy, make_session, sessions):
        project = taxonomy.projects.create("Checkout", patterns=["checkout"], is_ai_suggested=True, confidence=0.8)
        session = make_session(app_name="Chrome", window_title="PAY-881 Refund Edge Case")
        creating = taxonomy.categories.get_by_slug("creating")

        corrections.apply_correction(session.id, project_id=project.id, category_id=creating.id)

        stored_project = taxonomy.projects.get(project.id)
        assert stored_project.patterns == ["checkout", "pay-881 refund edge case"]
        assert stored_project.is_user_confirmed is True
        assert stored_project.confidence == 1.0

        stored = sessions.get(session.id)
        assert stored.project_id == project.id
        assert stored.category_id == creating.id
        assert stored.is_ai_categorized is True

    def test_short_title_not_learned(self, corrections, taxonomy, make_session):
        project = taxonomy.projects.create("Mail")
        session = make_session(app_name="Mail", window_title="Inbox")  # exactly 5 chars

        corrections.apply_correction(session.id, project_id=project.id)

        assert taxonomy.projects.get(project.id).patterns == []

    def test_existing_pattern_not_duplicated(self, corrections, taxonomy, make_session):
        project = taxonomy.projects.create("Standups", patterns=["Daily Standup"])
        session = make_session(window_title="daily standup")

        corrections.apply_correction(session.id, project_id=project.id)

        assert taxonomy.projects.get(project.id).patterns == ["Daily Standup"]

    def test_role_correction_applied(self, corrections, taxonomy, make_session):
        project = taxonomy.projects.create("Fraud Rules")
        scams = taxonomy.roles.get_by_name("Scams")
        session = make_session(window_title="Rules engine")

        corrections.apply_correction(session.id, project_id=project.id, role_id=scams.id)

        assert taxonomy.projects.get(project.id).role_id == scams.id

    def test_missing_session_is_noop(self, corrections):
        assert corrections.apply_correction(9999, project_id=1) is None


class TestReview:
    def test_accept_project_links_session_and_learns(
        self, review, suggestions, taxonomy, make_session, sessions
    ):
        project = taxonomy.projects.create("Checkout")
        session = make_session(window_title="Cart page redesign")
        suggestion = queue(suggestions, session.id, SuggestionType.PROJECT, "Checkout")

        review.accept(suggestion)

        assert suggestions.get(suggestion.id).status == SuggestionStatus.ACCEPTED
        assert suggestions.get(suggestion.id).resolved_at is not None
        assert sessions.get(session.id).project_id == project.id
        assert taxonomy.projects.get(project.id).is_user_confirmed is True

    def test_modify_creates_named_project(self, review, suggestions, taxonomy, make_session, sessions):
        session = make_session(window_title="Quarterly roadmap")
        suggestion = queue(
            suggestions, session.id, SuggestionType.PROJECT, "Roadmap", project_role="Cross-team", patterns=["roadmap"]
        )

        review.modify(suggestion, "Q3 Planning")

        project = taxonomy.projects.get_by_name("Q3 Planning")
        assert project is not None
        assert project.role_id == taxonomy.roles.get_by_name("Cross-team").id
        assert sessions.get(session.id).project_id == project.id
        stored = suggestions.get(suggestion.id)
        assert stored.status == SuggestionStatus.MODIFIED
        assert stored.user_modified_value == "Q3 Planning"

    def test_accept_category(self, review, suggestions, taxonomy, make_session, sessions):
        session = make_session()
        suggestion = queue(suggestions, session.id, SuggestionType.CATEGORY, "meetings")

        review.accept(suggestion)

        assert sessions.get(session.id).category_id == taxonomy.categories.get_by_slug("meetings").id

    def test_accept_role_updates_project(self, review, suggestions, taxonomy, make_session):
        project = taxonomy.projects.create("Fraud Rules")
        session = make_session(project_id=project.id, window_title="rules")
        suggestion = queue(suggestions, session.id, SuggestionType.ROLE, "Scams")

        review.accept(suggestion)

        assert taxonomy.projects.get(project.id).role_id == taxonomy.roles.get_by_name("Scams").id

    def test_reject_does_not_touch_taxonomy(self, review, suggestions, taxonomy, make_session, sessions):
        session = make_session(window_title="Cart page redesign")
        suggestion = queue(suggestions, session.id, SuggestionType.PROJECT, "Checkout")

        review.reject(suggestion)

        assert suggestions.get(suggestion.id).status == SuggestionStatus.REJECTED
        assert taxonomy.projects.fetch_all() == []
        assert sessions.get(session.id).project_id is None

    def test_second_resolution_rejected(self, review, suggestions, make_session):
        suggestion = queue(suggestions, make_session().id, SuggestionType.CATEGORY, "meetings")
        review.reject(suggestion)
        with pytest.raises(SuggestionStateError):
            review.accept(suggestion)

    def test_stale_copy_cannot_resolve_again(self, review, suggestions, taxonomy, make_session, sessions):
        session = make_session(window_title="Cart page redesign")
        queued = queue(suggestions, session.id, SuggestionType.PROJECT, "Alpha")
        first, stale, other = (suggestions.get(queued.id) for _ in range(3))

        review.accept(first)

        with pytest.raises(SuggestionStateError, match="already resolved as accepted"):
            review.modify(stale, "Beta")
        with pytest.raises(SuggestionStateError):
            review.reject(other)

        assert suggestions.get(queued.id).status == SuggestionStatus.ACCEPTED
        assert taxonomy.projects.get_by_name("Beta") is None
        assert sessions.get(session.id).project_id == taxonomy.projects.get_by_name("Alpha").id

    def test_bulk_helpers(self, review, suggestions, make_session):
        session = make_session()
        queue(suggestions, session.id, SuggestionType.CATEGORY, "meetings", confidence=0.65)
        queue(suggestions, session.id, SuggestionType.CATEGORY, "planning", confidence=0.3)

        accepted = review.accept_all(min_confidence=0.6)
        assert [s.suggested_value for s in accepted] == ["meetings"]

        rejected = review.reject_all()
        assert [s.suggested_value for s in rejected] == ["planning"]
        assert review.pending() == []
