"""Tests for storage models: pattern sets, JSON columns, suggestion lifecycle, change descriptors."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from trackq.storage.models import (
    ActivitySession,
    AddPattern,
    AISuggestion,
    BulkCategorize,
    FeedbackAction,
    InsightFeedback,
    InsightType,
    Project,
    SuggestionStateError,
    SuggestionStatus,
    SuggestionType,
    TargetType,
    change_adapter,
    decode_json_list,
    slug_from_legacy_work_type,
)


class TestProjectPatterns:
    def test_add_pattern_is_idempotent_case_insensitive(self):
        project = Project(name="Disputes")
        assert project.add_pattern("DISP-") is True
        assert project.add_pattern("disp-") is False
        assert project.add_pattern("DISP-") is False
        assert project.patterns == ["DISP-"]

    def test_blank_pattern_ignored(self):
        project = Project(name="Disputes")
        assert project.add_pattern("   ") is False
        assert project.patterns == []

    def test_constructor_dedupes_patterns(self):
        project = Project(name="X", patterns=["Alpha", "alpha", "", "Beta"])
        assert project.patterns == ["Alpha", "Beta"]

    def test_matches_combined_text(self):
        project = Project(name="Disputes", patterns=["DISP-"])
        assert project.matches("Ticket disp-42")
        assert project.matches(None, "Xcode", "DISP-7 crash")
        assert not project.matches("SCAM-1", "Xcode", "review")

    def test_match_confidence_is_fraction_of_patterns(self):
        project = Project(name="P", patterns=["alpha", "beta", "gamma", "delta"])
        assert project.match_confidence("alpha beta") == pytest.approx(0.5)
        assert Project(name="Q").match_confidence("anything") == 0.0

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            Project(name="  ")


class TestJsonColumns:
    def test_decode_empty_and_malformed(self):
        assert decode_json_list(None) == []
        assert decode_json_list("") == []
        assert decode_json_list("[]") == []
        assert decode_json_list("{not json") == []
        assert decode_json_list('{"a": 1}') == []

    def test_project_row_keeps_pattern_list(self):
        project = Project(id=1, name="P", patterns=["a", "B"])
        restored = Project.from_db_row(project.to_db_dict())
        assert restored.patterns == ["a", "B"]

    def test_project_row_with_empty_patterns(self):
        restored = Project.from_db_row(Project(id=1, name="P").to_db_dict())
        assert restored.patterns == []


class TestSuggestionLifecycle:
    def make(self) -> AISuggestion:
        return AISuggestion(
            session_id=1,
            suggestion_type=SuggestionType.PROJECT,
            suggested_value="Alpha",
            confidence=0.5,
        )

    def test_accept_sets_resolved_at(self):
        suggestion = self.make()
        assert suggestion.resolved_at is None
        suggestion.accept()
        assert suggestion.status == SuggestionStatus.ACCEPTED
        assert suggestion.resolved_at is not None

    def test_modify_uses_new_value(self):
        suggestion = self.make()
        suggestion.modify("Beta")
        assert suggestion.status == SuggestionStatus.MODIFIED
        assert suggestion.effective_value == "Beta"

    def test_transitions_are_terminal(self):
        suggestion = self.make()
        suggestion.reject()
        with pytest.raises(SuggestionStateError):
            suggestion.accept()
        with pytest.raises(SuggestionStateError):
            suggestion.modify("x")
        assert suggestion.status == SuggestionStatus.REJECTED


class TestChangeDescriptors:
    def test_discriminated_by_kind(self):
        change = change_adapter.validate_python(
            {"kind": "add_pattern", "project_id": 3, "pattern": "DISP"}
        )
        assert isinstance(change, AddPattern)
        assert change.project_id == 3

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            change_adapter.validate_python({"kind": "rename_everything"})

    def test_feedback_row_restores_changes(self):
        feedback = InsightFeedback(
            id=1,
            insight_type=InsightType.CATEGORY_SUGGESTION,
            insight_text="3 sessions",
            action=FeedbackAction.APPLIED,
            target_type=TargetType.CATEGORY,
            changes=BulkCategorize(session_ids=[1, 2], category_slug="responding"),
        )
        restored = InsightFeedback.from_db_row(feedback.to_db_dict())
        assert restored.changes == feedback.changes


def test_unknown_enum_string_fails_at_storage_edge():
    row = AISuggestion(
        id=1, session_id=1, suggestion_type=SuggestionType.ROLE, suggested_value="x", confidence=0.1
    ).to_db_dict()
    row["status"] = "archived"
    with pytest.raises(ValueError):
        AISuggestion.from_db_row(row)


def test_confidence_levels():
    assert ActivitySession(ai_confidence=0.3).confidence_level == "Low"
    assert ActivitySession(ai_confidence=0.6).confidence_level == "Medium"
    assert ActivitySession(ai_confidence=0.8).confidence_level == "High"
    assert ActivitySession(ai_confidence=0.95).confidence_level == "Very High"
    assert ActivitySession().confidence_level is None


def test_legacy_work_type_mapping():
    assert slug_from_legacy_work_type("Coding") == "creating"
    assert slug_from_legacy_work_type("browsing") == "discovery"
    assert slug_from_legacy_work_type("communication") == "responding"
    assert slug_from_legacy_work_type("gaming") == "personal"
    assert slug_from_legacy_work_type(None) == "personal"
