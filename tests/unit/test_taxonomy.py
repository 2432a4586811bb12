"""Tests for the Taxonomy Store: seeding, administration rules, project reconciliation."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from trackq.classification.matching import MatchKind, match_project, rank_projects
from trackq.infrastructure.database import Database
from trackq.storage.models import Project
from trackq.storage.taxonomy import TaxonomyError, TaxonomyStore, slugify

FIXED_NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=UTC)


class TestSeeding:
    def test_builtins_seeded_once(self, tmp_path):
        path = tmp_path / "seed.db"
        first = Database(path, pool_size=1)
        assert len(TaxonomyStore(first).categories.fetch_all()) == 7
        first.close()

        second = Database(path, pool_size=1)
        store = TaxonomyStore(second)
        assert len(store.categories.fetch_all()) == 7
        assert len(store.roles.fetch_all()) == 4
        second.close()

    def test_single_default_role(self, taxonomy):
        default = taxonomy.roles.get_default()
        assert default is not None
        assert default.name == "Disputes"


class TestCategories:
    def test_create_derives_unique_slug(self, taxonomy):
        category = taxonomy.categories.create("Deep Work")
        assert category.slug == "deep-work"
        assert taxonomy.categories.get_by_slug("deep-work").name == "Deep Work"
        with pytest.raises(TaxonomyError):
            taxonomy.categories.create("Deep work")

    def test_builtin_cannot_be_deleted(self, taxonomy):
        builtin = taxonomy.categories.get_by_slug("creating")
        with pytest.raises(TaxonomyError):
            taxonomy.categories.delete(builtin.id)

    def test_user_category_can_be_deleted(self, taxonomy):
        category = taxonomy.categories.create("Admin")
        assert taxonomy.categories.delete(category.id) is True
        assert taxonomy.categories.get(category.id) is None

    def test_slug_frozen_once_referenced(self, taxonomy, make_session):
        category = taxonomy.categories.create("Ops")
        make_session(category_id=category.id)
        category.slug = "operations"
        with pytest.raises(TaxonomyError):
            taxonomy.categories.update(category)

    def test_unknown_slug_returns_none(self, taxonomy):
        assert taxonomy.categories.get_by_slug("gardening") is None

    def test_slugify_rejects_symbols_only(self):
        with pytest.raises(TaxonomyError):
            slugify("!!!")


class TestRoles:
    def test_setting_default_clears_others(self, taxonomy):
        role = taxonomy.roles.create("Platform", is_default=True)
        defaults = [r for r in taxonomy.roles.fetch_all() if r.is_default]
        assert [r.id for r in defaults] == [role.id]

        scams = taxonomy.roles.get_by_name("scams")
        taxonomy.roles.set_default(scams.id)
        defaults = [r for r in taxonomy.roles.fetch_all() if r.is_default]
        assert [r.name for r in defaults] == ["Scams"]

    def test_builtin_role_cannot_be_deleted(self, taxonomy):
        with pytest.raises(TaxonomyError):
            taxonomy.roles.delete(taxonomy.roles.get_by_name("Personal").id)

    def test_reorder(self, taxonomy):
        ids = [r.id for r in taxonomy.roles.fetch_all()]
        taxonomy.roles.reorder(list(reversed(ids)))
        assert [r.id for r in taxonomy.roles.fetch_all()] == list(reversed(ids))


class TestProjectRepository:
    def test_add_pattern_persists_once(self, taxonomy):
        project = taxonomy.projects.create("Disputes Work")
        assert taxonomy.projects.add_pattern(project.id, "DISP-") is True
        assert taxonomy.projects.add_pattern(project.id, "disp-") is False
        assert taxonomy.projects.get(project.id).patterns == ["DISP-"]

    def test_record_activity_is_additive(self, taxonomy):
        project = taxonomy.projects.create("Alpha")
        taxonomy.projects.record_activity(project.id, 90, FIXED_NOW)
        taxonomy.projects.record_activity(project.id, 30, FIXED_NOW)
        stored = taxonomy.projects.get(project.id)
        assert stored.total_duration == pytest.approx(120)
        assert stored.last_seen == FIXED_NOW

    def test_fetch_all_orders_by_last_seen(self, taxonomy):
        never = taxonomy.projects.create("Never")
        old = taxonomy.projects.create("Old", last_seen=FIXED_NOW.replace(day=1))
        new = taxonomy.projects.create("New", last_seen=FIXED_NOW)
        assert [p.id for p in taxonomy.projects.fetch_all()] == [new.id, old.id, never.id]


class TestReconciliation:
    def test_pattern_match_picks_disp_project(self, taxonomy):
        disputes = taxonomy.projects.create("Disputes Queue", patterns=["DISP-"])
        taxonomy.projects.create("Scams Queue", patterns=["SCAM-"])

        project = taxonomy.find_or_create_project("Ticket DISP-42", "Disputes", ["DISP-42"])

        assert project.id == disputes.id
        # Pattern-only matches never grow the pattern list
        assert taxonomy.projects.get(disputes.id).patterns == ["DISP-"]
        assert len(taxonomy.projects.fetch_all()) == 2

    def test_exact_name_match_adds_new_patterns(self, taxonomy):
        existing = taxonomy.projects.create("Checkout", patterns=["checkout"])
        project = taxonomy.find_or_create_project(
            "checkout", "Cross-team", ["CHK-", "Checkout"], now=FIXED_NOW
        )
        stored = taxonomy.projects.get(existing.id)
        assert project.id == existing.id
        assert stored.patterns == ["checkout", "CHK-"]
        assert stored.last_seen == FIXED_NOW

    def test_creates_ai_suggested_project(self, taxonomy):
        project = taxonomy.find_or_create_project(
            "Fraud Model", "scams", ["FRAUD"], now=FIXED_NOW
        )
        stored = taxonomy.projects.get(project.id)
        assert stored.is_ai_suggested is True
        assert stored.is_user_confirmed is False
        assert stored.confidence == pytest.approx(0.8)
        assert stored.role_id == taxonomy.roles.get_by_name("Scams").id
        assert stored.last_seen == FIXED_NOW

    def test_unknown_role_left_unset(self, taxonomy):
        project = taxonomy.find_or_create_project("Side Thing", "Astronaut", [])
        assert taxonomy.projects.get(project.id).role_id is None


def test_first_hit_beats_best_match():
    broad = Project(id=1, name="Broad", patterns=["ticket"])
    precise = Project(id=2, name="Precise", patterns=["ticket", "disp"])

    match = match_project([broad, precise], "ticket disp", None, None)
    assert match.project.id == 1
    assert match.kind == MatchKind.PATTERN

    ranked = rank_projects([broad, precise], "ticket disp")
    assert ranked[0][0].id == 1
    assert [score for _, score in ranked] == [1.0, 1.0]
