"""
Legacy data migration and project maintenance.

Older trackers stored free-text ``work_type`` and ``project_name`` on each
session. The versioned migrations below map those onto categories and
projects once; the maintenance helpers (stats refresh, merge, archive) can
be run at any time.

Key: Migrator.run_all() -> MigrationReport
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from trackq.config import MIGRATED_PROJECT_CONFIDENCE, PROJECT_ARCHIVE_DAYS
from trackq.infrastructure.database import Database, retry_on_db_lock
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import log_event
from trackq.storage.models import dedupe_casefold, slug_from_legacy_work_type, to_iso, utc_now
from trackq.storage.sessions import SessionRepository
from trackq.storage.taxonomy import TaxonomyStore

logger = get_logger(__name__)

MIGRATIONS_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        migrated_at TEXT NOT NULL
    )
"""


@dataclass
class MigrationReport:
    applied: list[str] = field(default_factory=list)
    sessions_categorized: int = 0
    projects_created: int = 0
    sessions_linked: int = 0
    projects_refreshed: int = 0


class Migrator:
    """Runs legacy migrations and project maintenance against the shared store."""

    def __init__(
        self,
        db: Database,
        taxonomy: TaxonomyStore,
        sessions: SessionRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.taxonomy = taxonomy
        self.sessions = sessions
        self.clock = clock

    # ------------------------------------------------------------------
    # Versioned migrations
    # ------------------------------------------------------------------

    def current_version(self) -> int:
        with self.db.transaction() as conn:
            conn.execute(MIGRATIONS_TABLE_SQL)
            row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return row[0] or 0

    def run_all(self) -> MigrationReport:
        """
        Apply every migration newer than the recorded version, in order.

        Each migration commits together with its version row, so an
        interrupted run resumes at the first unapplied step.
        """
        report = MigrationReport()
        steps: list[tuple[int, str, Callable[[MigrationReport], None]]] = [
            (1, "work_types_to_categories", self._step_work_types),
            (2, "project_names_to_projects", self._step_project_names),
            (3, "project_stats", self._step_project_stats),
        ]

        version = self.current_version()
        for number, name, step in steps:
            if number <= version:
                continue
            with self.db.transaction() as conn:
                step(report)
                conn.execute(
                    "INSERT INTO schema_migrations (version, name, migrated_at) VALUES (?, ?, ?)",
                    (number, name, to_iso(self.clock())),
                )
            report.applied.append(name)
            logger.info("Applied migration %d (%s)", number, name)

        log_event(
            "migrations.completed",
            applied=len(report.applied),
            categorized=report.sessions_categorized,
            projects_created=report.projects_created,
        )
        return report

    def _step_work_types(self, report: MigrationReport) -> None:
        report.sessions_categorized = self.migrate_work_types()

    def _step_project_names(self, report: MigrationReport) -> None:
        report.projects_created, report.sessions_linked = self.migrate_project_names()

    def _step_project_stats(self, report: MigrationReport) -> None:
        report.projects_refreshed = self.refresh_project_stats()

    # ------------------------------------------------------------------
    # Individual migrations
    # ------------------------------------------------------------------

    @retry_on_db_lock()
    def migrate_work_types(self) -> int:
        """Map legacy work-type strings onto category ids for uncategorized sessions."""
        slugs = {c.slug: c.id for c in self.taxonomy.categories.fetch_all(include_inactive=True)}
        updated = 0
        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT id, work_type FROM activity_sessions
                WHERE work_type IS NOT NULL AND category_id IS NULL
                """
            ).fetchall()
            for row in rows:
                category_id = slugs.get(slug_from_legacy_work_type(row["work_type"]))
                if category_id is None:
                    continue
                conn.execute(
                    "UPDATE activity_sessions SET category_id = ?, is_ai_categorized = 0 WHERE id = ?",
                    (category_id, row["id"]),
                )
                updated += 1
        logger.info("Migrated work types for %d sessions", updated)
        return updated

    @retry_on_db_lock()
    def migrate_project_names(self) -> tuple[int, int]:
        """
        Create a project per distinct legacy project name and link its sessions.

        Returns:
            (projects created, sessions linked)
        """
        projects = self.taxonomy.projects
        default_role = self.taxonomy.roles.get_default()
        created = linked = 0

        with self.db.transaction() as conn:
            names = [
                row[0]
                for row in conn.execute(
                    """
                    SELECT DISTINCT project_name FROM activity_sessions
                    WHERE project_name IS NOT NULL AND TRIM(project_name) != ''
                    ORDER BY project_name
                    """
                ).fetchall()
            ]
            for name in names:
                project = projects.get_by_name(name)
                if project is None:
                    project = projects.create(
                        name=name,
                        role_id=default_role.id if default_role else None,
                        patterns=[name.strip().lower()],
                        is_ai_suggested=True,
                        confidence=MIGRATED_PROJECT_CONFIDENCE,
                    )
                    created += 1
                linked += conn.execute(
                    """
                    UPDATE activity_sessions SET project_id = ?
                    WHERE project_name = ? AND project_id IS NULL
                    """,
                    (project.id, name),
                ).rowcount

        logger.info("Migrated project names: %d created, %d sessions linked", created, linked)
        return created, linked

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def refresh_project_stats(self) -> int:
        """Recompute total duration and last-seen for every project from its sessions."""
        refreshed = 0
        with self.db.transaction():
            for project in self.taxonomy.projects.fetch_all(include_inactive=True):
                if project.id is None:
                    continue
                total, last_start = self.sessions.project_aggregates(project.id)
                project.total_duration = total
                project.last_seen = last_start or project.last_seen
                self.taxonomy.projects.save(project)
                refreshed += 1
        return refreshed

    def merge_projects(self, source_id: int, target_id: int) -> None:
        """
        Fold ``source_id`` into ``target_id``.

        Raises:
            ValueError: If either project is missing or they are the same project

        Side Effects:
            - Moves all sessions to the target
            - Merges patterns (case-insensitive dedup) and deletes the source
        """
        if source_id == target_id:
            raise ValueError("Cannot merge a project into itself")

        projects = self.taxonomy.projects
        with self.db.transaction() as conn:
            source = projects.get(source_id)
            target = projects.get(target_id)
            if source is None or target is None:
                raise ValueError("Project not found")

            conn.execute(
                "UPDATE activity_sessions SET project_id = ? WHERE project_id = ?",
                (target_id, source_id),
            )
            target.patterns = dedupe_casefold([*target.patterns, *source.patterns])
            total, last_start = self.sessions.project_aggregates(target_id)
            target.total_duration = total
            target.last_seen = last_start or target.last_seen
            projects.save(target)
            projects.delete(source_id)

        logger.info("Merged project %s into %s", source_id, target_id)

    def archive_inactive_projects(self, days: int = PROJECT_ARCHIVE_DAYS) -> int:
        """
        Deactivate unconfirmed projects not seen within ``days``.

        Projects never seen at all are archived once they are older than the cutoff.
        """
        cutoff = to_iso(self.clock() - timedelta(days=days))
        with self.db.transaction() as conn:
            archived = conn.execute(
                """
                UPDATE projects SET is_active = 0
                WHERE is_active = 1 AND is_user_confirmed = 0
                  AND (last_seen < ? OR (last_seen IS NULL AND created_at < ?))
                """,
                (cutoff, cutoff),
            ).rowcount
        logger.info("Archived %d inactive projects", archived)
        return archived
