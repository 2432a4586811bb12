"""
Taxonomy Store - categories, roles and projects.

The only writer of taxonomy rows. The categorizer, suggestion review and the
insight engine request mutations through these methods and never issue SQL
against taxonomy tables themselves.

Key: TaxonomyStore(db) exposing .categories, .roles, .projects repositories
and find_or_create_project() for reconciliation.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from datetime import datetime

from trackq.classification.matching import MatchKind, match_project, resolve_role
from trackq.config import NEW_PROJECT_CONFIDENCE
from trackq.infrastructure.database import Database, retry_on_db_lock
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter
from trackq.storage import BaseRepository, placeholders
from trackq.storage.models import (
    Category,
    Project,
    Role,
    dedupe_casefold,
    encode_json_list,
    to_iso,
    utc_now,
)

logger = get_logger(__name__)

_SLUG_STRIP = re.compile(r"[^a-z0-9]+")


class TaxonomyError(ValueError):
    """Raised for taxonomy edits that would break an invariant."""


def slugify(name: str) -> str:
    slug = _SLUG_STRIP.sub("-", name.strip().lower()).strip("-")
    if not slug:
        raise TaxonomyError(f"Cannot derive a slug from {name!r}")
    return slug


class CategoryRepository(BaseRepository):
    table_name = "work_categories"

    def fetch_all(self, include_inactive: bool = False) -> list[Category]:
        where = "" if include_inactive else "WHERE is_active = 1"
        rows = self.query_all(f"SELECT * FROM work_categories {where} ORDER BY sort_order, id")
        return [Category.from_db_row(dict(row)) for row in rows]

    def get(self, category_id: int) -> Category | None:
        row = self.query_one("SELECT * FROM work_categories WHERE id = ?", (category_id,))
        return Category.from_db_row(dict(row)) if row else None

    def get_by_slug(self, slug: str | None) -> Category | None:
        """Exact slug lookup; unknown slugs return None."""
        if not slug:
            return None
        row = self.query_one("SELECT * FROM work_categories WHERE slug = ?", (slug,))
        return Category.from_db_row(dict(row)) if row else None

    @retry_on_db_lock()
    def create(
        self,
        name: str,
        slug: str | None = None,
        description: str = "",
        icon: str = "folder.fill",
        color: str = "#6B7280",
    ) -> Category:
        """
        Create a user-defined category.

        Raises:
            TaxonomyError: If the slug is already taken

        Side Effects:
            - Inserts row into work_categories
        """
        category_slug = slugify(slug or name)
        with self.db.transaction() as conn:
            if conn.execute(
                "SELECT 1 FROM work_categories WHERE slug = ?", (category_slug,)
            ).fetchone():
                raise TaxonomyError(f"Category slug already exists: {category_slug}")
            next_order = conn.execute(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM work_categories"
            ).fetchone()[0]
            category = Category(
                name=name,
                slug=category_slug,
                description=description,
                icon=icon,
                color=color,
                sort_order=next_order,
            )
            row = category.to_db_dict()
            row.pop("id")
            cursor = conn.execute(
                """
                INSERT INTO work_categories (
                    name, slug, icon, color, description,
                    is_built_in, is_active, sort_order, created_at
                ) VALUES (
                    :name, :slug, :icon, :color, :description,
                    :is_built_in, :is_active, :sort_order, :created_at
                )
                """,
                row,
            )
        category.id = cursor.lastrowid
        logger.info("Created category %s (%s)", category.id, category.slug)
        return category

    def update(self, category: Category) -> Category:
        """
        Update display fields of a category.

        The slug cannot change once any session references the category.
        """
        if category.id is None:
            raise TaxonomyError("Cannot update a category without an id")
        with self.db.transaction() as conn:
            current = conn.execute(
                "SELECT slug FROM work_categories WHERE id = ?", (category.id,)
            ).fetchone()
            if current is None:
                raise TaxonomyError(f"Category not found: {category.id}")
            if current["slug"] != category.slug:
                in_use = conn.execute(
                    "SELECT 1 FROM activity_sessions WHERE category_id = ? LIMIT 1",
                    (category.id,),
                ).fetchone()
                if in_use:
                    raise TaxonomyError(
                        f"Slug '{current['slug']}' is referenced by sessions and cannot change"
                    )
            conn.execute(
                """
                UPDATE work_categories
                SET name = :name, slug = :slug, icon = :icon, color = :color,
                    description = :description, is_active = :is_active,
                    sort_order = :sort_order
                WHERE id = :id
                """,
                category.to_db_dict(),
            )
        return category

    def delete(self, category_id: int) -> bool:
        category = self.get(category_id)
        if category is None:
            return False
        if category.is_built_in:
            raise TaxonomyError(f"Built-in category '{category.slug}' cannot be deleted")
        return self.delete_by_id(category_id)


class RoleRepository(BaseRepository):
    table_name = "project_roles"

    def fetch_all(self, include_inactive: bool = False) -> list[Role]:
        where = "" if include_inactive else "WHERE is_active = 1"
        rows = self.query_all(f"SELECT * FROM project_roles {where} ORDER BY sort_order, id")
        return [Role.from_db_row(dict(row)) for row in rows]

    def get(self, role_id: int) -> Role | None:
        row = self.query_one("SELECT * FROM project_roles WHERE id = ?", (role_id,))
        return Role.from_db_row(dict(row)) if row else None

    def get_by_name(self, name: str | None) -> Role | None:
        if not name:
            return None
        row = self.query_one(
            "SELECT * FROM project_roles WHERE LOWER(name) = LOWER(?) ORDER BY sort_order LIMIT 1",
            (name.strip(),),
        )
        return Role.from_db_row(dict(row)) if row else None

    def get_default(self) -> Role | None:
        row = self.query_one(
            "SELECT * FROM project_roles WHERE is_default = 1 AND is_active = 1 LIMIT 1"
        )
        return Role.from_db_row(dict(row)) if row else None

    @retry_on_db_lock()
    def create(
        self,
        name: str,
        description: str = "",
        color: str = "#6B7280",
        icon: str = "folder.fill",
        is_default: bool = False,
    ) -> Role:
        with self.db.transaction() as conn:
            next_order = conn.execute(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 FROM project_roles"
            ).fetchone()[0]
            role = Role(
                name=name,
                description=description,
                color=color,
                icon=icon,
                is_default=is_default,
                is_user_defined=True,
                sort_order=next_order,
            )
            if is_default:
                conn.execute("UPDATE project_roles SET is_default = 0")
            row = role.to_db_dict()
            row.pop("id")
            cursor = conn.execute(
                """
                INSERT INTO project_roles (
                    name, description, color, icon, is_default,
                    is_user_defined, is_active, sort_order, created_at
                ) VALUES (
                    :name, :description, :color, :icon, :is_default,
                    :is_user_defined, :is_active, :sort_order, :created_at
                )
                """,
                row,
            )
        role.id = cursor.lastrowid
        logger.info("Created role %s (%s)", role.id, role.name)
        return role

    def update(self, role: Role) -> Role:
        """Update a role; marking it default clears the flag on every other role."""
        if role.id is None:
            raise TaxonomyError("Cannot update a role without an id")
        with self.db.transaction() as conn:
            if role.is_default:
                conn.execute("UPDATE project_roles SET is_default = 0 WHERE id != ?", (role.id,))
            conn.execute(
                """
                UPDATE project_roles
                SET name = :name, description = :description, color = :color,
                    icon = :icon, is_default = :is_default, is_active = :is_active,
                    sort_order = :sort_order
                WHERE id = :id
                """,
                role.to_db_dict(),
            )
        return role

    def set_default(self, role_id: int) -> None:
        with self.db.transaction() as conn:
            if not conn.execute("SELECT 1 FROM project_roles WHERE id = ?", (role_id,)).fetchone():
                raise TaxonomyError(f"Role not found: {role_id}")
            conn.execute(
                "UPDATE project_roles SET is_default = CASE WHEN id = ? THEN 1 ELSE 0 END",
                (role_id,),
            )

    def reorder(self, role_ids: Sequence[int]) -> None:
        with self.db.transaction() as conn:
            for position, role_id in enumerate(role_ids):
                conn.execute(
                    "UPDATE project_roles SET sort_order = ? WHERE id = ?", (position, role_id)
                )

    def delete(self, role_id: int) -> bool:
        role = self.get(role_id)
        if role is None:
            return False
        if not role.is_user_defined:
            raise TaxonomyError(f"Built-in role '{role.name}' cannot be deleted")
        return self.delete_by_id(role_id)


class ProjectRepository(BaseRepository):
    table_name = "projects"

    _COLUMNS = (
        "name, role_id, default_category_id, patterns, sources, is_active, "
        "is_ai_suggested, is_user_confirmed, confidence, total_duration, "
        "last_seen, created_at, notes"
    )
    _VALUES = (
        ":name, :role_id, :default_category_id, :patterns, :sources, :is_active, "
        ":is_ai_suggested, :is_user_confirmed, :confidence, :total_duration, "
        ":last_seen, :created_at, :notes"
    )

    def fetch_all(self, include_inactive: bool = False) -> list[Project]:
        """Projects ordered by most recently seen (never-seen last)."""
        where = "" if include_inactive else "WHERE is_active = 1"
        rows = self.query_all(
            f"SELECT * FROM projects {where} ORDER BY last_seen IS NULL, last_seen DESC, id"
        )
        return [Project.from_db_row(dict(row)) for row in rows]

    def get(self, project_id: int) -> Project | None:
        row = self.query_one("SELECT * FROM projects WHERE id = ?", (project_id,))
        return Project.from_db_row(dict(row)) if row else None

    def get_by_name(self, name: str) -> Project | None:
        row = self.query_one(
            "SELECT * FROM projects WHERE LOWER(name) = LOWER(?) ORDER BY id LIMIT 1",
            (name.strip(),),
        )
        return Project.from_db_row(dict(row)) if row else None

    @retry_on_db_lock()
    def save(self, project: Project) -> Project:
        """
        Insert a new project or update an existing one.

        Side Effects:
            - Inserts or updates a row in projects
        """
        row = project.to_db_dict()
        with self.db.transaction() as conn:
            if project.id is None:
                row.pop("id")
                cursor = conn.execute(
                    f"INSERT INTO projects ({self._COLUMNS}) VALUES ({self._VALUES})", row
                )
                project.id = cursor.lastrowid
            else:
                assignments = ", ".join(
                    f"{column.strip()} = :{column.strip()}"
                    for column in self._COLUMNS.split(",")
                )
                conn.execute(f"UPDATE projects SET {assignments} WHERE id = :id", row)
        return project

    def create(
        self,
        name: str,
        role_id: int | None = None,
        patterns: list[str] | None = None,
        default_category_id: int | None = None,
        is_ai_suggested: bool = False,
        confidence: float = 0.0,
        last_seen: datetime | None = None,
    ) -> Project:
        project = Project(
            name=name,
            role_id=role_id,
            default_category_id=default_category_id,
            patterns=patterns or [],
            is_ai_suggested=is_ai_suggested,
            confidence=confidence,
            last_seen=last_seen,
        )
        self.save(project)
        logger.info("Created project %s (ai_suggested=%s)", project.id, is_ai_suggested)
        counter("taxonomy.project_created")
        return project

    def delete(self, project_id: int) -> bool:
        return self.delete_by_id(project_id)

    def add_pattern(self, project_id: int, pattern: str) -> bool:
        """Add a pattern unless it is blank or already present (case-insensitive)."""
        with self.db.transaction():
            project = self.get(project_id)
            if project is None:
                raise TaxonomyError(f"Project not found: {project_id}")
            if not project.add_pattern(pattern):
                return False
            self.execute(
                "UPDATE projects SET patterns = ? WHERE id = ?",
                (encode_json_list(project.patterns), project_id),
            )
        return True

    def update_role(self, project_id: int, role_id: int | None) -> None:
        self.execute("UPDATE projects SET role_id = ? WHERE id = ?", (role_id, project_id))

    def update_default_category(self, project_id: int, category_id: int | None) -> None:
        self.execute(
            "UPDATE projects SET default_category_id = ? WHERE id = ?", (category_id, project_id)
        )

    def confirm(self, project_id: int) -> None:
        """Mark a project as confirmed by a human (confidence 1.0)."""
        self.execute(
            "UPDATE projects SET is_user_confirmed = 1, confidence = 1.0 WHERE id = ?",
            (project_id,),
        )

    def touch(self, project_id: int, now: datetime | None = None) -> None:
        self.execute(
            "UPDATE projects SET last_seen = ? WHERE id = ?", (to_iso(now or utc_now()), project_id)
        )

    def record_activity(
        self, project_id: int, duration: float, now: datetime | None = None
    ) -> None:
        """Add ``duration`` seconds to the project total and refresh last-seen."""
        self.execute(
            """
            UPDATE projects
            SET total_duration = total_duration + ?, last_seen = ?
            WHERE id = ?
            """,
            (max(0.0, duration), to_iso(now or utc_now()), project_id),
        )

    def deactivate(self, project_ids: Sequence[int]) -> int:
        if not project_ids:
            return 0
        ids = list(project_ids)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE projects SET is_active = 0 WHERE id IN ({placeholders(ids)})", ids
            )
            return cursor.rowcount


class TaxonomyStore:
    """Owner of categories, roles and projects."""

    def __init__(self, db: Database):
        self.db = db
        self.categories = CategoryRepository(db)
        self.roles = RoleRepository(db)
        self.projects = ProjectRepository(db)

    def find_or_create_project(
        self,
        name: str,
        role_name: str | None,
        patterns: list[str] | None = None,
        app_name: str | None = None,
        window_title: str | None = None,
        known_projects: Sequence[Project] | None = None,
        roles: Sequence[Role] | None = None,
        now: datetime | None = None,
    ) -> Project:
        """
        Reconcile a proposed project against the known active projects.

        1. Exact name match (case-insensitive): reuse, append new patterns, touch.
        2. First project whose pattern occurs in name/app/title: reuse, touch.
        3. Otherwise create an AI-suggested project (confidence 0.8).

        Side Effects:
            - Updates or inserts one row in projects
        """
        now = now or utc_now()
        new_patterns = dedupe_casefold(patterns or [])
        projects = list(known_projects) if known_projects is not None else self.projects.fetch_all()

        with self.db.transaction():
            match = match_project(projects, name, app_name, window_title)
            if match is not None:
                project = match.project
                if match.kind == MatchKind.NAME:
                    for pattern in new_patterns:
                        if project.add_pattern(pattern):
                            self.projects.add_pattern(project.id, pattern)
                project.last_seen = now
                self.projects.touch(project.id, now)
                counter(f"taxonomy.project_match.{match.kind.value}")
                logger.debug("Matched project %s by %s", project.id, match.kind.value)
                return project

            role_list = roles if roles is not None else self.roles.fetch_all()
            role = resolve_role(role_list, role_name)
            return self.projects.create(
                name=name,
                role_id=role.id if role else None,
                patterns=new_patterns,
                is_ai_suggested=True,
                confidence=NEW_PROJECT_CONFIDENCE,
                last_seen=now,
            )
