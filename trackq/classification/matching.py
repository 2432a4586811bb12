"""
Project matching and role resolution.

Pure functions over already-loaded taxonomy records; nothing here touches
storage. Reconciliation is first-hit: an exact (case-insensitive) name match
wins, otherwise the first project in the given order whose pattern occurs in
the observed text. ``rank_projects`` scores every candidate by
``Project.match_confidence`` for diagnostics only and never decides the
reconciliation target.

Key: match_project(projects, name, app_name, window_title) -> ProjectMatch | None
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from trackq.storage.models import Project, Role, dedupe_casefold


class MatchKind(str, Enum):
    NAME = "name"
    PATTERN = "pattern"


@dataclass(frozen=True)
class ProjectMatch:
    project: Project
    kind: MatchKind


def find_by_name(projects: Iterable[Project], name: str | None) -> Project | None:
    if not name or not name.strip():
        return None
    needle = name.strip().lower()
    for project in projects:
        if project.name.lower() == needle:
            return project
    return None


def find_by_pattern(
    projects: Iterable[Project],
    name: str | None,
    app_name: str | None = None,
    window_title: str | None = None,
) -> Project | None:
    for project in projects:
        if project.matches(name, app_name, window_title):
            return project
    return None


def match_project(
    projects: Sequence[Project],
    name: str | None,
    app_name: str | None = None,
    window_title: str | None = None,
) -> ProjectMatch | None:
    """Exact name match first, then first pattern hit in list order."""
    by_name = find_by_name(projects, name)
    if by_name is not None:
        return ProjectMatch(by_name, MatchKind.NAME)

    by_pattern = find_by_pattern(projects, name, app_name, window_title)
    if by_pattern is not None:
        return ProjectMatch(by_pattern, MatchKind.PATTERN)
    return None


def rank_projects(
    projects: Iterable[Project],
    name: str | None,
    app_name: str | None = None,
    window_title: str | None = None,
) -> list[tuple[Project, float]]:
    """Projects with a non-zero match confidence, best first (stable for ties)."""
    scored = [
        (project, project.match_confidence(name, app_name, window_title)) for project in projects
    ]
    scored = [item for item in scored if item[1] > 0]
    scored.sort(key=lambda item: item[1], reverse=True)
    return scored


def resolve_role(roles: Iterable[Role], role_name: str | None) -> Role | None:
    if not role_name or not role_name.strip():
        return None
    needle = role_name.strip().lower()
    for role in roles:
        if role.name.lower() == needle:
            return role
    return None


def merge_patterns(existing: list[str], new: Iterable[str]) -> list[str]:
    return dedupe_casefold([*existing, *new])
