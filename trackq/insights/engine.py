"""
Insight Engine - mines recent sessions for taxonomy fixes and applies them.

Four independent families (category, project, pattern, role) are generated
over the same session window, concatenated, and sorted by confidence
(stable, so equal confidences keep generation order). Every applied,
dismissed, modified or deferred insight is recorded as InsightFeedback.

Key: InsightEngine.generate_insights(window_days) -> InsightAnalysisResult,
InsightEngine.apply_action(insight, action)
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from trackq.config import INSIGHT_HIGH_CONFIDENCE, INSIGHT_WINDOW_DAYS
from trackq.insights.models import ActionableInsight, InsightAnalysisResult, SuggestedAction
from trackq.insights.patterns import extract_common_patterns, infer_category_for_app, infer_role
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, log_event, time_block
from trackq.storage.feedback import FeedbackRepository
from trackq.storage.models import (
    CHANGE_KINDS,
    ActionImpact,
    ActivitySession,
    AddPattern,
    BulkAssignProject,
    BulkCategorize,
    ChangeCategory,
    ChangeDescriptor,
    ChangeRole,
    CreateProject,
    Dismiss,
    FeedbackAction,
    InsightFeedback,
    InsightType,
    Project,
    TargetType,
    change_adapter,
    utc_now,
)
from trackq.storage.sessions import SessionRepository
from trackq.storage.taxonomy import TaxonomyStore

logger = get_logger(__name__)


class InsightError(ValueError):
    """Raised when an insight action cannot be applied; nothing is committed."""


def parse_changes(data: dict[str, Any] | ChangeDescriptor) -> ChangeDescriptor:
    """
    Validate a raw change mapping (e.g. user-edited) into a ChangeDescriptor.

    Raises:
        InsightError: For a missing/unknown kind or missing parameters
    """
    if not isinstance(data, dict):
        return data
    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        raise InsightError("Invalid action specified")
    if kind not in CHANGE_KINDS:
        raise InsightError(f"Unknown action type: {kind}")
    try:
        return change_adapter.validate_python(data)
    except ValidationError as e:
        raise InsightError("Missing required parameters for action") from e


def _group_in_order(
    sessions: Sequence[ActivitySession], key: Callable[[ActivitySession], Any]
) -> dict[Any, list[ActivitySession]]:
    groups: dict[Any, list[ActivitySession]] = {}
    for session in sessions:
        groups.setdefault(key(session), []).append(session)
    return groups


def _ids(sessions: Sequence[ActivitySession]) -> list[int]:
    return [s.id for s in sessions if s.id is not None]


class InsightEngine:
    """Generates and applies insights over the shared store."""

    def __init__(
        self,
        taxonomy: TaxonomyStore,
        sessions: SessionRepository,
        feedback: FeedbackRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.taxonomy = taxonomy
        self.sessions = sessions
        self.feedback = feedback
        self.clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate_insights(
        self, window_days: int = INSIGHT_WINDOW_DAYS, now: datetime | None = None
    ) -> InsightAnalysisResult:
        """
        Analyze sessions from the last ``window_days`` days.

        Runs are serialized; a second caller waits for the first to finish.
        """
        with self._lock, time_block("insights.generate"):
            now = now or self.clock()
            sessions = self.sessions.fetch_range(now - timedelta(days=window_days), now)
            if not sessions:
                return InsightAnalysisResult(
                    summary="No insights available",
                    sessions_analyzed=0,
                    coverage_percentage=0.0,
                    generated_at=now,
                )

            projects = self.taxonomy.projects.fetch_all()
            insights = [
                *self._category_insights(sessions),
                *self._project_insights(sessions, projects),
                *self._pattern_insights(sessions, projects),
                *self._role_insights(sessions, projects),
            ]
            insights.sort(key=lambda insight: insight.confidence, reverse=True)

            linked = sum(1 for s in sessions if s.project_id is not None)
            coverage = linked / len(sessions)

        counter("insights.generated", len(insights))
        logger.info("Generated %d insights from %d sessions", len(insights), len(sessions))
        return InsightAnalysisResult(
            insights=insights,
            summary=self._summary(insights, len(sessions), coverage),
            sessions_analyzed=len(sessions),
            coverage_percentage=coverage,
            generated_at=now,
        )

    @staticmethod
    def _summary(insights: list[ActionableInsight], session_count: int, coverage: float) -> str:
        if not insights:
            return "All sessions are well-categorized. No suggestions at this time."
        high = sum(1 for i in insights if i.confidence >= INSIGHT_HIGH_CONFIDENCE)
        return (
            f"{len(insights)} insights generated from {session_count} sessions "
            f"({int(coverage * 100)}% coverage). {high} high-confidence suggestions ready to apply."
        )

    def _category_insights(self, sessions: Sequence[ActivitySession]) -> list[ActionableInsight]:
        categories = {c.slug: c for c in self.taxonomy.categories.fetch_all()}
        uncategorized = [s for s in sessions if s.category_id is None]
        insights = []

        for app_name, app_sessions in _group_in_order(
            uncategorized, lambda s: s.app_name or "Unknown"
        ).items():
            if len(app_sessions) < 3:
                continue
            slug = infer_category_for_app(app_name)
            if slug is None:
                continue

            category = categories.get(slug)
            label = category.name if category else slug
            count = len(app_sessions)
            insights.append(
                ActionableInsight(
                    insight_type=InsightType.CATEGORY_SUGGESTION,
                    title=f"Categorize {app_name} sessions",
                    description=(
                        f"{count} sessions from {app_name} are uncategorized. "
                        f"They appear to be {label} work."
                    ),
                    confidence=min(0.9, 0.5 + 0.05 * count),
                    suggested_actions=[
                        SuggestedAction(
                            label=f"Apply '{label}'",
                            description=f"Set category for all {count} sessions",
                            target_type=TargetType.CATEGORY,
                            target_id=category.id if category else None,
                            target_name=category.name if category else None,
                            changes=BulkCategorize(
                                session_ids=_ids(app_sessions), category_slug=slug
                            ),
                            impact=ActionImpact.MEDIUM,
                        )
                    ],
                    related_sessions=_ids(app_sessions),
                    metadata={"app_name": app_name, "suggested_category": slug},
                )
            )
        return insights

    def _project_insights(
        self, sessions: Sequence[ActivitySession], projects: Sequence[Project]
    ) -> list[ActionableInsight]:
        unassigned = [s for s in sessions if s.project_id is None and s.project_name]
        insights = []

        for name, group in _group_in_order(unassigned, lambda s: s.project_name).items():
            if len(group) < 2:
                continue
            count = len(group)
            lowered = name.lower()
            match = next(
                (p for p in projects if lowered in p.name.lower() or p.name.lower() in lowered),
                None,
            )

            if match is not None and match.id is not None:
                insights.append(
                    ActionableInsight(
                        insight_type=InsightType.PROJECT_SUGGESTION,
                        title=f"Link sessions to '{match.name}'",
                        description=(
                            f"{count} sessions reference '{name}' which may belong to "
                            f"the '{match.name}' project."
                        ),
                        confidence=0.75,
                        suggested_actions=[
                            SuggestedAction(
                                label=f"Link to '{match.name}'",
                                description=f"Assign all {count} sessions to this project",
                                target_type=TargetType.PROJECT,
                                target_id=match.id,
                                target_name=match.name,
                                changes=BulkAssignProject(
                                    session_ids=_ids(group), project_id=match.id
                                ),
                                impact=ActionImpact.LOW,
                            ),
                            SuggestedAction(
                                label=f"Add '{name}' as pattern",
                                description=f"Add this name as a detection pattern for '{match.name}'",
                                target_type=TargetType.PROJECT,
                                target_id=match.id,
                                target_name=match.name,
                                changes=AddPattern(project_id=match.id, pattern=name),
                                impact=ActionImpact.LOW,
                            ),
                        ],
                        related_sessions=_ids(group),
                        metadata={"extracted_name": name, "matched_project": match.name},
                    )
                )
            else:
                insights.append(
                    ActionableInsight(
                        insight_type=InsightType.PROJECT_SUGGESTION,
                        title=f"Create project '{name}'",
                        description=(
                            f"{count} sessions reference '{name}' but no matching project exists."
                        ),
                        confidence=0.65,
                        suggested_actions=[
                            SuggestedAction(
                                label="Create Project",
                                description=f"Create '{name}' and assign these sessions",
                                target_type=TargetType.PROJECT,
                                target_name=name,
                                changes=CreateProject(project_name=name, session_ids=_ids(group)),
                                impact=ActionImpact.MEDIUM,
                            )
                        ],
                        related_sessions=_ids(group),
                        metadata={"project_name": name},
                    )
                )
        return insights

    def _pattern_insights(
        self, sessions: Sequence[ActivitySession], projects: Sequence[Project]
    ) -> list[ActionableInsight]:
        by_id = {p.id: p for p in projects}
        titled = [s for s in sessions if s.project_id is not None and s.window_title]
        insights = []

        for project_id, group in _group_in_order(titled, lambda s: s.project_id).items():
            project = by_id.get(project_id)
            if project is None or project.id is None:
                continue

            titles = [s.window_title for s in group if s.window_title]
            candidates = [p for p in extract_common_patterns(titles) if not project.has_pattern(p)]
            for pattern in candidates[:2]:
                insights.append(
                    ActionableInsight(
                        insight_type=InsightType.WORK_PATTERN,
                        title=f"Add pattern to '{project.name}'",
                        description=(
                            f"The pattern '{pattern}' appears frequently in {project.name} "
                            "sessions and could improve auto-detection."
                        ),
                        confidence=0.7,
                        suggested_actions=[
                            SuggestedAction(
                                label="Add Pattern",
                                description=f"Add '{pattern}' to {project.name}'s detection patterns",
                                target_type=TargetType.PROJECT,
                                target_id=project.id,
                                target_name=project.name,
                                changes=AddPattern(project_id=project.id, pattern=pattern),
                                impact=ActionImpact.LOW,
                            )
                        ],
                        related_sessions=_ids(group[:5]),
                        metadata={"pattern": pattern, "project_name": project.name},
                    )
                )
        return insights

    def _role_insights(
        self, sessions: Sequence[ActivitySession], projects: Sequence[Project]
    ) -> list[ActionableInsight]:
        roles = self.taxonomy.roles.fetch_all()
        roles_by_id = {r.id: r for r in roles}
        insights = []

        for project in projects:
            current = roles_by_id.get(project.role_id) if project.role_id is not None else None
            if current is None or project.id is None:
                continue
            project_sessions = [s for s in sessions if s.project_id == project.id]
            if len(project_sessions) < 5:
                continue

            titles = [s.window_title for s in project_sessions if s.window_title]
            inferred = infer_role(titles, roles, len(project_sessions))
            if inferred is None or inferred.id == current.id or inferred.id is None:
                continue

            insights.append(
                ActionableInsight(
                    insight_type=InsightType.ROLE_SUGGESTION,
                    title=f"Review role for '{project.name}'",
                    description=(
                        f"Based on recent activity, '{project.name}' might belong to "
                        f"'{inferred.name}' instead of '{current.name}'."
                    ),
                    confidence=0.6,
                    suggested_actions=[
                        SuggestedAction(
                            label=f"Change to '{inferred.name}'",
                            description="Update project role",
                            target_type=TargetType.ROLE,
                            target_id=inferred.id,
                            target_name=inferred.name,
                            changes=ChangeRole(project_id=project.id, new_role_id=inferred.id),
                            impact=ActionImpact.MEDIUM,
                        ),
                        SuggestedAction(
                            label=f"Keep '{current.name}'",
                            description="Dismiss this suggestion",
                            target_type=TargetType.ROLE,
                            target_id=current.id,
                            target_name=current.name,
                            changes=Dismiss(),
                            impact=ActionImpact.LOW,
                        ),
                    ],
                    related_sessions=_ids(project_sessions[:5]),
                    metadata={"current_role": current.name, "suggested_role": inferred.name},
                )
            )
        return insights

    # ------------------------------------------------------------------
    # Feedback
    # ------------------------------------------------------------------

    def apply_action(
        self, insight: ActionableInsight, action: SuggestedAction | int = 0
    ) -> InsightFeedback:
        """
        Execute a suggested action and record feedback (applied, or dismissed).

        Raises:
            InsightError: Invalid action, unknown category, missing project, ...

        Side Effects:
            - Mutates sessions/projects per the action's ChangeDescriptor
            - Appends one insight_feedback row (same transaction)
        """
        chosen = self._resolve_action(insight, action)
        outcome = (
            FeedbackAction.DISMISSED
            if isinstance(chosen.changes, Dismiss)
            else FeedbackAction.APPLIED
        )
        return self._execute_and_record(insight, chosen, chosen.changes, outcome)

    def apply_modified_action(
        self,
        insight: ActionableInsight,
        original: SuggestedAction | int,
        modified_changes: dict[str, Any] | ChangeDescriptor,
    ) -> InsightFeedback:
        """Apply the user's replacement changes and record them as ``modified``."""
        chosen = self._resolve_action(insight, original)
        changes = parse_changes(modified_changes)
        return self._execute_and_record(insight, chosen, changes, FeedbackAction.MODIFIED)

    def defer(self, insight: ActionableInsight) -> InsightFeedback:
        """Record that the user postponed an insight; nothing is mutated."""
        feedback = self.feedback.record(
            InsightFeedback(
                insight_type=insight.insight_type,
                insight_text=insight.description,
                action=FeedbackAction.DEFERRED,
                target_type=TargetType.GLOBAL,
                confidence=insight.confidence,
                created_at=self.clock(),
            )
        )
        counter("insights.deferred")
        return feedback

    @staticmethod
    def _resolve_action(
        insight: ActionableInsight, action: SuggestedAction | int
    ) -> SuggestedAction:
        if isinstance(action, int):
            if 0 <= action < len(insight.suggested_actions):
                return insight.suggested_actions[action]
            raise InsightError("Invalid action specified")
        if action not in insight.suggested_actions:
            raise InsightError("Invalid action specified")
        return action

    def _execute_and_record(
        self,
        insight: ActionableInsight,
        action: SuggestedAction,
        changes: ChangeDescriptor,
        outcome: FeedbackAction,
    ) -> InsightFeedback:
        now = self.clock()
        with self.taxonomy.db.transaction():
            self._execute(changes)
            feedback = self.feedback.record(
                InsightFeedback(
                    insight_type=insight.insight_type,
                    insight_text=insight.description,
                    action=outcome,
                    target_type=action.target_type,
                    target_id=action.target_id,
                    target_name=action.target_name,
                    changes=changes,
                    confidence=insight.confidence,
                    created_at=now,
                    applied_at=now,
                )
            )

        counter(f"insights.{outcome.value}")
        log_event("insights.action", kind=changes.kind, outcome=outcome.value)
        return feedback

    def _execute(self, changes: ChangeDescriptor) -> None:
        projects = self.taxonomy.projects

        match changes:
            case BulkCategorize(session_ids=session_ids, category_slug=slug):
                category = self.taxonomy.categories.get_by_slug(slug)
                if category is None:
                    raise InsightError(f"Category not found: {slug}")
                if category.id is None:
                    raise InsightError("Invalid category ID")
                self.sessions.bulk_update_category(session_ids, category.id)

            case BulkAssignProject(session_ids=session_ids, project_id=project_id):
                if projects.get(project_id) is None:
                    raise InsightError("Project not found")
                self.sessions.bulk_update_project(session_ids, project_id)

            case AddPattern(project_id=project_id, pattern=pattern):
                if not pattern.strip():
                    raise InsightError("Missing required parameters for action")
                if projects.get(project_id) is None:
                    raise InsightError("Project not found")
                projects.add_pattern(project_id, pattern)

            case CreateProject(project_name=name, session_ids=session_ids):
                if not name.strip():
                    raise InsightError("Missing required parameters for action")
                project = projects.get_by_name(name)
                if project is None:
                    role = self.taxonomy.roles.get_default()
                    project = projects.create(
                        name=name, role_id=role.id if role else None, patterns=[name.lower()]
                    )
                if project.id is not None and session_ids:
                    self.sessions.bulk_update_project(session_ids, project.id)

            case ChangeRole(project_id=project_id, new_role_id=role_id):
                if projects.get(project_id) is None:
                    raise InsightError("Project not found")
                projects.update_role(project_id, role_id)

            case ChangeCategory(project_id=project_id, new_category_id=category_id):
                if projects.get(project_id) is None:
                    raise InsightError("Project not found")
                if self.taxonomy.categories.get(category_id) is None:
                    raise InsightError("Invalid category ID")
                projects.update_default_category(project_id, category_id)

            case Dismiss():
                pass

    # ------------------------------------------------------------------
    # Feedback history
    # ------------------------------------------------------------------

    def recent_feedback(self, limit: int = 50) -> list[InsightFeedback]:
        return self.feedback.fetch_recent(limit)

    def feedback_for_type(self, insight_type: InsightType) -> list[InsightFeedback]:
        return self.feedback.fetch_by_type(insight_type)

    def applied_feedback(self) -> list[InsightFeedback]:
        return self.feedback.fetch_applied()

    def feedback_counts(self) -> dict[FeedbackAction, int]:
        return self.feedback.counts_by_action()
