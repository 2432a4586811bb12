"""
Prompt Management Module

Loads classifier and period analysis prompts from the text files next to
this module and fills in the taxonomy or session context for each request.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from trackq.config import (
    ANALYSIS_FEEDBACK_IN_PROMPT,
    ANALYSIS_SESSION_LIMIT,
    PROMPT_MAX_PROJECTS,
)
from trackq.storage.models import (
    ActivitySession,
    AnalysisExchange,
    Category,
    ComprehensiveAnalysis,
    InsightFeedback,
    Project,
    Role,
    TimePeriod,
    format_duration,
    to_iso,
)

PROMPTS_DIR = Path(__file__).parent


class PromptLoader:
    """Load and cache prompt templates from files"""

    def __init__(self, prompts_dir: Path = PROMPTS_DIR):
        self.prompts_dir = prompts_dir
        self._cache: dict[str, str] = {}

    def load_prompt(self, prompt_name: str) -> str:
        """
        Load a prompt template from file.

        Raises:
            FileNotFoundError: If the template does not exist
        """
        if prompt_name not in self._cache:
            prompt_path = self.prompts_dir / f"{prompt_name}.txt"
            if not prompt_path.exists():
                raise FileNotFoundError(f"Prompt file not found: {prompt_path}")
            self._cache[prompt_name] = prompt_path.read_text(encoding="utf-8")
        return self._cache[prompt_name]

    def get_categorization_prompt(
        self,
        app_name: str | None,
        window_title: str | None,
        roles: Sequence[Role],
        categories: Sequence[Category],
        projects: Sequence[Project],
        max_projects: int = PROMPT_MAX_PROJECTS,
    ) -> str:
        """
        Build the categorization prompt.

        Only the first ``max_projects`` project names are listed so the model
        reuses known projects without the prompt growing unbounded.
        """
        role_names = ", ".join(role.name for role in roles)
        project_lines = "\n".join(f"- {p.name}" for p in list(projects)[:max_projects])
        return self.load_prompt("categorization_prompt").format(
            app_name=app_name or "Unknown",
            window_title=window_title or "Unknown",
            roles=role_names,
            categories="\n".join(f"- {c.slug}: {c.description}" for c in categories),
            category_slugs=", ".join(c.slug for c in categories),
            projects=project_lines or "No existing projects yet",
        )

    def get_description_prompt(self) -> str:
        return self.load_prompt("description_prompt").strip()

    def get_period_analysis_prompt(
        self,
        period: TimePeriod,
        sessions: Sequence[ActivitySession],
        feedback: Sequence[InsightFeedback],
        max_sessions: int = ANALYSIS_SESSION_LIMIT,
        max_feedback: int = ANALYSIS_FEEDBACK_IN_PROMPT,
    ) -> str:
        """
        Build the period analysis prompt.

        Totals cover every session; only the first ``max_sessions`` are listed
        line by line, and only the first ``max_feedback`` feedback rows.
        """
        session_lines = "\n".join(_session_line(s) for s in list(sessions)[:max_sessions])
        feedback_lines = "\n".join(
            f"- {fb.insight_text} ({fb.action.value.capitalize()})"
            for fb in list(feedback)[:max_feedback]
        )
        return self.load_prompt("period_analysis_prompt").format(
            period=period.display_name,
            total_time=format_duration(sum(s.duration for s in sessions)),
            session_count=len(sessions),
            session_data=session_lines,
            feedback=feedback_lines or "No previous feedback",
        )

    def get_follow_up_prompt(
        self,
        question: str,
        analysis: ComprehensiveAnalysis,
        exchanges: Sequence[AnalysisExchange],
    ) -> str:
        segments = "\n".join(
            f"- {seg.name}: {seg.formatted_duration}, Focus: {seg.focus_quality or 'unknown'}"
            for seg in analysis.work_segments
        )
        conversation = "\n\n".join(f"Q: {ex.question}\nA: {ex.answer}" for ex in exchanges)
        return self.load_prompt("follow_up_prompt").format(
            overview=analysis.overview,
            segments=segments,
            key_insights="\n".join(f"- {insight}" for insight in analysis.key_insights),
            total_time=analysis.formatted_total_time,
            session_count=analysis.session_count,
            conversation=conversation or "No previous questions",
            question=question,
        )

    def reload(self) -> None:
        """Clear cache and reload prompts from disk"""
        self._cache.clear()


def _session_line(session: ActivitySession) -> str:
    parts = [f"Id: {session.id}", f"Start: {to_iso(session.start_time)}"]
    if session.app_name:
        parts.append(f"App: {session.app_name}")
    if session.window_title:
        parts.append(f"Window: {session.window_title}")
    parts.append(f"Duration: {format_duration(session.duration)}")
    if session.summary:
        parts.append(f"Summary: {session.summary}")
    if session.project_id is not None:
        parts.append(f"ProjectId: {session.project_id}")
    if session.category_id is not None:
        parts.append(f"CategoryId: {session.category_id}")
    return " | ".join(parts)
