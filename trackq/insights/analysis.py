"""
Comprehensive Analyzer - model-written review of one period's sessions.

The remote model segments the period's work, sketches a timeline, comments on
context switching and returns key insights plus recommendations. One result
is cached per (day, period) and reused for the rest of the day it was made;
follow-up questions are answered against it and kept on the stored row.
Recent InsightFeedback rows go into the prompt so earlier decisions shape
later analyses.

Key: ComprehensiveAnalyzer.analyze(period) -> ComprehensiveAnalysis,
ComprehensiveAnalyzer.ask(analysis_id, question) -> str
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from trackq.config import ANALYSIS_FEEDBACK_LIMIT, ANALYSIS_MAX_TOKENS, FOLLOW_UP_MAX_TOKENS
from trackq.llm.client import ClassifierGateway, MalformedResponseError, extract_json
from trackq.observability.logging import get_logger
from trackq.observability.telemetry import counter, log_event, time_block
from trackq.storage.analyses import AnalysisRepository
from trackq.storage.feedback import FeedbackRepository
from trackq.storage.models import (
    ActivitySession,
    AnalysisExchange,
    ComprehensiveAnalysis,
    FeedbackAction,
    InsightFeedback,
    InsightType,
    TargetType,
    TimelineSegment,
    TimePeriod,
    WorkSegment,
    start_of_day,
    utc_now,
)
from trackq.storage.sessions import SessionRepository

logger = get_logger(__name__)


class AnalysisError(ValueError):
    """Raised when an analysis request cannot be served; nothing is stored."""


NO_DATA = "No productivity data available for the selected period."
NO_ANALYSIS = "No active analysis to ask questions about."
EMPTY_FEEDBACK = "Please provide feedback text."
EMPTY_QUESTION = "Please provide a question."


class AnalysisResponse(BaseModel):
    """JSON object the model returns for a period analysis."""

    model_config = ConfigDict(populate_by_name=True)

    overview: str
    work_segments: list[WorkSegment] = Field(alias="workSegments")
    timeline_segments: list[Any] | None = Field(default=None, alias="timelineSegments")
    context_analysis: str = Field(alias="contextAnalysis")
    key_insights: list[str] = Field(alias="keyInsights")
    recommendations: list[str]

    def timeline(self) -> list[TimelineSegment]:
        """Timeline blocks that validate; blocks with unreadable times are dropped."""
        blocks = []
        for raw in self.timeline_segments or []:
            try:
                blocks.append(TimelineSegment.model_validate(raw))
            except ValidationError:
                counter("analysis.timeline_dropped")
        return blocks


def parse_period_analysis(text: str) -> AnalysisResponse:
    """
    Parse model output into an AnalysisResponse.

    Raises:
        MalformedResponseError: If the text is not a JSON object with the required fields
    """
    try:
        data = json.loads(extract_json(text))
    except ValueError as e:
        raise MalformedResponseError("Failed to parse analysis response as JSON.") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("Failed to parse analysis response as JSON.")
    try:
        return AnalysisResponse.model_validate(data)
    except ValidationError as e:
        logger.warning("Analysis response failed validation: %d errors", e.error_count())
        raise MalformedResponseError("Failed to parse analysis response as JSON.") from e


class ComprehensiveAnalyzer:
    """Generates, caches and discusses period analyses."""

    def __init__(
        self,
        gateway: ClassifierGateway,
        sessions: SessionRepository,
        feedback: FeedbackRepository,
        analyses: AnalysisRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.sessions = sessions
        self.feedback = feedback
        self.analyses = analyses
        self.clock = clock

    def analyze(
        self,
        period: TimePeriod,
        date: datetime | None = None,
        sessions: Sequence[ActivitySession] | None = None,
    ) -> ComprehensiveAnalysis:
        """
        Analysis of ``period`` as seen from ``date`` (default: now).

        A cached analysis for the same day and period is returned as-is when it
        was generated today; otherwise a new one is requested and stored.

        Args:
            sessions: Explicit session set; required for TimePeriod.CUSTOM

        Raises:
            AnalysisError: If there are no sessions to analyze
            ClassifierError: Gateway failures propagate unchanged

        Side Effects:
            - Calls the remote model (network) unless served from cache
            - Inserts a row into comprehensive_analyses
        """
        now = self.clock()
        date = date or now
        if sessions is None:
            sessions = self._sessions_for(period, date)
        if not sessions:
            raise AnalysisError(NO_DATA)

        cached = self.analyses.get_for(date, period)
        if cached is not None and start_of_day(cached.analysis_timestamp) == start_of_day(now):
            counter("analysis.cache_hit")
            return cached

        recent_feedback = self.feedback.fetch_recent(ANALYSIS_FEEDBACK_LIMIT)
        prompt = self.gateway.prompts.get_period_analysis_prompt(period, sessions, recent_feedback)
        with time_block("analysis.generate"):
            response = parse_period_analysis(self.gateway.complete(prompt, ANALYSIS_MAX_TOKENS))

        analysis = self.analyses.save(
            ComprehensiveAnalysis(
                date=date,
                period=period,
                overview=response.overview,
                work_segments=response.work_segments,
                timeline_segments=response.timeline(),
                context_analysis=response.context_analysis,
                key_insights=response.key_insights,
                recommendations=response.recommendations,
                total_time=sum(s.duration for s in sessions),
                session_count=len(sessions),
                analysis_timestamp=now,
                created_at=now,
            )
        )
        counter("analysis.generated")
        log_event(
            "analysis.generated",
            analysis_id=analysis.id,
            period=period.value,
            sessions=len(sessions),
            segments=len(analysis.work_segments),
        )
        return analysis

    def regenerate(
        self,
        period: TimePeriod,
        date: datetime | None = None,
        sessions: Sequence[ActivitySession] | None = None,
    ) -> ComprehensiveAnalysis:
        """Drop any cached analysis for the day and period, then analyze afresh."""
        date = date or self.clock()
        removed = self.analyses.delete_for(date, period)
        if removed:
            logger.info("Discarded %d cached %s analyses", removed, period.value)
        return self.analyze(period, date, sessions)

    def load_cached(self, date: datetime, period: TimePeriod) -> ComprehensiveAnalysis | None:
        return self.analyses.get_for(date, period)

    def should_auto_analyze(self, date: datetime, period: TimePeriod) -> bool:
        """True when there is no analysis for the day and period generated today."""
        cached = self.analyses.get_for(date, period)
        if cached is None:
            return True
        return start_of_day(cached.analysis_timestamp) != start_of_day(self.clock())

    def ask(self, analysis_id: int, question: str) -> str:
        """
        Answer a follow-up question about a stored analysis.

        The question and answer are appended to the analysis' conversation and
        earlier exchanges are sent along as context.

        Raises:
            AnalysisError: If the question is blank or the analysis does not exist
            ClassifierError: Gateway failures propagate unchanged; nothing is stored
        """
        question = question.strip()
        if not question:
            raise AnalysisError(EMPTY_QUESTION)
        analysis = self.analyses.get(analysis_id)
        if analysis is None:
            raise AnalysisError(NO_ANALYSIS)

        prompt = self.gateway.prompts.get_follow_up_prompt(
            question, analysis, analysis.follow_up_exchanges
        )
        answer = self.gateway.complete(prompt, FOLLOW_UP_MAX_TOKENS).strip()

        exchange = AnalysisExchange(question=question, answer=answer, timestamp=self.clock())
        if self.analyses.append_exchange(analysis_id, exchange) is None:
            raise AnalysisError(NO_ANALYSIS)
        counter("analysis.follow_up")
        return answer

    def provide_feedback(self, analysis: ComprehensiveAnalysis, text: str) -> InsightFeedback:
        """
        Record free-text feedback about an analysis.

        Stored as an applied, global work-pattern InsightFeedback pointing at
        the analysis, so the next analysis prompt carries it.
        """
        text = text.strip()
        if not text:
            raise AnalysisError(EMPTY_FEEDBACK)
        now = self.clock()
        return self.feedback.record(
            InsightFeedback(
                insight_type=InsightType.WORK_PATTERN,
                insight_text=text,
                action=FeedbackAction.APPLIED,
                target_type=TargetType.GLOBAL,
                target_id=analysis.id,
                target_name=f"{analysis.period.display_name} analysis",
                confidence=1.0,
                created_at=now,
                applied_at=now,
            )
        )

    def _sessions_for(self, period: TimePeriod, date: datetime) -> list[ActivitySession]:
        try:
            start, end = period.bounds(date)
        except ValueError as e:
            raise AnalysisError(str(e)) from e
        return self.sessions.fetch_range(start, end)
