"""
Insight result models.

An ActionableInsight carries one or more SuggestedActions; each action holds
a typed ChangeDescriptor saying exactly what applying it will mutate.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from trackq.storage.models import (
    ActionImpact,
    ChangeDescriptor,
    InsightType,
    TargetType,
    utc_now,
)


class SuggestedAction(BaseModel):
    label: str
    description: str
    target_type: TargetType
    target_id: int | None = None
    target_name: str | None = None
    changes: ChangeDescriptor
    impact: ActionImpact = ActionImpact.LOW


class ActionableInsight(BaseModel):
    insight_type: InsightType
    title: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_actions: list[SuggestedAction] = Field(default_factory=list)
    related_sessions: list[int] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


class InsightAnalysisResult(BaseModel):
    """
    Output of one insight run.

    ``coverage_percentage`` is a 0-1 fraction of analyzed sessions linked to a
    project; the summary string renders it as a whole percent.
    """

    insights: list[ActionableInsight] = Field(default_factory=list)
    summary: str
    sessions_analyzed: int
    coverage_percentage: float
    generated_at: datetime = Field(default_factory=utc_now)
