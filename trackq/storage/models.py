"""
Domain models for the TrackQ categorization core.

Entities mirror the tables in database_schema.py. Enumerations are closed
``str`` enums; they are converted to plain strings only in ``to_db_dict`` and
parsed back in ``from_db_row``.

Key: Category/Role/Project (taxonomy), ActivitySession, AISuggestion,
CachedCategorization, InsightFeedback, ComprehensiveAnalysis, and the
ChangeDescriptor tagged union.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator


def utc_now() -> datetime:
    """Return current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as a sortable UTC ISO-8601 string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def parse_dt(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def decode_json_list(value: str | None) -> list[Any]:
    """Decode a JSON array column; malformed or empty input yields []."""
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except (TypeError, ValueError):
        return []
    return decoded if isinstance(decoded, list) else []


def encode_json_list(values: list[Any] | None) -> str:
    return json.dumps(list(values or []))


def dedupe_casefold(values: list[str]) -> list[str]:
    """Drop blank entries and case-insensitive duplicates, keeping first occurrence order."""
    seen: set[str] = set()
    result: list[str] = []
    for value in values:
        text = value.strip() if isinstance(value, str) else ""
        if not text or text.lower() in seen:
            continue
        seen.add(text.lower())
        result.append(text)
    return result


class SuggestionStateError(ValueError):
    """Raised when resolving a suggestion that is no longer pending."""


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SuggestionType(str, Enum):
    PROJECT = "project"
    CATEGORY = "category"
    ROLE = "role"
    NEW_PROJECT = "new_project"


class SuggestionStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    MODIFIED = "modified"


class InsightType(str, Enum):
    WORK_PATTERN = "work_pattern"
    PROJECT_SUGGESTION = "project_suggestion"
    CATEGORY_SUGGESTION = "category_suggestion"
    ROLE_SUGGESTION = "role_suggestion"


class FeedbackAction(str, Enum):
    APPLIED = "applied"
    DISMISSED = "dismissed"
    MODIFIED = "modified"
    DEFERRED = "deferred"


class TargetType(str, Enum):
    PROJECT = "project"
    CATEGORY = "category"
    ROLE = "role"
    SESSION = "session"
    GLOBAL = "global"


class ActionImpact(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Change descriptors (one variant per insight action kind)
# ---------------------------------------------------------------------------


class BulkCategorize(BaseModel):
    kind: Literal["bulk_categorize"] = "bulk_categorize"
    session_ids: list[int]
    category_slug: str


class BulkAssignProject(BaseModel):
    kind: Literal["bulk_assign_project"] = "bulk_assign_project"
    session_ids: list[int]
    project_id: int


class AddPattern(BaseModel):
    kind: Literal["add_pattern"] = "add_pattern"
    project_id: int
    pattern: str


class CreateProject(BaseModel):
    kind: Literal["create_project"] = "create_project"
    project_name: str
    session_ids: list[int]


class ChangeRole(BaseModel):
    kind: Literal["change_role"] = "change_role"
    project_id: int
    new_role_id: int


class ChangeCategory(BaseModel):
    kind: Literal["change_category"] = "change_category"
    project_id: int
    new_category_id: int


class Dismiss(BaseModel):
    kind: Literal["dismiss"] = "dismiss"


ChangeDescriptor = Annotated[
    Union[
        BulkCategorize,
        BulkAssignProject,
        AddPattern,
        CreateProject,
        ChangeRole,
        ChangeCategory,
        Dismiss,
    ],
    Field(discriminator="kind"),
]

CHANGE_KINDS: frozenset[str] = frozenset(
    {
        "bulk_categorize",
        "bulk_assign_project",
        "add_pattern",
        "create_project",
        "change_role",
        "change_category",
        "dismiss",
    }
)

change_adapter: TypeAdapter[ChangeDescriptor] = TypeAdapter(ChangeDescriptor)


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class Category(BaseModel):
    """A work-type label; ``slug`` is the stable identifier sessions refer to."""

    id: int | None = None
    name: str
    slug: str
    icon: str = "folder.fill"
    color: str = "#6B7280"
    description: str = ""
    is_built_in: bool = False
    is_active: bool = True
    sort_order: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("slug")
    @classmethod
    def slug_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("slug cannot be empty")
        return v.strip().lower()

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "icon": self.icon,
            "color": self.color,
            "description": self.description,
            "is_built_in": int(self.is_built_in),
            "is_active": int(self.is_active),
            "sort_order": self.sort_order,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Category:
        return cls(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            icon=row["icon"] or "folder.fill",
            color=row["color"] or "#6B7280",
            description=row["description"] or "",
            is_built_in=bool(row["is_built_in"]),
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
            created_at=parse_dt(row["created_at"]) or utc_now(),
        )


# Static keyword tables used to score window titles against roles
ROLE_DETECTION_PATTERNS: dict[str, list[str]] = {
    "Disputes": ["DISP-", "dispute", "chargeback", "refund", "claim"],
    "Scams": ["SCAM-", "scam", "fraud", "suspicious", "security"],
    "Cross-team": ["cross-team", "company-wide", "platform", "initiative"],
    "Personal": ["personal", "learning", "development", "side project"],
}


class Role(BaseModel):
    """A coarse work-context grouping for projects."""

    id: int | None = None
    name: str
    description: str = ""
    color: str = "#6B7280"
    icon: str = "folder.fill"
    is_default: bool = False
    is_user_defined: bool = True
    is_active: bool = True
    sort_order: int = 0
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def detection_patterns(self) -> list[str]:
        return ROLE_DETECTION_PATTERNS.get(self.name, [])

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "is_default": int(self.is_default),
            "is_user_defined": int(self.is_user_defined),
            "is_active": int(self.is_active),
            "sort_order": self.sort_order,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Role:
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"] or "",
            color=row["color"] or "#6B7280",
            icon=row["icon"] or "folder.fill",
            is_default=bool(row["is_default"]),
            is_user_defined=bool(row["is_user_defined"]),
            is_active=bool(row["is_active"]),
            sort_order=row["sort_order"],
            created_at=parse_dt(row["created_at"]) or utc_now(),
        )


class Project(BaseModel):
    """
    An inferred or user-declared unit of work.

    ``patterns`` never holds two entries that differ only by case.
    """

    id: int | None = None
    name: str
    role_id: int | None = None
    default_category_id: int | None = None
    patterns: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    is_active: bool = True
    is_ai_suggested: bool = False
    is_user_confirmed: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    total_duration: float = 0.0
    last_seen: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    notes: str | None = None

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("project name cannot be empty")
        return v.strip()

    @field_validator("patterns")
    @classmethod
    def patterns_unique(cls, v: list[str]) -> list[str]:
        return dedupe_casefold(v)

    def has_pattern(self, pattern: str) -> bool:
        needle = pattern.strip().lower()
        return any(p.lower() == needle for p in self.patterns)

    def add_pattern(self, pattern: str) -> bool:
        """Append a detection pattern unless blank or already present (case-insensitive)."""
        text = pattern.strip()
        if not text or self.has_pattern(text):
            return False
        self.patterns.append(text)
        return True

    def matches(
        self,
        name: str | None,
        app_name: str | None = None,
        window_title: str | None = None,
    ) -> bool:
        """True when any stored pattern occurs in the combined lowercase text."""
        if not self.patterns:
            return False
        haystack = combined_text(name, app_name, window_title)
        return any(p.lower() in haystack for p in self.patterns)

    def match_confidence(
        self,
        name: str | None,
        app_name: str | None = None,
        window_title: str | None = None,
    ) -> float:
        """Fraction of this project's patterns found in the combined text."""
        if not self.patterns:
            return 0.0
        haystack = combined_text(name, app_name, window_title)
        hits = sum(1 for p in self.patterns if p.lower() in haystack)
        return hits / len(self.patterns)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "role_id": self.role_id,
            "default_category_id": self.default_category_id,
            "patterns": encode_json_list(self.patterns),
            "sources": encode_json_list(self.sources),
            "is_active": int(self.is_active),
            "is_ai_suggested": int(self.is_ai_suggested),
            "is_user_confirmed": int(self.is_user_confirmed),
            "confidence": self.confidence,
            "total_duration": self.total_duration,
            "last_seen": to_iso(self.last_seen),
            "created_at": to_iso(self.created_at),
            "notes": self.notes,
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> Project:
        return cls(
            id=row["id"],
            name=row["name"],
            role_id=row["role_id"],
            default_category_id=row["default_category_id"],
            patterns=[p for p in decode_json_list(row["patterns"]) if isinstance(p, str)],
            sources=[s for s in decode_json_list(row["sources"]) if isinstance(s, str)],
            is_active=bool(row["is_active"]),
            is_ai_suggested=bool(row["is_ai_suggested"]),
            is_user_confirmed=bool(row["is_user_confirmed"]),
            confidence=row["confidence"] or 0.0,
            total_duration=row["total_duration"] or 0.0,
            last_seen=parse_dt(row["last_seen"]),
            created_at=parse_dt(row["created_at"]) or utc_now(),
            notes=row["notes"],
        )


def combined_text(*parts: str | None) -> str:
    return " ".join(p for p in parts if p).lower()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class ActivitySession(BaseModel):
    """One tracked interval of attention."""

    id: int | None = None
    start_time: datetime = Field(default_factory=utc_now)
    end_time: datetime | None = None
    duration: float = 0.0
    app_name: str | None = None
    window_title: str | None = None
    bundle_identifier: str | None = None
    summary: str | None = None
    key_insights: list[str] = Field(default_factory=list)
    # Legacy free-text fields kept for migration
    work_type: str | None = None
    project_name: str | None = None
    category_id: int | None = None
    project_id: int | None = None
    ai_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    is_ai_categorized: bool = False
    concurrent_context_ids: list[int] = Field(default_factory=list)
    is_active: bool = True
    screenshot_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def end(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        self.end_time = now
        self.is_active = False
        self.duration = max(0.0, (now - self.start_time).total_seconds())
        self.updated_at = now

    def update_duration(self, now: datetime | None = None) -> None:
        now = now or utc_now()
        self.duration = max(0.0, (now - self.start_time).total_seconds())
        self.updated_at = now

    def increment_screenshot_count(self) -> None:
        self.screenshot_count += 1

    @property
    def confidence_level(self) -> str | None:
        if self.ai_confidence is None:
            return None
        if self.ai_confidence < 0.5:
            return "Low"
        if self.ai_confidence < 0.7:
            return "Medium"
        if self.ai_confidence < 0.9:
            return "High"
        return "Very High"

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "duration": self.duration,
            "app_name": self.app_name,
            "window_title": self.window_title,
            "bundle_identifier": self.bundle_identifier,
            "summary": self.summary,
            "key_insights": encode_json_list(self.key_insights),
            "work_type": self.work_type,
            "project_name": self.project_name,
            "category_id": self.category_id,
            "project_id": self.project_id,
            "ai_confidence": self.ai_confidence,
            "is_ai_categorized": int(self.is_ai_categorized),
            "concurrent_context_ids": encode_json_list(self.concurrent_context_ids),
            "is_active": int(self.is_active),
            "screenshot_count": self.screenshot_count,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> ActivitySession:
        return cls(
            id=row["id"],
            start_time=parse_dt(row["start_time"]) or utc_now(),
            end_time=parse_dt(row["end_time"]),
            duration=row["duration"] or 0.0,
            app_name=row["app_name"],
            window_title=row["window_title"],
            bundle_identifier=row["bundle_identifier"],
            summary=row["summary"],
            key_insights=[k for k in decode_json_list(row["key_insights"]) if isinstance(k, str)],
            work_type=row["work_type"],
            project_name=row["project_name"],
            category_id=row["category_id"],
            project_id=row["project_id"],
            ai_confidence=row["ai_confidence"],
            is_ai_categorized=bool(row["is_ai_categorized"]),
            concurrent_context_ids=[
                i for i in decode_json_list(row["concurrent_context_ids"]) if isinstance(i, int)
            ],
            is_active=bool(row["is_active"]),
            screenshot_count=row["screenshot_count"] or 0,
            created_at=parse_dt(row["created_at"]) or utc_now(),
            updated_at=parse_dt(row["updated_at"]) or utc_now(),
        )


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


class SuggestionContext(BaseModel):
    """Supporting detail shown next to a suggestion during review."""

    model_config = ConfigDict(extra="forbid")

    project_role: str | None = None
    patterns: list[str] = Field(default_factory=list)
    summary: str | None = None


class AISuggestion(BaseModel):
    """
    A low-confidence categorization awaiting human review.

    Status moves pending -> accepted | rejected | modified exactly once;
    ``resolved_at`` is set on that transition.
    """

    id: int | None = None
    session_id: int
    suggestion_type: SuggestionType
    suggested_value: str
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    context: SuggestionContext = Field(default_factory=SuggestionContext)
    status: SuggestionStatus = SuggestionStatus.PENDING
    user_modified_value: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == SuggestionStatus.PENDING

    def _resolve(self, status: SuggestionStatus) -> None:
        if not self.is_pending:
            raise SuggestionStateError(
                f"Suggestion {self.id} already resolved as {self.status.value}"
            )
        self.status = status
        self.resolved_at = utc_now()

    def accept(self) -> None:
        self._resolve(SuggestionStatus.ACCEPTED)

    def reject(self) -> None:
        self._resolve(SuggestionStatus.REJECTED)

    def modify(self, new_value: str) -> None:
        self._resolve(SuggestionStatus.MODIFIED)
        self.user_modified_value = new_value

    @property
    def effective_value(self) -> str:
        if self.status == SuggestionStatus.MODIFIED and self.user_modified_value is not None:
            return self.user_modified_value
        return self.suggested_value

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "suggestion_type": self.suggestion_type.value,
            "suggested_value": self.suggested_value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "context": self.context.model_dump_json(),
            "status": self.status.value,
            "user_modified_value": self.user_modified_value,
            "created_at": to_iso(self.created_at),
            "resolved_at": to_iso(self.resolved_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> AISuggestion:
        raw_context = row["context"]
        context = (
            SuggestionContext.model_validate_json(raw_context)
            if raw_context
            else SuggestionContext()
        )
        return cls(
            id=row["id"],
            session_id=row["session_id"],
            suggestion_type=SuggestionType(row["suggestion_type"]),
            suggested_value=row["suggested_value"],
            confidence=row["confidence"],
            reasoning=row["reasoning"] or "",
            context=context,
            status=SuggestionStatus(row["status"]),
            user_modified_value=row["user_modified_value"],
            created_at=parse_dt(row["created_at"]) or utc_now(),
            resolved_at=parse_dt(row["resolved_at"]),
        )


# ---------------------------------------------------------------------------
# Offline cache
# ---------------------------------------------------------------------------


class CachedCategorization(BaseModel):
    """A previously successful online categorization kept for offline fallback."""

    id: int | None = None
    app_name: str
    window_title: str | None = None
    project_name: str
    project_role: str
    work_category: str
    patterns: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=utc_now)
    use_count: int = 0

    def is_expired(self, retention_days: int, now: datetime | None = None) -> bool:
        now = now or utc_now()
        return self.timestamp < now - timedelta(days=retention_days)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "app_name": self.app_name,
            "window_title": self.window_title,
            "project_name": self.project_name,
            "project_role": self.project_role,
            "work_category": self.work_category,
            "patterns": encode_json_list(self.patterns),
            "confidence": self.confidence,
            "timestamp": to_iso(self.timestamp),
            "use_count": self.use_count,
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> CachedCategorization:
        return cls(
            id=row["id"],
            app_name=row["app_name"],
            window_title=row["window_title"],
            project_name=row["project_name"],
            project_role=row["project_role"],
            work_category=row["work_category"],
            patterns=[p for p in decode_json_list(row["patterns"]) if isinstance(p, str)],
            confidence=row["confidence"],
            timestamp=parse_dt(row["timestamp"]) or utc_now(),
            use_count=row["use_count"] or 0,
        )


# ---------------------------------------------------------------------------
# Feedback
# ---------------------------------------------------------------------------


class InsightFeedback(BaseModel):
    """Append-only audit record of a human decision about an insight."""

    id: int | None = None
    insight_type: InsightType
    insight_text: str
    action: FeedbackAction
    target_type: TargetType
    target_id: int | None = None
    target_name: str | None = None
    changes: ChangeDescriptor | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utc_now)
    applied_at: datetime | None = None

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "insight_type": self.insight_type.value,
            "insight_text": self.insight_text,
            "action": self.action.value,
            "target_type": self.target_type.value,
            "target_id": self.target_id,
            "target_name": self.target_name,
            "changes": self.changes.model_dump_json() if self.changes is not None else None,
            "confidence": self.confidence,
            "created_at": to_iso(self.created_at),
            "applied_at": to_iso(self.applied_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> InsightFeedback:
        raw_changes = row["changes"]
        return cls(
            id=row["id"],
            insight_type=InsightType(row["insight_type"]),
            insight_text=row["insight_text"],
            action=FeedbackAction(row["action"]),
            target_type=TargetType(row["target_type"]),
            target_id=row["target_id"],
            target_name=row["target_name"],
            changes=change_adapter.validate_json(raw_changes) if raw_changes else None,
            confidence=row["confidence"] or 0.0,
            created_at=parse_dt(row["created_at"]) or utc_now(),
            applied_at=parse_dt(row["applied_at"]),
        )


# ---------------------------------------------------------------------------
# Period analysis
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Render seconds as ``"2h 5m"``, or ``"5m"`` under an hour."""
    total = int(seconds)
    hours, minutes = total // 3600, (total % 3600) // 60
    return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"


def start_of_day(value: datetime) -> datetime:
    value = value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


class TimePeriod(str, Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    LAST_7_DAYS = "last_7_days"
    LAST_30_DAYS = "last_30_days"
    CUSTOM = "custom"

    @property
    def display_name(self) -> str:
        return {
            TimePeriod.TODAY: "Today",
            TimePeriod.YESTERDAY: "Yesterday",
            TimePeriod.LAST_7_DAYS: "Last 7 Days",
            TimePeriod.LAST_30_DAYS: "Last 30 Days",
            TimePeriod.CUSTOM: "Custom Period",
        }[self]

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """
        Inclusive [start, end] session range for this period, in UTC days.

        Raises:
            ValueError: For CUSTOM, whose range only the caller knows
        """
        today = start_of_day(now)
        if self is TimePeriod.TODAY:
            return today, now
        if self is TimePeriod.YESTERDAY:
            return today - timedelta(days=1), today - timedelta(microseconds=1)
        if self is TimePeriod.LAST_7_DAYS:
            return now - timedelta(days=7), now
        if self is TimePeriod.LAST_30_DAYS:
            return now - timedelta(days=30), now
        raise ValueError("A custom period needs an explicit session range")


class WorkSegment(BaseModel):
    """A model-identified stretch of related work."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    duration: float = 0.0
    focus_quality: str | None = Field(default=None, alias="focusQuality")
    session_ids: list[int] = Field(default_factory=list, alias="sessionIds")

    @property
    def formatted_duration(self) -> str:
        return format_duration(self.duration)


class TimelineSegment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")
    activity_type: str = Field(alias="activityType")
    category_color: str = Field(alias="categoryColor")
    app_name: str | None = Field(default=None, alias="appName")


class AnalysisExchange(BaseModel):
    """One follow-up question and its answer."""

    question: str
    answer: str
    timestamp: datetime = Field(default_factory=utc_now)


def _encode_models(values: list[BaseModel]) -> str:
    return json.dumps([v.model_dump(mode="json") for v in values])


def _decode_models(model: type[BaseModel], value: str | None) -> list[Any]:
    # A column that no longer validates reads back empty rather than failing the row
    try:
        return [model.model_validate(item) for item in decode_json_list(value)]
    except ValidationError:
        return []


class ComprehensiveAnalysis(BaseModel):
    """
    Model-written analysis of one period's sessions.

    At most one is kept per (day of ``date``, ``period``); follow-up exchanges
    accumulate on it.
    """

    id: int | None = None
    date: datetime = Field(default_factory=utc_now)
    period: TimePeriod = TimePeriod.TODAY
    overview: str = ""
    work_segments: list[WorkSegment] = Field(default_factory=list)
    timeline_segments: list[TimelineSegment] = Field(default_factory=list)
    context_analysis: str = ""
    key_insights: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    total_time: float = 0.0
    session_count: int = 0
    analysis_timestamp: datetime = Field(default_factory=utc_now)
    follow_up_exchanges: list[AnalysisExchange] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def formatted_total_time(self) -> str:
        return format_duration(self.total_time)

    @property
    def has_conversation(self) -> bool:
        return bool(self.follow_up_exchanges)

    def to_db_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "date": to_iso(self.date),
            "period": self.period.value,
            "overview": self.overview,
            "work_segments": _encode_models(self.work_segments),
            "timeline_segments": _encode_models(self.timeline_segments),
            "context_analysis": self.context_analysis,
            "key_insights": encode_json_list(self.key_insights),
            "recommendations": encode_json_list(self.recommendations),
            "total_time": self.total_time,
            "session_count": self.session_count,
            "analysis_timestamp": to_iso(self.analysis_timestamp),
            "follow_up_exchanges": _encode_models(self.follow_up_exchanges),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_db_row(cls, row: dict[str, Any]) -> ComprehensiveAnalysis:
        return cls(
            id=row["id"],
            date=parse_dt(row["date"]) or utc_now(),
            period=TimePeriod(row["period"]),
            overview=row["overview"] or "",
            work_segments=_decode_models(WorkSegment, row["work_segments"]),
            timeline_segments=_decode_models(TimelineSegment, row["timeline_segments"]),
            context_analysis=row["context_analysis"] or "",
            key_insights=[k for k in decode_json_list(row["key_insights"]) if isinstance(k, str)],
            recommendations=[
                r for r in decode_json_list(row["recommendations"]) if isinstance(r, str)
            ],
            total_time=row["total_time"] or 0.0,
            session_count=row["session_count"] or 0,
            analysis_timestamp=parse_dt(row["analysis_timestamp"]) or utc_now(),
            follow_up_exchanges=_decode_models(AnalysisExchange, row["follow_up_exchanges"]),
            created_at=parse_dt(row["created_at"]) or utc_now(),
            updated_at=parse_dt(row["updated_at"]) or utc_now(),
        )


# ---------------------------------------------------------------------------
# Built-in taxonomy
# ---------------------------------------------------------------------------


def default_categories() -> list[Category]:
    return [
        Category(
            name="Personal",
            slug="personal",
            icon="person.fill",
            color="#9CA3AF",
            description="Non-work activities, personal browsing, entertainment",
            is_built_in=True,
            sort_order=0,
        ),
        Category(
            name="Discovery",
            slug="discovery",
            icon="magnifyingglass",
            color="#8B5CF6",
            description="Research, learning, exploration, reading documentation",
            is_built_in=True,
            sort_order=1,
        ),
        Category(
            name="Responding",
            slug="responding",
            icon="envelope.fill",
            color="#3B82F6",
            description="Email, Slack, reviews, approvals, feedback",
            is_built_in=True,
            sort_order=2,
        ),
        Category(
            name="Creating",
            slug="creating",
            icon="pencil.and.outline",
            color="#10B981",
            description="Writing, coding, designing, building new things",
            is_built_in=True,
            sort_order=3,
        ),
        Category(
            name="Meetings",
            slug="meetings",
            icon="video.fill",
            color="#F59E0B",
            description="Video calls, calendar events, syncs",
            is_built_in=True,
            sort_order=4,
        ),
        Category(
            name="Planning",
            slug="planning",
            icon="calendar.badge.clock",
            color="#EC4899",
            description="Roadmaps, strategy, prioritization, backlog grooming",
            is_built_in=True,
            sort_order=5,
        ),
        Category(
            name="Coordinating",
            slug="coordinating",
            icon="person.3.fill",
            color="#14B8A6",
            description="Cross-functional work, stakeholder management, alignment",
            is_built_in=True,
            sort_order=6,
        ),
    ]


def default_roles() -> list[Role]:
    return [
        Role(
            name="Disputes",
            description="Dispute resolution, chargebacks, customer disputes",
            color="#EF4444",
            icon="exclamationmark.triangle.fill",
            is_default=True,
            is_user_defined=False,
            sort_order=0,
        ),
        Role(
            name="Scams",
            description="Scam prevention, fraud detection, user protection",
            color="#F97316",
            icon="shield.lefthalf.filled",
            is_user_defined=False,
            sort_order=1,
        ),
        Role(
            name="Cross-team",
            description="Cross-functional initiatives, company-wide projects",
            color="#8B5CF6",
            icon="arrow.triangle.branch",
            is_user_defined=False,
            sort_order=2,
        ),
        Role(
            name="Personal",
            description="Personal development, learning, non-work activities",
            color="#6B7280",
            icon="person.fill",
            is_user_defined=False,
            sort_order=3,
        ),
    ]


LEGACY_WORK_TYPE_SLUGS: dict[str, str] = {
    "coding": "creating",
    "documentation": "creating",
    "debugging": "creating",
    "design": "creating",
    "research": "discovery",
    "browsing": "discovery",
    "communication": "responding",
    "meetings": "meetings",
    "planning": "planning",
}


def slug_from_legacy_work_type(work_type: str | None) -> str:
    if not work_type:
        return "personal"
    return LEGACY_WORK_TYPE_SLUGS.get(work_type.strip().lower(), "personal")
