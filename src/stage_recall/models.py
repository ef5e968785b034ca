"""stage_recall core data models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CONFIDENCE_LABELS = {"high": 0.9, "medium": 0.6, "low": 0.3}


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MemoryIntent(str, Enum):
    EMOTIONAL_VALIDATION = "emotional_validation"
    STAGE_ENFORCEMENT = "stage_enforcement"
    RECALL_COMMITMENT = "recall_commitment"
    OFFER_CONTINUITY = "offer_continuity"
    AVOID_RECALL = "avoid_recall"


class RetrievalDepth(str, Enum):
    NONE = "none"
    MINIMAL = "minimal"
    LIGHT = "light"
    FULL = "full"


class SurfaceStyle(str, Enum):
    SILENT = "silent"
    TENTATIVE = "tentative"
    EXPLICIT = "explicit"


class EvidenceOrigin(str, Enum):
    SAME_SESSION = "same_session"
    CROSS_SESSION = "cross_session"
    PRIVATE_REFLECTION = "private_reflection"


class RecencyBucket(str, Enum):
    JUST_NOW = "just_now"
    EARLIER_TODAY = "earlier_today"
    YESTERDAY = "yesterday"
    FEW_DAYS_AGO = "few_days_ago"
    LAST_WEEK = "last_week"
    FEW_WEEKS_AGO = "few_weeks_ago"
    FEW_MONTHS_AGO = "few_months_ago"
    WHILE_BACK = "while_back"


class ReferenceType(str, Enum):
    PERSON = "person"
    EVENT = "event"
    AGREEMENT = "agreement"
    FEELING = "feeling"
    TIME = "time"


class EmotionalTrend(str, Enum):
    ESCALATING = "escalating"
    STABLE = "stable"
    DE_ESCALATING = "de-escalating"
    UNKNOWN = "unknown"


class ConversationTurn(BaseModel):
    """A single message in a session."""

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    stage: int | None = None
    emotional_intensity: float | None = Field(default=None, ge=0.0, le=10.0)

    def as_chat_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class MemoryIntentResult(BaseModel):
    """Per-turn decision on how much history may be recalled."""

    model_config = ConfigDict(frozen=True)

    intent: MemoryIntent
    depth: RetrievalDepth
    threshold: float
    max_cross_session: int
    allow_cross_session: bool
    surface_style: SurfaceStyle
    reason: str
    caution_advised: bool = False
    safety_override: bool = False


class TimeContext(BaseModel):
    """Human phrasing of how long ago something was said."""

    phrase: str
    bucket: RecencyBucket
    use_remembering_language: bool


class RetrievedEvidence(BaseModel):
    """A past item judged relevant to the current turn."""

    content: str
    similarity: float
    time_context: TimeContext
    origin: EvidenceOrigin
    source_id: str
    role: Role | None = None
    timestamp: datetime | None = None
    partner_label: str | None = None
    is_linked: bool = False


class DetectedReference(BaseModel):
    type: ReferenceType
    text: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_label(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _CONFIDENCE_LABELS.get(value.strip().lower(), value)
        return value


class DetectionSummary(BaseModel):
    """Outcome of the fast reference-detection call."""

    references: list[DetectedReference] = Field(default_factory=list)
    needs_retrieval: bool = False
    search_queries: list[str] = Field(default_factory=list)
    used_fallback: bool = False


class RetrievalResult(BaseModel):
    """Merged evidence plus what the detector saw."""

    evidence: list[RetrievedEvidence] = Field(default_factory=list)
    detection: DetectionSummary = Field(default_factory=DetectionSummary)
    recency_guidance: str = ""

    @property
    def has_cross_session(self) -> bool:
        return any(e.origin != EvidenceOrigin.SAME_SESSION for e in self.evidence)


class Corpus(str, Enum):
    """Searchable embedded corpora."""

    SESSION_CONTENT = "session_content"
    SESSION_MESSAGES = "session_messages"
    REFLECTIONS = "reflections"


class CorpusMatch(BaseModel):
    """A raw hit from vector search, before policy is applied."""

    source_id: str
    content: str
    similarity: float
    timestamp: datetime | None = None
    role: Role | None = None
    partner_label: str | None = None
    linked_session_id: str | None = None


class EmotionalReading(BaseModel):
    intensity: float = Field(ge=0.0, le=10.0)
    recorded_at: datetime = Field(default_factory=_utcnow)


class MemoryPreferences(BaseModel):
    cross_session_recall: bool = False
    pattern_insights: bool = False


class NotableShift(BaseModel):
    from_intensity: float
    to_intensity: float
    at: datetime


class EmotionalThread(BaseModel):
    """Emotional arc of the requesting user across the session."""

    initial: float | None = None
    current: float | None = None
    trend: EmotionalTrend = EmotionalTrend.UNKNOWN
    notable_shifts: list[NotableShift] = Field(default_factory=list)


class UserMemory(BaseModel):
    """Something the user asked to be remembered. Always included verbatim."""

    content: str
    session_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class NotableFact(BaseModel):
    """A fact established in session, e.g. a name or place."""

    category: str
    fact: str
    created_at: datetime = Field(default_factory=_utcnow)


class PriorThemes(BaseModel):
    themes: list[str] = Field(default_factory=list)
    last_session_summary: str | None = None
    session_count: int = 0


class SessionSummary(BaseModel):
    """Rolling summary of the current session."""

    summary: str
    turn_count: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)


class SurfacingDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    should_surface: bool = False
    style: SurfaceStyle = SurfaceStyle.SILENT
    requires_consent: bool = False
    evidence_count: int = 0
    reason: str = ""


class StageGates(BaseModel):
    """Gate state for the current stage, passed through for the prompt."""

    satisfied: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class StageContext(BaseModel):
    stage: int
    session_id: str
    user_id: str
    user_name: str | None = None
    gates: StageGates | None = None


class _BundleBase(BaseModel):
    intent: MemoryIntentResult
    stage_context: StageContext
    surfacing: SurfacingDecision = Field(default_factory=SurfacingDecision)
    assembled_at: datetime = Field(default_factory=_utcnow)


class NoRecallBundle(_BundleBase):
    """Bundle for turns where nothing may be recalled."""

    depth: Literal[RetrievalDepth.NONE] = RetrievalDepth.NONE


class _RecallBundleBase(_BundleBase):
    turn_window: list[ConversationTurn] = Field(default_factory=list)
    emotional_thread: EmotionalThread | None = None
    user_memories: list[UserMemory] = Field(default_factory=list)
    notable_facts: list[NotableFact] = Field(default_factory=list)
    evidence: RetrievalResult | None = None


class MinimalBundle(_RecallBundleBase):
    depth: Literal[RetrievalDepth.MINIMAL] = RetrievalDepth.MINIMAL


class LightBundle(_RecallBundleBase):
    depth: Literal[RetrievalDepth.LIGHT] = RetrievalDepth.LIGHT
    prior_themes: PriorThemes | None = None
    session_summary: SessionSummary | None = None


class FullBundle(LightBundle):
    depth: Literal[RetrievalDepth.FULL] = RetrievalDepth.FULL
    detected_references: list[DetectedReference] = Field(default_factory=list)


ContextBundle = Annotated[
    Union[NoRecallBundle, MinimalBundle, LightBundle, FullBundle],
    Field(discriminator="depth"),
]


class TokenBudgetPlan(BaseModel):
    """The bounded payload for a single generation call."""

    system_content: str
    messages: list[dict[str, str]] = Field(default_factory=list)
    context_text: str = ""
    included_message_count: int = 0
    excluded_message_count: int = 0
    included_evidence_chars: int = 0
    system_tokens: int = 0
    history_tokens: int = 0
    evidence_tokens: int = 0
    total_tokens: int = 0
    output_reservation: int = 0
    evidence_truncated: bool = False
    system_truncated: bool = False
    protected_clipped: bool = False
    truncated_message_count: int = 0


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerState(BaseModel):
    """Snapshot of one breaker, for observability."""

    name: str
    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    open_until: float | None = None
    calls: int = 0
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    skipped: int = 0
