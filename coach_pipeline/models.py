from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CoachingDomain(str, Enum):
    LIFE = "life"
    CAREER = "career"
    RELATIONSHIPS = "relationships"
    MINDSET = "mindset"
    CREATIVITY = "creativity"
    FITNESS = "fitness"
    LEADERSHIP = "leadership"
    GENERAL = "general"

    @classmethod
    def coerce(cls, value: object) -> "CoachingDomain":
        """Map any value onto the closed enumeration; unknown values become GENERAL."""
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.GENERAL


class CrisisCategory(str, Enum):
    SELF_HARM = "self_harm"
    SUICIDAL_IDEATION = "suicidal_ideation"
    ABUSE = "abuse"
    SEVERE_DISTRESS = "severe_distress"
    NONE = "none"

    @classmethod
    def coerce(cls, value: object) -> "CrisisCategory":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.NONE


class RouteTier(str, Enum):
    PRIMARY = "primary"
    ESCALATION = "escalation"
    BACKGROUND = "background"
    SAFETY = "safety"


class SessionMode(str, Enum):
    DISCOVERY = "discovery"
    COACHING = "coaching"
    BLOCKED = "blocked"


class _CamelModel(BaseModel):
    """Snake-case attributes in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class ChatMessage(_CamelModel):
    role: str = Field(description="system | user | assistant")
    content: str = ""


class CrisisDetectionResult(_CamelModel):
    crisis_detected: bool = False
    confidence: float = Field(default=0.0, ge=0, le=1)
    indicators: List[str] = Field(default_factory=list)
    category: CrisisCategory = CrisisCategory.NONE

    @classmethod
    def safe_default(cls) -> "CrisisDetectionResult":
        return cls(crisis_detected=False, confidence=0.0, indicators=[], category=CrisisCategory.NONE)


class DomainResult(_CamelModel):
    domain: CoachingDomain = CoachingDomain.GENERAL
    confidence: float = Field(default=0.0, ge=0, le=1)
    should_clarify: bool = False


class ModelSelection(_CamelModel):
    """Per-message generation settings. Never cached."""

    provider: str
    model_id: str
    max_output_tokens: int
    temperature: float
    input_budget_tokens: int
    route_tier: RouteTier
    route_reason: str


class PatternEvidence(_CamelModel):
    domain: str
    summary: str


class CrossDomainPattern(_CamelModel):
    theme: str
    domains: List[str]
    confidence: float = Field(ge=0, le=1)
    evidence: List[PatternEvidence] = Field(default_factory=list)
    synthesis: str


class PatternSynthesisResult(_CamelModel):
    patterns: List[CrossDomainPattern] = Field(default_factory=list)
    from_cache: bool = False


class PatternSummary(_CamelModel):
    theme: str
    occurrence_count: int
    domains: List[str]
    confidence: float = Field(ge=0, le=1)
    synthesis: str
    last_seen_at: str


class TurnDecision(_CamelModel):
    """Merged output of the four classifiers for one inbound message."""

    crisis: CrisisDetectionResult
    domain: DomainResult
    model: ModelSelection
    session_mode: SessionMode
    patterns: List[CrossDomainPattern] = Field(default_factory=list)
    pattern_summaries: List[PatternSummary] = Field(default_factory=list)
    crisis_override: bool = False
    previous_domain: Optional[CoachingDomain] = None


class RouteRequest(_CamelModel):
    """Request model for POST /route and POST /chat."""

    user_id: str = Field(min_length=1)
    conversation_id: str = Field(min_length=1)
    message: str = Field(min_length=1, description="User input message")
    session_mode: Optional[SessionMode] = Field(
        default=None, description="Explicit session mode; derived from subscription fields when omitted"
    )
    subscription_status: Optional[str] = None
    discovery_completed_at: Optional[str] = None


class ChatReply(_CamelModel):
    reply: str
    decision: TurnDecision
    model: str
    latency_ms: int
    usage: dict = Field(default_factory=dict)


class PatternEngagement(_CamelModel):
    theme: str = Field(min_length=1)


__all__ = [
    "CoachingDomain",
    "CrisisCategory",
    "RouteTier",
    "SessionMode",
    "ChatMessage",
    "CrisisDetectionResult",
    "DomainResult",
    "ModelSelection",
    "PatternEvidence",
    "CrossDomainPattern",
    "PatternSynthesisResult",
    "PatternSummary",
    "TurnDecision",
    "RouteRequest",
    "ChatReply",
    "PatternEngagement",
]
