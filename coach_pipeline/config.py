"""
Pipeline configuration.

A single PipelineConfig is built once at process start by load_config() and
handed to every component. Values come from environment variables with the
defaults below; reload_config() rebuilds the object explicitly (used by tests
and by the /config endpoint after an operator changes the environment).
"""
from __future__ import annotations

import os
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, "true" if default else "false").lower() == "true"


class TierSettings(BaseModel):
    """Fixed generation settings for one routing tier."""

    model_config = ConfigDict(protected_namespaces=())

    provider: str = "vertex"
    model_id: str
    max_output_tokens: int
    temperature: float
    input_budget_tokens: int


# Chat tiers
_PRIMARY = TierSettings(model_id="gemini-2.5-flash", max_output_tokens=1300, temperature=0.65, input_budget_tokens=5600)
_DISCOVERY = TierSettings(model_id="gemini-2.5-flash", max_output_tokens=900, temperature=0.7, input_budget_tokens=4200)
_ESCALATION = TierSettings(model_id="gemini-2.5-pro", max_output_tokens=2200, temperature=0.55, input_budget_tokens=8400)
_SAFETY = TierSettings(model_id="gemini-2.5-flash-lite", max_output_tokens=140, temperature=0.0, input_budget_tokens=1600)

BACKGROUND_MODEL_ID = "gemini-2.5-flash-lite"

# Background tasks: (max_output_tokens, temperature, input_budget_tokens)
_BACKGROUND_TASKS = {
    "domain_classification": (80, 0.0, 1300),
    "pattern_synthesis": (900, 0.2, 4200),
    "context_extraction": (900, 0.2, 3600),
    "push_generation": (180, 0.7, 1200),
    "summary": (300, 0.2, 2200),
    "labeling": (120, 0.0, 1000),
    "memory_compression": (450, 0.2, 2400),
}

BACKGROUND_TASKS = tuple(_BACKGROUND_TASKS.keys())


def _builtin_background_tiers() -> Dict[str, TierSettings]:
    return {
        task: TierSettings(model_id=BACKGROUND_MODEL_ID, max_output_tokens=m, temperature=t, input_budget_tokens=b)
        for task, (m, t, b) in _BACKGROUND_TASKS.items()
    }


def _tier_from_env(name: str, base: TierSettings) -> TierSettings:
    prefix = f"TIER_{name.upper()}_"
    return TierSettings(
        provider=base.provider,
        model_id=os.getenv(prefix + "MODEL", base.model_id),
        max_output_tokens=_env_int(prefix + "MAX_OUTPUT_TOKENS", base.max_output_tokens),
        temperature=_env_float(prefix + "TEMPERATURE", base.temperature),
        input_budget_tokens=_env_int(prefix + "INPUT_BUDGET_TOKENS", base.input_budget_tokens),
    )


class PipelineConfig(BaseModel):
    # Crisis detector
    crisis_confidence_threshold: float = Field(default=0.6, ge=0, le=1)
    crisis_keyword_confidence: float = Field(default=0.9, ge=0, le=1)

    # Domain router (hysteresis)
    domain_stay_threshold: float = Field(default=0.7, ge=0, le=1)
    domain_switch_threshold: float = Field(default=0.85, ge=0, le=1)

    # Pattern synthesizer
    pattern_confidence_threshold: float = Field(default=0.85, ge=0, le=1)
    pattern_min_domains: int = 2
    pattern_cache_ttl_seconds: int = 24 * 60 * 60
    pattern_min_messages_per_domain: int = 3
    pattern_max_conversations_per_domain: int = 10
    synthesis_session_gap: int = 3
    max_syntheses_per_session: int = 1

    # Pattern analyzer
    pattern_summary_min_sessions: int = 5
    pattern_summary_refresh_delta: int = 3
    pattern_summary_min_occurrences: int = 3
    pattern_summary_max_results: int = 3

    # Timeouts
    classifier_timeout_seconds: float = 30.0
    store_timeout_seconds: float = 5.0
    slow_call_seconds: float = 3.0

    # Vertex
    project_id: Optional[str] = None
    vertex_location: str = "us-central1"
    model_fallbacks: List[str] = Field(default_factory=list)

    # Routing tiers
    primary_tier: TierSettings = _PRIMARY
    discovery_tier: TierSettings = _DISCOVERY
    escalation_tier: TierSettings = _ESCALATION
    safety_tier: TierSettings = _SAFETY
    background_tiers: Dict[str, TierSettings] = Field(default_factory=_builtin_background_tiers)

    # Store backend
    memory_backend: str = "memory"
    redis_url: Optional[str] = None
    redis_host: Optional[str] = None
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: Optional[str] = None
    redis_prefix: str = "coach:rows:"

    # HTTP surface
    max_message_bytes: int = 8192
    history_max_messages: int = 20

    # Logging
    log_level: str = "INFO"
    log_request_body_max: int = 1024
    expose_upstream_error: bool = False

    def background_tier(self, task: str) -> TierSettings:
        return self.background_tiers[task]


def _default_background_tiers() -> Dict[str, TierSettings]:
    model_id = os.getenv("TIER_BACKGROUND_MODEL", BACKGROUND_MODEL_ID)
    tiers: Dict[str, TierSettings] = {}
    for task, (max_out, temp, budget) in _BACKGROUND_TASKS.items():
        base = TierSettings(model_id=model_id, max_output_tokens=max_out, temperature=temp, input_budget_tokens=budget)
        tiers[task] = _tier_from_env(task, base)
    return tiers


def config_from_env() -> PipelineConfig:
    region = os.getenv("REGION", "us-central1")
    fallbacks = [m.strip() for m in os.getenv("MODEL_FALLBACKS", "").split(",") if m.strip()]
    return PipelineConfig(
        crisis_confidence_threshold=_env_float("CRISIS_CONFIDENCE_THRESHOLD", 0.6),
        crisis_keyword_confidence=_env_float("CRISIS_KEYWORD_CONFIDENCE", 0.9),
        domain_stay_threshold=_env_float("DOMAIN_STAY_THRESHOLD", 0.7),
        domain_switch_threshold=_env_float("DOMAIN_SWITCH_THRESHOLD", 0.85),
        pattern_confidence_threshold=_env_float("PATTERN_CONFIDENCE_THRESHOLD", 0.85),
        pattern_min_domains=_env_int("PATTERN_MIN_DOMAINS", 2),
        pattern_cache_ttl_seconds=_env_int("PATTERN_CACHE_TTL_SECONDS", 24 * 60 * 60),
        pattern_min_messages_per_domain=_env_int("PATTERN_MIN_MESSAGES_PER_DOMAIN", 3),
        pattern_max_conversations_per_domain=_env_int("PATTERN_MAX_CONVERSATIONS_PER_DOMAIN", 10),
        synthesis_session_gap=_env_int("SYNTHESIS_SESSION_GAP", 3),
        max_syntheses_per_session=_env_int("MAX_SYNTHESES_PER_SESSION", 1),
        pattern_summary_min_sessions=_env_int("PATTERN_SUMMARY_MIN_SESSIONS", 5),
        pattern_summary_refresh_delta=_env_int("PATTERN_SUMMARY_REFRESH_DELTA", 3),
        pattern_summary_min_occurrences=_env_int("PATTERN_SUMMARY_MIN_OCCURRENCES", 3),
        pattern_summary_max_results=_env_int("PATTERN_SUMMARY_MAX_RESULTS", 3),
        classifier_timeout_seconds=_env_float("CLASSIFIER_TIMEOUT_SECONDS", 30.0),
        store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", 5.0),
        slow_call_seconds=_env_float("SLOW_CALL_SECONDS", 3.0),
        project_id=os.getenv("PROJECT_ID"),
        # Vertex location can be global or decoupled from the Cloud Run region
        vertex_location=os.getenv("VERTEX_LOCATION", region),
        model_fallbacks=fallbacks,
        primary_tier=_tier_from_env("primary", _PRIMARY),
        discovery_tier=_tier_from_env("discovery", _DISCOVERY),
        escalation_tier=_tier_from_env("escalation", _ESCALATION),
        safety_tier=_tier_from_env("safety", _SAFETY),
        background_tiers=_default_background_tiers(),
        memory_backend=os.getenv("MEMORY_BACKEND", "memory").lower(),
        redis_url=os.getenv("REDIS_URL"),
        redis_host=os.getenv("REDIS_HOST"),
        redis_port=_env_int("REDIS_PORT", 6379),
        redis_db=_env_int("REDIS_DB", 0),
        redis_password=os.getenv("REDIS_PASSWORD"),
        redis_prefix=os.getenv("REDIS_PREFIX", "coach:rows:"),
        max_message_bytes=_env_int("MAX_MESSAGE_BYTES", 8192),
        history_max_messages=_env_int("HISTORY_MAX_MESSAGES", 20),
        log_level=os.getenv("LOG_LEVEL", "info").upper(),
        log_request_body_max=_env_int("LOG_REQUEST_BODY_MAX", 1024),
        expose_upstream_error=_env_bool("EXPOSE_UPSTREAM_ERROR", False),
    )


_CONFIG: Optional[PipelineConfig] = None


def load_config() -> PipelineConfig:
    """Return the process configuration, building it on first use."""
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = config_from_env()
    return _CONFIG


def reload_config() -> PipelineConfig:
    global _CONFIG
    _CONFIG = config_from_env()
    return _CONFIG


def default_config() -> PipelineConfig:
    """Configuration with built-in defaults only (no environment lookups)."""
    return PipelineConfig()


__all__ = [
    "TierSettings",
    "PipelineConfig",
    "BACKGROUND_TASKS",
    "config_from_env",
    "load_config",
    "reload_config",
    "default_config",
]
