"""
Model routing policy for chat replies, the safety classifier and background tasks.

select_chat_model() is pure: it scores the message for risk and returns a
fresh ModelSelection every time. Tier settings come from PipelineConfig so
operators can retune budgets without code changes.
"""
from __future__ import annotations

import math
from typing import List, Optional, Sequence, TypeVar, Union

from ..config import BACKGROUND_TASKS, PipelineConfig, TierSettings, default_config
from ..models import ChatMessage, ModelSelection, RouteTier, SessionMode

ACUTE_RISK_TERMS = [
    "kill myself",
    "end my life",
    "suicide",
    "suicidal",
    "hurt myself",
    "self-harm",
    "self harm",
    "i want to die",
    "i dont want to live",
    "i do not want to live",
    "going to hurt someone",
]

HIGH_STAKES_TERMS = [
    "panic attack",
    "abuse",
    "assault",
    "addiction",
    "relapse",
    "overwhelmed",
    "hopeless",
    "trauma",
    "grief",
    "divorce",
    "custody",
    "fired",
    "laid off",
    "bankrupt",
    "evicted",
    "can’t cope",
    "can't cope",
]

DISTRESS_TERMS = [
    "stuck",
    "burned out",
    "burnt out",
    "numb",
    "anxious",
    "anxiety",
    "depressed",
    "exhausted",
    "ashamed",
    "alone",
    "i give up",
    "no way out",
]

DEPTH_REQUEST_TERMS = [
    "be honest with me",
    "tell me the hard truth",
    "call me out",
    "push me",
    "don't sugarcoat",
    "dont sugarcoat",
    "be direct with me",
    "challenge me",
]

CHARS_PER_TOKEN_APPROX = 4
PER_MESSAGE_OVERHEAD_TOKENS = 8
ESCALATION_SCORE = 2
CRISIS_CONFIDENCE_GATE = 0.55
LONG_MESSAGE_CHARS = 900
EARLY_DEPTH_CHARS = 220
TRUNCATION_SUFFIX = "…"

Turn = TypeVar("Turn", ChatMessage, dict)


def count_term_hits(text: str, terms: Sequence[str]) -> int:
    return sum(1 for term in terms if term in text)


def _selection(tier: TierSettings, route_tier: RouteTier, reason: str) -> ModelSelection:
    return ModelSelection(
        provider=tier.provider,
        model_id=tier.model_id,
        max_output_tokens=tier.max_output_tokens,
        temperature=tier.temperature,
        input_budget_tokens=tier.input_budget_tokens,
        route_tier=route_tier,
        route_reason=reason,
    )


def select_chat_model(
    session_mode: Union[SessionMode, str],
    message: str,
    recent_user_messages: Sequence[str],
    crisis_detected: bool,
    crisis_confidence: float,
    config: Optional[PipelineConfig] = None,
) -> ModelSelection:
    """Pick the reply tier for one message.

    Additive risk score; a score of 2 or more (or an explicit crisis) escalates
    regardless of session mode. Otherwise discovery sessions get the tighter
    discovery tier and everything else the primary coaching tier.
    """
    cfg = config or default_config()
    mode = session_mode.value if isinstance(session_mode, SessionMode) else str(session_mode)
    text = (message or "").lower()
    recent = [(m or "").lower() for m in recent_user_messages]

    acute_hits = count_term_hits(text, ACUTE_RISK_TERMS)
    high_stakes_hits = count_term_hits(text, HIGH_STAKES_TERMS)
    distress_hits = count_term_hits(text, DISTRESS_TERMS)
    depth_hits = count_term_hits(text, DEPTH_REQUEST_TERMS)
    recent_distress = any(count_term_hits(m, DISTRESS_TERMS) > 0 for m in recent[-2:])
    early_conversation = mode == SessionMode.COACHING.value and len(recent_user_messages) <= 2

    triggers: List[str] = []
    score = 0

    if crisis_detected:
        triggers.append("crisis_detected")
        score += 4
    if crisis_confidence >= CRISIS_CONFIDENCE_GATE:
        triggers.append(f"crisis_confidence_{crisis_confidence:.2f}")
        score += 2
    if acute_hits > 0:
        triggers.append(f"acute_terms_{acute_hits}")
        score += 3
    if high_stakes_hits >= 2:
        triggers.append(f"high_stakes_terms_{high_stakes_hits}")
        score += 2
    elif high_stakes_hits == 1:
        triggers.append("high_stakes_term_single")
        score += 1
    if distress_hits > 0 and recent_distress:
        triggers.append("distress_persistence")
        score += 1
    if len(text) >= LONG_MESSAGE_CHARS:
        triggers.append("long_message_900_plus")
        score += 1
    if depth_hits > 0:
        triggers.append(f"depth_request_{depth_hits}")
        score += 1
    # Only the current call's inputs count; nothing carries across sessions
    if (
        early_conversation
        and len(text) >= EARLY_DEPTH_CHARS
        and (high_stakes_hits > 0 or distress_hits >= 2 or depth_hits > 0)
    ):
        triggers.append("early_depth_turn")
        score += 1

    if score >= ESCALATION_SCORE or crisis_detected:
        return _selection(cfg.escalation_tier, RouteTier.ESCALATION, "escalated:" + ("|".join(triggers) or "risk_score"))
    if mode == SessionMode.DISCOVERY.value:
        return _selection(cfg.discovery_tier, RouteTier.PRIMARY, "primary:discovery")
    return _selection(cfg.primary_tier, RouteTier.PRIMARY, "primary:coaching_default")


def select_safety_classifier_model(config: Optional[PipelineConfig] = None) -> ModelSelection:
    cfg = config or default_config()
    return _selection(cfg.safety_tier, RouteTier.SAFETY, "safety:crisis_classifier")


def select_background_model(task: str, config: Optional[PipelineConfig] = None) -> ModelSelection:
    """Static lookup for batch work; raises ValueError for an unknown task."""
    cfg = config or default_config()
    if task not in BACKGROUND_TASKS:
        raise ValueError(f"Unknown background task: {task}")
    return _selection(cfg.background_tier(task), RouteTier.BACKGROUND, f"background:{task}")


def determine_session_mode(subscription_status: Optional[str], discovery_completed_at: Optional[str]) -> SessionMode:
    """Discovery until it is completed; then coaching for trial/active subscribers, otherwise blocked."""
    if not discovery_completed_at:
        return SessionMode.DISCOVERY
    if subscription_status in ("trial", "active"):
        return SessionMode.COACHING
    return SessionMode.BLOCKED


def estimate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN_APPROX)


def truncate_to_token_budget(text: str, token_budget: int) -> str:
    max_chars = max(0, token_budget) * CHARS_PER_TOKEN_APPROX
    if len(text) <= max_chars:
        return text
    if max_chars == 0:
        return ""
    return text[: max_chars - 1].rstrip() + TRUNCATION_SUFFIX


def _role(m) -> str:
    return m.get("role", "") if isinstance(m, dict) else m.role


def _content(m) -> str:
    return (m.get("content") if isinstance(m, dict) else m.content) or ""


def _with_content(m, content: str):
    if isinstance(m, dict):
        return {**m, "content": content}
    return m.model_copy(update={"content": content})


def enforce_input_token_budget(messages: Sequence[Turn], max_input_tokens: int) -> List[Turn]:
    """Trim a turn list so its estimated size fits `max_input_tokens`.

    The first system message is always kept. Non-system turns are taken
    newest-first while whole turns fit; when even the newest turn does not
    fit, its text is truncated into the remaining budget instead of being
    dropped. An oversized system message is truncated so that the newest
    turn keeps up to half the budget. Each message costs ceil(chars / 4)
    plus a fixed overhead, so budgets below two overheads cannot be met.
    """
    if len(messages) <= 1:
        return list(messages)

    system = [m for m in messages if _role(m) == "system"][:1]
    conversation = [m for m in messages if _role(m) != "system"]

    used = sum(estimate_tokens(_content(m)) + PER_MESSAGE_OVERHEAD_TOKENS for m in system)
    if system and conversation:
        newest_cost = estimate_tokens(_content(conversation[-1])) + PER_MESSAGE_OVERHEAD_TOKENS
        reserve = min(newest_cost, max_input_tokens // 2)
        if used > max_input_tokens - reserve:
            allowed = max(max_input_tokens - reserve - PER_MESSAGE_OVERHEAD_TOKENS, 0)
            system = [_with_content(system[0], truncate_to_token_budget(_content(system[0]), allowed))]
            used = estimate_tokens(_content(system[0])) + PER_MESSAGE_OVERHEAD_TOKENS
    kept: List[Turn] = []
    for m in reversed(conversation):
        cost = estimate_tokens(_content(m)) + PER_MESSAGE_OVERHEAD_TOKENS
        if used + cost <= max_input_tokens:
            kept.append(m)
            used += cost
            continue
        if not kept:
            remaining = max_input_tokens - used - PER_MESSAGE_OVERHEAD_TOKENS
            kept.append(_with_content(m, truncate_to_token_budget(_content(m), remaining)))
        break

    kept.reverse()
    return system + kept


__all__ = [
    "ACUTE_RISK_TERMS",
    "HIGH_STAKES_TERMS",
    "DISTRESS_TERMS",
    "DEPTH_REQUEST_TERMS",
    "select_chat_model",
    "select_safety_classifier_model",
    "select_background_model",
    "determine_session_mode",
    "enforce_input_token_budget",
    "estimate_tokens",
    "truncate_to_token_budget",
    "count_term_hits",
]
