"""
User-content builders for classifier calls.

Every piece of user-derived text goes through sanitize_untrusted_prompt_text
before it is interpolated, and is labelled UNTRUSTED_* in the template.
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from ..models import CoachingDomain
from ..security.sanitizer import sanitize_untrusted_prompt_text
from .loader import load_and_render, load_text

CLASSIFICATION_CONTEXT_TURNS = 3
CLASSIFICATION_TURN_CHARS = 260
CLASSIFICATION_MESSAGE_CHARS = 450
CRISIS_CONTEXT_CHARS = 400
CRISIS_MESSAGE_CHARS = 1200


def _role_of(turn) -> str:
    role = turn.get("role") if isinstance(turn, dict) else getattr(turn, "role", "user")
    return "assistant" if role == "assistant" else "user"


def _content_of(turn) -> str:
    content = turn.get("content") if isinstance(turn, dict) else getattr(turn, "content", "")
    return content or ""


def crisis_system_prompt() -> str:
    return load_text("crisis_classifier.txt")


def domain_system_prompt() -> str:
    return load_text("domain_classifier.txt")


def pattern_system_prompt() -> str:
    return load_text("pattern_synthesis.txt")


def coaching_system_prompt() -> str:
    return load_text("coaching_base.txt")


def build_crisis_request(message: str, recent_messages: Sequence) -> str:
    lines = [
        f"{_role_of(m)}: {sanitize_untrusted_prompt_text(_content_of(m), CRISIS_CONTEXT_CHARS)}"
        for m in recent_messages
    ]
    return load_and_render(
        "crisis_request.txt",
        message=sanitize_untrusted_prompt_text(message, CRISIS_MESSAGE_CHARS) or "(empty)",
        context="\n".join(lines) or "(none)",
    )


def build_classification_prompt(
    message: str,
    recent_messages: Sequence,
    current_domain: Optional[CoachingDomain],
) -> str:
    """Render the domain classification request.

    Only the last three turns are included, each role-normalised and capped,
    and the current domain (when known) is offered as a continuity hint.
    """
    context_lines = [
        f"{_role_of(m)}: {sanitize_untrusted_prompt_text(_content_of(m), CLASSIFICATION_TURN_CHARS)}"
        for m in list(recent_messages)[-CLASSIFICATION_CONTEXT_TURNS:]
    ]
    hint = f"\nCurrent conversation domain: {current_domain.value}" if current_domain else ""
    return load_and_render(
        "domain_request.txt",
        domains=", ".join(d.value for d in CoachingDomain),
        current_domain_hint=hint,
        context="\n".join(context_lines) or "(none)",
        message=sanitize_untrusted_prompt_text(message, CLASSIFICATION_MESSAGE_CHARS) or "(empty)",
    )


def build_pattern_request(groups: Dict[str, List[str]]) -> str:
    sections = []
    for domain, summaries in groups.items():
        numbered = "\n".join(f"{i}. {s}" for i, s in enumerate(summaries, start=1))
        sections.append(f"## {domain.upper()} DOMAIN\n{numbered}")
    return load_and_render("pattern_request.txt", domain_count=len(groups), groups="\n\n".join(sections))


__all__ = [
    "crisis_system_prompt",
    "domain_system_prompt",
    "pattern_system_prompt",
    "coaching_system_prompt",
    "build_crisis_request",
    "build_classification_prompt",
    "build_pattern_request",
]
