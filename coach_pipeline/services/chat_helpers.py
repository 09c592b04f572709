from typing import List, Optional, Sequence

from ..domains import DomainConfig
from ..models import CrossDomainPattern, PatternSummary
from ..prompts.builders import coaching_system_prompt
from ..security.sanitizer import sanitize_untrusted_prompt_text

CLARIFY_INSTRUCTION = (
    "The topic of this conversation is not clear yet. Before giving advice, ask one short, "
    "friendly question to understand what area of their life the user wants to focus on."
)


def build_system_instruction(
    domain_config: DomainConfig,
    should_clarify: bool = False,
    patterns: Optional[Sequence[CrossDomainPattern]] = None,
    pattern_summaries: Optional[Sequence[PatternSummary]] = None,
) -> str:
    """Assemble the reply system instruction.

    Base coaching prompt, then the domain's tone and prompt addition, an
    optional clarify nudge, and any pattern context. Pattern text was
    produced by a model from user data, so it is sanitised again here.
    """
    parts: List[str] = [coaching_system_prompt()]

    if domain_config.id != "general":
        domain_lines = [f"Coaching focus: {domain_config.name or domain_config.id}"]
        if domain_config.tone:
            domain_lines.append(f"Tone: {domain_config.tone}")
        if domain_config.methodology:
            domain_lines.append(f"Methods you may draw on: {domain_config.methodology}")
        if domain_config.system_prompt_addition:
            domain_lines.append(domain_config.system_prompt_addition)
        parts.append("\n".join(domain_lines))

    if should_clarify:
        parts.append(CLARIFY_INSTRUCTION)

    if patterns:
        lines = [
            f"- {sanitize_untrusted_prompt_text(p.synthesis, 400)} (seen in: {', '.join(p.domains)})"
            for p in patterns
        ]
        parts.append(
            "CROSS-DOMAIN INSIGHT (offer gently, as a question, only if it fits the conversation):\n"
            + "\n".join(lines)
        )

    if pattern_summaries:
        lines = [
            f"- {sanitize_untrusted_prompt_text(s.theme, 160)}: "
            f"{sanitize_untrusted_prompt_text(s.synthesis, 300)} (noticed {s.occurrence_count} times)"
            for s in pattern_summaries
        ]
        parts.append("RECURRING PATTERNS for this user (background context, do not list them back):\n" + "\n".join(lines))

    return "\n\n".join(parts)


def shape_history(rows: List[dict]) -> List[dict]:
    """Chronological rows -> alternating turns.

    Empty messages are dropped and consecutive turns from the same role are
    merged, so orphaned user turns from failed replies do not break role
    alternation.
    """
    turns: List[dict] = []
    for r in rows:
        content = (r.get("content") or "").strip()
        role = r.get("role")
        if not content or role not in ("user", "assistant"):
            continue
        if turns and turns[-1]["role"] == role:
            turns[-1] = {"role": role, "content": turns[-1]["content"] + "\n\n" + content}
        else:
            turns.append({"role": role, "content": content})
    return turns


def recent_user_messages(turns: List[dict], n: int) -> List[str]:
    return [t["content"] for t in turns if t.get("role") == "user"][-n:]
