"""
Safeguards for interpolating untrusted user text into classifier prompts.

Pure functions only; no FastAPI or app state imports so they stay easy to
unit test.
"""
from __future__ import annotations

import re
from typing import Optional

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_RESERVED_TAG_RE = re.compile(
    r"\[(/?)(MEMORY|PATTERN|DISCOVERY_COMPLETE|REFLECTION_ACCEPTED|REFLECTION_DECLINED)\b([^\]]*)\]",
    re.IGNORECASE,
)
_ROLE_PREFIX_RE = re.compile(r"^(\s*)(system|assistant|user)\s*:", re.IGNORECASE | re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")

TRUNCATION_MARKER = " [truncated]"


def sanitize_untrusted_prompt_text(text: Optional[str], max_length: int = 1200) -> str:
    """Neutralise prompt-control patterns while keeping the user's meaning.

    - normalises line endings and replaces control characters with spaces
    - defuses code fences and role-spoofing prefixes ("system: ...")
    - rewrites reserved bracket tags such as [MEMORY: ...] into parentheses
    - collapses runs of blank lines and truncates to `max_length`
    """
    if not text:
        return ""

    cleaned = text.replace("\r\n", "\n").replace("\r", "\n")
    cleaned = _CONTROL_CHARS_RE.sub(" ", cleaned)
    cleaned = cleaned.replace("```", "'''")
    cleaned = _ROLE_PREFIX_RE.sub(r"\1\2 (quoted):", cleaned)
    cleaned = _RESERVED_TAG_RE.sub(r"(\1\2\3)", cleaned)
    cleaned = _BLANK_RUN_RE.sub("\n\n", cleaned).strip()

    if len(cleaned) > max_length:
        keep = max(max_length - len(TRUNCATION_MARKER), 0)
        cleaned = cleaned[:keep].rstrip() + TRUNCATION_MARKER
    return cleaned


__all__ = ["sanitize_untrusted_prompt_text", "TRUNCATION_MARKER"]
