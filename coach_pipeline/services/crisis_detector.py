"""
Two-tier crisis detection.

Tier 1 is a case-insensitive phrase scan that short-circuits with a fixed
confidence. Tier 2 only runs when the message, or one of the last two user
turns, contains softer "ambiguity" language; it asks the safety classifier
for a structured verdict.

detect() never raises. Any failure (classifier unavailable, timeout,
malformed verdict) yields the no-crisis default so coaching is never blocked.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Tuple

from ..config import PipelineConfig
from ..json_schemas import CRISIS_SCHEMA, SchemaValidationError, validate_json, vertex_response_schema
from ..models import ChatMessage, CrisisCategory, CrisisDetectionResult
from ..prompts.builders import build_crisis_request, crisis_system_prompt
from ..prompts.loader import load_and_render
from ..telemetry.events import log_event
from .classifier import ClassifierClient, ClassifierError
from .model_router import enforce_input_token_budget, select_safety_classifier_model

SELF_HARM_PHRASES = [
    "kill myself", "hurt myself", "cutting myself", "self-harm", "self harm",
    "harming myself", "injure myself",
]
SUICIDAL_PHRASES = [
    "want to die", "wanna die", "better off dead", "end it all", "end my life",
    "no reason to live", "no point in living", "suicide", "suicidal",
    "can't go on", "rather be dead", "wish i was dead", "wish i were dead",
    "take my own life", "don't want to be alive", "don't want to live",
]
ABUSE_PHRASES = [
    "being abused", "he hits me", "she hits me", "they hit me",
    "sexual abuse", "domestic violence", "being hurt by",
]
SEVERE_DISTRESS_PHRASES = ["going to hurt someone", "want to hurt someone"]

# Scanned in this order; the first hit wins.
CRISIS_PHRASES: List[Tuple[str, CrisisCategory]] = (
    [(p, CrisisCategory.SELF_HARM) for p in SELF_HARM_PHRASES]
    + [(p, CrisisCategory.SUICIDAL_IDEATION) for p in SUICIDAL_PHRASES]
    + [(p, CrisisCategory.ABUSE) for p in ABUSE_PHRASES]
    + [(p, CrisisCategory.SEVERE_DISTRESS) for p in SEVERE_DISTRESS_PHRASES]
)

AMBIGUITY_PHRASES = [
    "don't see the point",
    "nothing matters",
    "i give up",
    "can't take it",
    "can't do this anymore",
    "no way out",
    "trapped",
    "hopeless",
    "worthless",
    "nobody cares",
    "alone in this",
    "can't breathe",
    "falling apart",
    "breaking down",
    "losing it",
]

CRISIS_RESOURCES = [
    {"name": "988 Suicide & Crisis Lifeline", "phone": "988", "text": None},
    {"name": "Crisis Text Line", "phone": None, "text": "Text HOME to 741741"},
]


def crisis_response_text() -> str:
    """The fixed reply used when the crisis override fires."""
    lines = []
    for r in CRISIS_RESOURCES:
        how = f"call or text {r['phone']}" if r["phone"] else r["text"]
        lines.append(f"- {r['name']}: {how}")
    return load_and_render("crisis_response.txt", resources="\n".join(lines))


def _normalize(text: Optional[str]) -> str:
    # Curly apostrophes from mobile keyboards must still match the phrase lists
    return (text or "").lower().replace("’", "'")


def match_crisis_phrase(message: str) -> Optional[Tuple[str, CrisisCategory]]:
    lowered = _normalize(message)
    for phrase, category in CRISIS_PHRASES:
        if phrase in lowered:
            return phrase, category
    return None


def has_ambiguity_phrase(text: str) -> bool:
    lowered = _normalize(text)
    return any(p in lowered for p in AMBIGUITY_PHRASES)


def _turn_field(turn, name: str) -> str:
    value = turn.get(name) if isinstance(turn, dict) else getattr(turn, name, "")
    return value or ""


class CrisisDetector:
    def __init__(
        self,
        classifier: ClassifierClient,
        config: PipelineConfig,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.classifier = classifier
        self.config = config
        self.logger = logger or logging.getLogger("coach_pipeline.crisis")

    def _needs_classifier(self, message: str, recent_messages: Sequence) -> bool:
        if has_ambiguity_phrase(message):
            return True
        user_turns = [_turn_field(m, "content") for m in recent_messages if _turn_field(m, "role") == "user"]
        return has_ambiguity_phrase(" ".join(user_turns[-2:]))

    async def detect(self, message: str, recent_messages: Sequence = ()) -> CrisisDetectionResult:
        try:
            hit = match_crisis_phrase(message)
            if hit is not None:
                phrase, category = hit
                log_event(self.logger, "crisis_keyword_match", category=category.value, indicator=phrase)
                return CrisisDetectionResult(
                    crisis_detected=True,
                    confidence=self.config.crisis_keyword_confidence,
                    indicators=[phrase],
                    category=category,
                )

            if self._needs_classifier(message, recent_messages):
                return await self._classify(message, recent_messages)

            return CrisisDetectionResult.safe_default()
        except Exception as e:
            log_event(self.logger, "crisis_fail_open", level="error", error=str(e))
            return CrisisDetectionResult.safe_default()

    async def _classify(self, message: str, recent_messages: Sequence) -> CrisisDetectionResult:
        selection = select_safety_classifier_model(self.config)
        turns = [
            ChatMessage(role="system", content=crisis_system_prompt()),
            ChatMessage(role="user", content=build_crisis_request(message, list(recent_messages)[-3:])),
        ]
        turns = enforce_input_token_budget(turns, selection.input_budget_tokens)

        try:
            payload, completion = await self.classifier.complete_json(
                turns,
                selection,
                label="crisis_classifier",
                response_schema=vertex_response_schema(CRISIS_SCHEMA),
            )
        except ClassifierError as e:
            log_event(self.logger, "crisis_classifier_unavailable", level="warning", error=str(e))
            return CrisisDetectionResult.safe_default()

        if payload is None:
            log_event(self.logger, "crisis_parse_failed", level="warning", rawResponse=completion.text)
            return CrisisDetectionResult.safe_default()
        try:
            validate_json(payload, CRISIS_SCHEMA)
        except SchemaValidationError as e:
            log_event(
                self.logger, "crisis_parse_failed", level="warning", error=str(e), rawResponse=completion.text
            )
            return CrisisDetectionResult.safe_default()

        confidence = float(payload["confidence"])
        detected = confidence >= self.config.crisis_confidence_threshold
        reasoning = payload.get("reasoning")
        result = CrisisDetectionResult(
            crisis_detected=detected,
            confidence=confidence,
            indicators=[reasoning[:200]] if reasoning else [],
            category=CrisisCategory.coerce(payload.get("category")) if detected else CrisisCategory.NONE,
        )
        log_event(
            self.logger,
            "crisis_classified",
            crisisDetected=result.crisis_detected,
            confidence=result.confidence,
            category=result.category.value,
            model=completion.model,
        )
        return result


__all__ = [
    "CrisisDetector",
    "CRISIS_PHRASES",
    "AMBIGUITY_PHRASES",
    "CRISIS_RESOURCES",
    "crisis_response_text",
    "match_crisis_phrase",
    "has_ambiguity_phrase",
]
