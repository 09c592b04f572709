"""
Domain routing with a keyword shift gate and confidence hysteresis.

A conversation with no domain (or "general") is always classified. Once a
specialised domain is set, a cheap keyword gate decides whether the message
looks like a topic shift; only then is the classifier consulted, and
switching away requires a higher confidence than staying.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from ..config import PipelineConfig
from ..domains import DomainConfigRegistry
from ..json_schemas import (
    DOMAIN_RESPONSE_SCHEMA,
    DOMAIN_SCHEMA,
    SchemaValidationError,
    validate_json,
    vertex_response_schema,
)
from ..models import ChatMessage, CoachingDomain, DomainResult
from ..prompts.builders import build_classification_prompt, domain_system_prompt
from ..telemetry.events import log_event
from .classifier import ClassifierClient, ClassifierError, extract_json_payload
from .model_router import enforce_input_token_budget, select_background_model

NEUTRAL_CONFIDENCE = 0.5

DomainLike = Union[CoachingDomain, str, None]


@dataclass
class DomainContext:
    current_domain: Optional[CoachingDomain] = None
    recent_messages: List[Any] = field(default_factory=list)


def _as_domain(value: DomainLike) -> Optional[CoachingDomain]:
    if value is None or value == "":
        return None
    if isinstance(value, CoachingDomain):
        return value
    return CoachingDomain.coerce(value)


def _unclassified(should_clarify: bool = False) -> DomainResult:
    return DomainResult(domain=CoachingDomain.GENERAL, confidence=0.0, should_clarify=should_clarify)


def parse_domain_response(text: Optional[str], current_domain: DomainLike, config: PipelineConfig) -> DomainResult:
    """Turn raw classifier output into a DomainResult.

    - no JSON object, wrong shape, or a domain outside the enumeration:
      general with confidence 0
    - missing or non-numeric confidence: general with should_clarify=True
    - numeric confidence outside [0, 1]: coerced to 0.5, domain kept
    - below threshold while switching away from a specialised domain: keep
      the current domain; below threshold otherwise: general + clarify
    """
    current = _as_domain(current_domain)
    payload = extract_json_payload(text)
    if not isinstance(payload, dict):
        return _unclassified()
    try:
        validate_json(payload, DOMAIN_SCHEMA)
    except SchemaValidationError:
        return _unclassified()

    raw_domain = payload["domain"].strip().lower()
    if raw_domain not in {d.value for d in CoachingDomain}:
        return _unclassified()
    domain = CoachingDomain(raw_domain)

    raw_conf = payload.get("confidence")
    if isinstance(raw_conf, bool) or not isinstance(raw_conf, (int, float)) or math.isnan(raw_conf):
        return _unclassified(should_clarify=True)
    confidence = float(raw_conf)

    if confidence < 0 or confidence > 1:
        return DomainResult(domain=domain, confidence=NEUTRAL_CONFIDENCE, should_clarify=False)

    switching = current is not None and current != CoachingDomain.GENERAL and domain != current
    threshold = config.domain_switch_threshold if switching else config.domain_stay_threshold

    if confidence < threshold:
        if switching:
            return DomainResult(domain=current, confidence=confidence, should_clarify=False)
        return DomainResult(domain=CoachingDomain.GENERAL, confidence=confidence, should_clarify=True)
    return DomainResult(domain=domain, confidence=confidence, should_clarify=False)


class DomainRouter:
    def __init__(
        self,
        classifier: ClassifierClient,
        config: PipelineConfig,
        registry: Optional[DomainConfigRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.classifier = classifier
        self.config = config
        self.registry = registry or DomainConfigRegistry()
        self.logger = logger or logging.getLogger("coach_pipeline.domain_router")

    def detect_topic_shift(self, message: str, current_domain: DomainLike) -> bool:
        """True when the message likely left the current domain (classification needed)."""
        current = _as_domain(current_domain)
        if current is None or current == CoachingDomain.GENERAL:
            return True

        lowered = (message or "").lower()
        if any(kw.lower() in lowered for kw in self.registry.keywords(current)):
            return False
        for name, cfg in self.registry.enabled_configs().items():
            if name == current.value:
                continue
            if any(kw.lower() in lowered for kw in cfg.domain_keywords):
                return True
        return False

    async def route(self, message: str, context: Optional[DomainContext] = None) -> DomainResult:
        ctx = context or DomainContext()
        try:
            current = _as_domain(ctx.current_domain)
            if current is not None and current != CoachingDomain.GENERAL:
                if not self.detect_topic_shift(message, current):
                    return DomainResult(domain=current, confidence=1.0, should_clarify=False)
            return await self._classify(message, ctx.recent_messages, current)
        except Exception as e:
            log_event(self.logger, "domain_classification_failed", level="error", error=str(e))
            return _unclassified()

    async def _classify(self, message: str, recent_messages, current: Optional[CoachingDomain]) -> DomainResult:
        selection = select_background_model("domain_classification", self.config)
        turns = [
            ChatMessage(role="system", content=domain_system_prompt()),
            ChatMessage(role="user", content=build_classification_prompt(message, recent_messages, current)),
        ]
        turns = enforce_input_token_budget(turns, selection.input_budget_tokens)
        try:
            completion = await self.classifier.complete(
                turns,
                selection,
                label="domain_classifier",
                response_schema=vertex_response_schema(DOMAIN_RESPONSE_SCHEMA),
            )
        except ClassifierError as e:
            log_event(self.logger, "domain_classification_failed", level="warning", error=str(e))
            return _unclassified()

        result = parse_domain_response(completion.text, current, self.config)
        log_event(
            self.logger,
            "domain_classified",
            previousDomain=current.value if current else None,
            domain=result.domain.value,
            confidence=result.confidence,
            shouldClarify=result.should_clarify,
            rawResponse=completion.text if result.confidence == 0 else None,
        )
        return result


__all__ = ["DomainRouter", "DomainContext", "parse_domain_response", "NEUTRAL_CONFIDENCE"]
