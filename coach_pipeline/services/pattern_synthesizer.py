"""
Cross-domain pattern synthesis.

Cache-first: the user's persisted pattern set is reused while the last analysis
is younger than the TTL, even when it found nothing. A refresh groups recent
conversations by domain, asks the background model for themes that span at
least two domains, drops anything that fails validation or the confidence
gate, and replaces the persisted set wholesale. Pattern identities never
survive a refresh.

The surfacing rate limiter lives here too: at most one synthesis per
session, and a theme only resurfaces after enough new conversations.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import ValidationError

from ..config import PipelineConfig
from ..json_schemas import (
    PATTERN_RESPONSE_SCHEMA,
    PATTERN_SCHEMA,
    SchemaValidationError,
    validate_json,
    vertex_response_schema,
)
from ..models import ChatMessage, CrossDomainPattern, PatternSynthesisResult
from ..prompts.builders import build_pattern_request, pattern_system_prompt
from ..security.sanitizer import sanitize_untrusted_prompt_text
from ..store import RowNotFound, RowStore, RowStoreError, StoreError, parse_ts, utcnow_iso
from ..telemetry.events import log_event
from .bounded import call_store
from .classifier import ClassifierClient, ClassifierError
from .model_router import enforce_input_token_budget, select_background_model

PATTERNS_TABLE = "pattern_syntheses"
ANALYSIS_TABLE = "pattern_analysis"
CONVERSATIONS_TABLE = "conversations"
MESSAGES_TABLE = "messages"

MESSAGES_PER_CONVERSATION = 5
SNIPPETS_PER_CONVERSATION = 3
SNIPPET_CHARS = 300


class PatternSynthesizer:
    def __init__(
        self,
        classifier: ClassifierClient,
        store: RowStore,
        config: PipelineConfig,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.classifier = classifier
        self.store = store
        self.config = config
        self.logger = logger or logging.getLogger("coach_pipeline.pattern_synthesizer")

    async def _store(self, fn, *args, label: str, **kwargs):
        return await call_store(self.config, fn, *args, label=label, logger=self.logger, **kwargs)

    async def detect_cross_domain_patterns(self, user_id: str) -> PatternSynthesisResult:
        """Return the user's cross-domain patterns, from cache when fresh.

        Never raises; any failure yields an empty, non-cached result and the
        previously persisted set is left untouched.
        """
        try:
            cached = await self._cached_patterns(user_id)
            if cached is not None:
                return PatternSynthesisResult(patterns=cached, from_cache=True)

            groups = await self._conversations_by_domain(user_id)
            if len(groups) < self.config.pattern_min_domains:
                log_event(self.logger, "pattern_synthesis_skipped", userId=user_id, domainCount=len(groups))
                return PatternSynthesisResult(patterns=[], from_cache=False)

            candidates = await self._analyze(groups)
            if candidates is None:
                return PatternSynthesisResult(patterns=[], from_cache=False)

            kept = [p for p in candidates if self._passes_gates(p)]
            await self._replace_cache(user_id, kept)
            log_event(
                self.logger,
                "pattern_synthesis_refreshed",
                userId=user_id,
                candidates=len(candidates),
                kept=len(kept),
            )
            return PatternSynthesisResult(patterns=kept, from_cache=False)
        except (ClassifierError, RowStoreError) as e:
            log_event(self.logger, "pattern_synthesis_failed", level="warning", userId=user_id, error=str(e))
        except Exception as e:
            log_event(self.logger, "pattern_synthesis_failed", level="error", userId=user_id, error=str(e))
        return PatternSynthesisResult(patterns=[], from_cache=False)

    async def cached_patterns(self, user_id: str) -> Optional[List[CrossDomainPattern]]:
        """Fresh cached patterns, None on a cache miss, [] when the store is unavailable."""
        try:
            return await self._cached_patterns(user_id)
        except Exception as e:
            log_event(self.logger, "pattern_cache_unavailable", level="warning", userId=user_id, error=str(e))
            return []

    def _passes_gates(self, p: CrossDomainPattern) -> bool:
        return (
            p.confidence >= self.config.pattern_confidence_threshold
            and len(set(p.domains)) >= self.config.pattern_min_domains
        )

    async def _cached_patterns(self, user_id: str) -> Optional[List[CrossDomainPattern]]:
        rows = await self._store(
            self.store.select, PATTERNS_TABLE, user_id, order_by="updated_at", descending=True,
            label="pattern_cache_read",
        )
        stamps = await self._store(
            self.store.select, ANALYSIS_TABLE, user_id, limit=1, label="pattern_stamp_read"
        )
        # An empty analysis leaves no pattern rows; its stamp still counts as fresh
        candidates = [parse_ts(rows[0].get("updated_at"))] if rows else []
        if stamps:
            candidates.append(parse_ts(stamps[0].get("analyzed_at")))
        known = [ts for ts in candidates if ts is not None]
        if not known:
            return None
        age = (datetime.now(timezone.utc) - max(known)).total_seconds()
        if age > self.config.pattern_cache_ttl_seconds:
            return None

        patterns: List[CrossDomainPattern] = []
        for row in rows:
            try:
                patterns.append(CrossDomainPattern.model_validate(row))
            except ValidationError as e:
                log_event(self.logger, "pattern_cache_row_invalid", level="warning", userId=user_id, error=str(e))
        return patterns

    async def _conversation_summary(self, user_id: str, conv: dict) -> Optional[str]:
        messages = await self._store(
            self.store.select,
            MESSAGES_TABLE,
            user_id,
            filters={"conversation_id": conv.get("id")},
            order_by="created_at",
            descending=True,
            limit=MESSAGES_PER_CONVERSATION,
            label="pattern_messages_read",
        )
        if not messages:
            return None
        snippets = [
            sanitize_untrusted_prompt_text(m.get("content"), SNIPPET_CHARS)
            for m in messages
            if m.get("role") == "user"
        ][:SNIPPETS_PER_CONVERSATION]
        title = sanitize_untrusted_prompt_text(conv.get("title"), 120) or "Untitled"
        return f"[{title}] {' | '.join(snippets)}"

    async def _conversations_by_domain(self, user_id: str) -> Dict[str, List[str]]:
        """Domain -> conversation summaries, for domains with enough material."""
        conversations = await self._store(
            self.store.select,
            CONVERSATIONS_TABLE,
            user_id,
            filters={"domain": ("ne", None)},
            order_by="last_message_at",
            descending=True,
            label="pattern_conversations_read",
        )
        by_domain: Dict[str, List[dict]] = {}
        for conv in conversations:
            convs = by_domain.setdefault(str(conv["domain"]), [])
            if len(convs) < self.config.pattern_max_conversations_per_domain:
                convs.append(conv)

        groups: Dict[str, List[str]] = {}
        for domain, convs in by_domain.items():
            results = await asyncio.gather(*(self._conversation_summary(user_id, c) for c in convs))
            summaries = [s for s in results if s]
            if len(summaries) >= self.config.pattern_min_messages_per_domain:
                groups[domain] = summaries
        return groups

    async def _analyze(self, groups: Dict[str, List[str]]) -> Optional[List[CrossDomainPattern]]:
        """Validated candidates from the model, or None when the response is unusable."""
        selection = select_background_model("pattern_synthesis", self.config)
        turns = [
            ChatMessage(role="system", content=pattern_system_prompt()),
            ChatMessage(role="user", content=build_pattern_request(groups)),
        ]
        turns = enforce_input_token_budget(turns, selection.input_budget_tokens)
        payload, completion = await self.classifier.complete_json(
            turns,
            selection,
            label="pattern_synthesis",
            response_schema=vertex_response_schema(PATTERN_RESPONSE_SCHEMA),
        )
        if not isinstance(payload, dict) or not isinstance(payload.get("patterns"), list):
            log_event(self.logger, "pattern_synthesis_parse_failed", level="warning", rawResponse=completion.text)
            return None

        candidates: List[CrossDomainPattern] = []
        for raw in payload["patterns"]:
            try:
                validate_json(raw, PATTERN_SCHEMA)
            except SchemaValidationError as e:
                log_event(self.logger, "pattern_candidate_dropped", reason=str(e))
                continue
            domains = list(dict.fromkeys(d.strip().lower() for d in raw["domains"]))
            candidates.append(
                CrossDomainPattern(
                    theme=raw["theme"].strip(),
                    domains=domains,
                    confidence=float(raw["confidence"]),
                    evidence=raw["evidence"],
                    synthesis=raw["synthesis"].strip(),
                )
            )
        return candidates

    async def _replace_cache(self, user_id: str, patterns: List[CrossDomainPattern]) -> None:
        rows = []
        for p in patterns:
            row = p.model_dump(mode="json")
            row.update({"surface_count": 0, "last_surfaced_at": None})
            rows.append(row)
        await self._store(self.store.replace, PATTERNS_TABLE, user_id, rows, label="pattern_cache_write")
        try:
            await self._store(
                self.store.upsert,
                ANALYSIS_TABLE,
                user_id,
                {"analyzed_at": utcnow_iso(), "pattern_count": len(rows)},
                label="pattern_stamp_write",
            )
        except StoreError as e:
            log_event(self.logger, "pattern_stamp_write_failed", level="warning", userId=user_id, error=str(e))

    # Surfacing rate limiter

    async def can_surface_synthesis(self, user_id: str, theme: str) -> bool:
        """False while fewer than `synthesis_session_gap` conversations started since the theme last surfaced."""
        try:
            row = await self._store(
                self.store.select_one, PATTERNS_TABLE, user_id, filters={"theme": theme}, label="surface_gate_read"
            )
        except RowNotFound:
            return True
        except StoreError as e:
            log_event(self.logger, "surface_gate_unavailable", level="warning", userId=user_id, error=str(e))
            return False

        last = row.get("last_surfaced_at")
        if not last:
            return True
        try:
            newer = await self._store(
                self.store.count,
                CONVERSATIONS_TABLE,
                user_id,
                filters={"created_at": ("gt", last)},
                label="surface_gate_count",
            )
        except StoreError as e:
            log_event(self.logger, "surface_gate_unavailable", level="warning", userId=user_id, error=str(e))
            return False
        return newer >= self.config.synthesis_session_gap

    async def filter_by_rate_limit(
        self,
        user_id: str,
        patterns: List[CrossDomainPattern],
        already_surfaced: int = 0,
    ) -> List[CrossDomainPattern]:
        """The first eligible patterns, keeping the session within `max_syntheses_per_session`.

        `already_surfaced` counts syntheses shown earlier in the same session.
        """
        budget = self.config.max_syntheses_per_session - max(0, already_surfaced)
        eligible: List[CrossDomainPattern] = []
        for p in patterns:
            if len(eligible) >= budget:
                break
            if await self.can_surface_synthesis(user_id, p.theme):
                eligible.append(p)
        return eligible

    async def record_synthesis_surfaced(self, user_id: str, theme: str) -> None:
        """Bump surface_count and stamp last_surfaced_at for a theme.

        The atomic store increment is the normal path. If it fails, a
        read-modify-write fallback runs; concurrent surfacing of the same
        theme can lose an increment there, which is tolerated because the
        counter is informational. The fallback aborts when the read fails
        rather than resetting the counter.
        """
        now = utcnow_iso()
        try:
            await self._store(
                self.store.increment,
                PATTERNS_TABLE,
                user_id,
                filters={"theme": theme},
                field="surface_count",
                values={"last_surfaced_at": now},
                touch=False,
                label="surface_increment",
            )
            return
        except StoreError as e:
            log_event(self.logger, "surface_increment_fallback", level="warning", userId=user_id, error=str(e))

        try:
            row = await self._store(
                self.store.select_one, PATTERNS_TABLE, user_id, filters={"theme": theme}, label="surface_fallback_read"
            )
        except RowStoreError as e:
            log_event(self.logger, "surface_fallback_aborted", level="error", userId=user_id, error=str(e))
            return

        try:
            await self._store(
                self.store.update,
                PATTERNS_TABLE,
                user_id,
                filters={"theme": theme},
                values={
                    "surface_count": int(row.get("surface_count") or 0) + 1,
                    "last_surfaced_at": now,
                    "updated_at": row.get("updated_at"),
                },
                label="surface_fallback_write",
            )
        except StoreError as e:
            log_event(self.logger, "surface_fallback_failed", level="error", userId=user_id, error=str(e))


__all__ = ["PatternSynthesizer", "PATTERNS_TABLE", "ANALYSIS_TABLE", "CONVERSATIONS_TABLE", "MESSAGES_TABLE"]
