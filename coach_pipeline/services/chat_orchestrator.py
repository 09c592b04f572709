"""
Per-turn orchestration.

decide() is the routing pipeline proper:
1. Crisis detection, domain routing and pattern enrichment run concurrently
2. Reply tier selection from the crisis result and the message
3. A crisis overrides everything downstream (escalation tier, no patterns)

handle_message() wraps it with persistence and reply generation. Pattern
refreshes and bookkeeping writes run as background tasks that outlive the
request; drain() waits for them (shutdown and tests).
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, List, Optional, Set

from ..config import PipelineConfig
from ..domains import DomainConfigRegistry
from ..models import (
    ChatMessage,
    ChatReply,
    CoachingDomain,
    CrisisDetectionResult,
    RouteRequest,
    SessionMode,
    TurnDecision,
)
from ..store import RowNotFound, RowStore, RowStoreError, StoreError, utcnow_iso
from ..telemetry.events import log_event, truncate_for_log
from .bounded import call_store
from .chat_helpers import build_system_instruction, recent_user_messages, shape_history
from .classifier import ClassifierClient, ClassifierError
from .crisis_detector import CrisisDetector, crisis_response_text
from .domain_router import DomainContext, DomainRouter
from .model_router import determine_session_mode, enforce_input_token_budget, select_chat_model
from .pattern_analyzer import PatternAnalyzer
from .pattern_synthesizer import CONVERSATIONS_TABLE, MESSAGES_TABLE, PatternSynthesizer

CONTEXT_TURNS = 3

# Conversation column counting syntheses shown in that session
SURFACED_FIELD = "syntheses_surfaced"


class ConversationNotFound(Exception):
    pass


class SessionBlocked(Exception):
    pass


class ReplyUnavailable(Exception):
    pass


class ChatOrchestrator:
    """Wires detector, routers and pattern services around one store and one classifier."""

    def __init__(
        self,
        *,
        config: PipelineConfig,
        store: RowStore,
        classifier: ClassifierClient,
        registry: Optional[DomainConfigRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.classifier = classifier
        self.registry = registry or DomainConfigRegistry()
        self.logger = logger or logging.getLogger("coach_pipeline.orchestrator")

        self.crisis_detector = CrisisDetector(classifier, config, self.logger)
        self.domain_router = DomainRouter(classifier, config, self.registry, self.logger)
        self.synthesizer = PatternSynthesizer(classifier, store, config, self.logger)
        self.analyzer = PatternAnalyzer(store, config, self.logger)

        self._background: Set[asyncio.Task] = set()
        self._refreshing: Set[str] = set()

    async def _store(self, fn, *args, label: str, **kwargs):
        return await call_store(self.config, fn, *args, label=label, logger=self.logger, **kwargs)

    # Background work

    def spawn_background(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task:
        """Run `coro` detached from the request; failures are logged, never raised."""
        task = asyncio.create_task(self._guarded(coro, name))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _guarded(self, coro: Awaitable[Any], name: str) -> None:
        try:
            await coro
        except Exception as e:
            log_event(self.logger, "background_task_failed", level="error", task=name, error=str(e))

    def schedule_pattern_refresh(self, user_id: str) -> None:
        if user_id in self._refreshing:
            return
        self._refreshing.add(user_id)

        async def refresh() -> None:
            try:
                await self.synthesizer.detect_cross_domain_patterns(user_id)
            finally:
                self._refreshing.discard(user_id)

        self.spawn_background(refresh(), name="pattern_refresh")

    async def drain(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Loading

    async def _conversation(self, user_id: str, conversation_id: str) -> dict:
        try:
            return await self._store(
                self.store.select_one,
                CONVERSATIONS_TABLE,
                user_id,
                filters={"id": conversation_id},
                label="conversation_read",
            )
        except RowNotFound as e:
            raise ConversationNotFound(conversation_id) from e

    async def _history(self, user_id: str, conversation_id: str) -> List[dict]:
        rows = await self._store(
            self.store.select,
            MESSAGES_TABLE,
            user_id,
            filters={"conversation_id": conversation_id},
            order_by="created_at",
            descending=True,
            limit=self.config.history_max_messages,
            label="history_read",
        )
        return shape_history(list(reversed(rows)))

    # Decision pipeline

    async def _patterns_for_turn(self, user_id: str, conversation: dict):
        cached = await self.synthesizer.cached_patterns(user_id)
        if cached is None:
            self.schedule_pattern_refresh(user_id)
            return []
        already = int(conversation.get(SURFACED_FIELD) or 0)
        if already >= self.config.max_syntheses_per_session:
            return []
        return await self.synthesizer.filter_by_rate_limit(user_id, cached, already_surfaced=already)

    def _session_mode(self, request: RouteRequest) -> SessionMode:
        return request.session_mode or determine_session_mode(
            request.subscription_status, request.discovery_completed_at
        )

    async def decide(
        self,
        request: RouteRequest,
        *,
        history: Optional[List[dict]] = None,
        conversation: Optional[dict] = None,
        known_crisis: Optional[CrisisDetectionResult] = None,
    ) -> TurnDecision:
        """Route one user message. `history` holds prior turns only, oldest first.

        A crisis result already computed for this message is reused as-is.
        """
        user_id = request.user_id
        if conversation is None:
            try:
                conversation = await self._conversation(user_id, request.conversation_id)
            except (ConversationNotFound, RowStoreError) as e:
                log_event(self.logger, "conversation_unavailable", level="warning", userId=user_id, error=str(e))
                conversation = {}
        if history is None:
            try:
                history = await self._history(user_id, request.conversation_id)
            except RowStoreError as e:
                log_event(self.logger, "history_unavailable", level="warning", userId=user_id, error=str(e))
                history = []

        current = CoachingDomain.coerce(conversation["domain"]) if conversation.get("domain") else None
        session_mode = self._session_mode(request)
        recent = history[-CONTEXT_TURNS:]

        async def detect_crisis() -> CrisisDetectionResult:
            if known_crisis is not None:
                return known_crisis
            return await self.crisis_detector.detect(request.message, recent)

        crisis, domain, summaries, patterns = await asyncio.gather(
            detect_crisis(),
            self.domain_router.route(request.message, DomainContext(current_domain=current, recent_messages=recent)),
            self.analyzer.generate_pattern_summary(user_id),
            self._patterns_for_turn(user_id, conversation),
        )

        model = select_chat_model(
            session_mode,
            request.message,
            recent_user_messages(history, len(history)),
            crisis.crisis_detected,
            crisis.confidence,
            self.config,
        )

        decision = TurnDecision(
            crisis=crisis,
            domain=domain,
            model=model,
            session_mode=session_mode,
            patterns=[] if crisis.crisis_detected else patterns,
            pattern_summaries=[] if crisis.crisis_detected else summaries,
            crisis_override=crisis.crisis_detected,
            previous_domain=current,
        )
        log_event(
            self.logger,
            "turn_decided",
            userId=user_id,
            conversationId=request.conversation_id,
            crisis=crisis.crisis_detected,
            crisisCategory=crisis.category.value,
            domain=domain.domain.value,
            domainConfidence=domain.confidence,
            previousDomain=current.value if current else None,
            routeTier=model.route_tier.value,
            routeReason=model.route_reason,
            sessionMode=session_mode.value,
            patterns=len(decision.patterns),
        )
        return decision

    # Full turn

    async def handle_message(self, request: RouteRequest) -> ChatReply:
        started = time.time()
        user_id = request.user_id
        conversation = await self._conversation(user_id, request.conversation_id)
        try:
            history = await self._history(user_id, request.conversation_id)
        except RowStoreError as e:
            log_event(self.logger, "history_unavailable", level="warning", userId=user_id, error=str(e))
            history = []

        # Blocked sessions only get crisis screening; nothing is written or classified otherwise
        crisis = None
        if self._session_mode(request) == SessionMode.BLOCKED:
            crisis = await self.crisis_detector.detect(request.message, history[-CONTEXT_TURNS:])
            if not crisis.crisis_detected:
                log_event(self.logger, "session_blocked", userId=user_id, conversationId=request.conversation_id)
                raise SessionBlocked(user_id)

        await self._store(
            self.store.insert,
            MESSAGES_TABLE,
            user_id,
            [{"conversation_id": request.conversation_id, "role": "user", "content": request.message}],
            label="user_message_write",
        )

        decision = await self.decide(request, history=history, conversation=conversation, known_crisis=crisis)

        if decision.crisis_override:
            reply, model_used, usage = crisis_response_text(), "crisis_override", {}
        else:
            reply, model_used, usage = await self._generate_reply(request, history, decision)

        self.spawn_background(
            self._persist_turn(request, conversation, decision, reply, model_used),
            name="persist_turn",
        )
        for p in decision.patterns:
            self.spawn_background(self.synthesizer.record_synthesis_surfaced(user_id, p.theme), name="surface_record")

        latency_ms = int((time.time() - started) * 1000)
        log_event(
            self.logger,
            "chat_reply",
            userId=user_id,
            conversationId=request.conversation_id,
            model=model_used,
            latencyMs=latency_ms,
            replyPreview=truncate_for_log(reply, 200),
        )
        return ChatReply(reply=reply, decision=decision, model=model_used, latency_ms=latency_ms, usage=usage)

    async def _generate_reply(self, request: RouteRequest, history: List[dict], decision: TurnDecision):
        system = build_system_instruction(
            self.registry.get(decision.domain.domain),
            should_clarify=decision.domain.should_clarify,
            patterns=decision.patterns,
            pattern_summaries=decision.pattern_summaries,
        )
        turns = [ChatMessage(role="system", content=system)]
        turns += [ChatMessage(role=t["role"], content=t["content"]) for t in history]
        turns.append(ChatMessage(role="user", content=request.message))
        turns = enforce_input_token_budget(turns, decision.model.input_budget_tokens)

        try:
            completion = await self.classifier.complete(turns, decision.model, label="chat_reply")
        except ClassifierError as e:
            raise ReplyUnavailable(str(e)) from e
        text = (completion.text or "").strip()
        if not text:
            raise ReplyUnavailable("empty reply")
        return text, completion.model, completion.usage

    async def _persist_turn(
        self,
        request: RouteRequest,
        conversation: dict,
        decision: TurnDecision,
        reply: str,
        model_used: str,
    ) -> None:
        user_id = request.user_id
        try:
            await self._store(
                self.store.insert,
                MESSAGES_TABLE,
                user_id,
                [
                    {
                        "conversation_id": request.conversation_id,
                        "role": "assistant",
                        "content": reply,
                        "model": model_used,
                        "route_tier": decision.model.route_tier.value,
                    }
                ],
                label="assistant_message_write",
            )
        except StoreError as e:
            log_event(self.logger, "assistant_message_write_failed", level="error", userId=user_id, error=str(e))

        values = {"last_message_at": utcnow_iso()}
        if not decision.crisis_override and decision.domain.domain.value != conversation.get("domain"):
            values["domain"] = decision.domain.domain.value
        try:
            await self._store(
                self.store.update,
                CONVERSATIONS_TABLE,
                user_id,
                filters={"id": request.conversation_id},
                values=values,
                label="conversation_update",
            )
        except StoreError as e:
            log_event(self.logger, "conversation_update_failed", level="warning", userId=user_id, error=str(e))

        if decision.patterns:
            try:
                await self._store(
                    self.store.increment,
                    CONVERSATIONS_TABLE,
                    user_id,
                    filters={"id": request.conversation_id},
                    field=SURFACED_FIELD,
                    amount=len(decision.patterns),
                    label="session_surface_count",
                )
            except StoreError as e:
                log_event(self.logger, "session_surface_count_failed", level="warning", userId=user_id, error=str(e))


__all__ = ["ChatOrchestrator", "ConversationNotFound", "SessionBlocked", "ReplyUnavailable"]
