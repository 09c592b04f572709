"""
Prompt-ready pattern summaries.

Gate on session count, reuse the cached list until enough new sessions have
accumulated, otherwise rank persisted cross-domain patterns by occurrence,
engagement and recency. generate_pattern_summary() returns [] on any error;
it is never on the critical path of a reply.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..config import PipelineConfig
from ..models import PatternSummary
from ..store import RowNotFound, RowStore, RowStoreError, parse_ts
from ..telemetry.events import log_event
from .bounded import call_store
from .pattern_synthesizer import CONVERSATIONS_TABLE, PATTERNS_TABLE

CACHE_TABLE = "pattern_cache"
SIGNALS_TABLE = "learning_signals"
ENGAGED_SIGNAL = "pattern_engaged"
SIGNAL_SCAN_LIMIT = 200


def occurrence_count(row: Dict[str, Any]) -> int:
    """Larger of evidence items and surface count; never conversation volume."""
    evidence = row.get("evidence") or []
    return max(len(evidence), int(row.get("surface_count") or 0))


def rank_patterns(aggregated: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Occurrence desc, then engagement desc, then recency desc."""

    def recency(p: Dict[str, Any]) -> float:
        ts = parse_ts(p.get("last_seen_at"))
        return ts.timestamp() if ts else 0.0

    return sorted(
        aggregated,
        key=lambda p: (p["occurrence_count"], p["engagement_count"], recency(p)),
        reverse=True,
    )


class PatternAnalyzer:
    def __init__(self, store: RowStore, config: PipelineConfig, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.config = config
        self.logger = logger or logging.getLogger("coach_pipeline.pattern_analyzer")

    async def _store(self, fn, *args, label: str, **kwargs):
        return await call_store(self.config, fn, *args, label=label, logger=self.logger, **kwargs)

    async def generate_pattern_summary(self, user_id: str) -> List[PatternSummary]:
        try:
            sessions = await self._store(self.store.count, CONVERSATIONS_TABLE, user_id, label="session_count")
            if sessions < self.config.pattern_summary_min_sessions:
                return []

            cached = await self._cached(user_id)
            if cached is not None:
                stamp, summaries = cached
                if sessions - stamp < self.config.pattern_summary_refresh_delta:
                    return summaries

            ranked = rank_patterns(await self._aggregate(user_id))
            fresh = [
                PatternSummary(
                    theme=p["theme"],
                    occurrence_count=p["occurrence_count"],
                    domains=p["domains"],
                    confidence=p["confidence"],
                    synthesis=p["synthesis"],
                    last_seen_at=p["last_seen_at"],
                )
                for p in ranked
                if p["occurrence_count"] >= self.config.pattern_summary_min_occurrences
                and p["confidence"] >= self.config.pattern_confidence_threshold
            ][: self.config.pattern_summary_max_results]

            await self._store(
                self.store.upsert,
                CACHE_TABLE,
                user_id,
                {
                    "summaries": [s.model_dump(mode="json") for s in fresh],
                    "session_count_at_analysis": sessions,
                },
                label="pattern_summary_cache_write",
            )
            log_event(self.logger, "pattern_summary_refreshed", userId=user_id, sessions=sessions, count=len(fresh))
            return fresh
        except Exception as e:
            log_event(self.logger, "pattern_summary_failed", level="warning", userId=user_id, error=str(e))
            return []

    async def _cached(self, user_id: str):
        """(session_count_at_analysis, summaries) or None when there is no usable cache row."""
        try:
            row = await self._store(self.store.select_one, CACHE_TABLE, user_id, label="pattern_summary_cache_read")
        except RowNotFound:
            return None
        try:
            summaries = [PatternSummary.model_validate(s) for s in row.get("summaries") or []]
            stamp = int(row["session_count_at_analysis"])
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            log_event(self.logger, "pattern_summary_cache_invalid", level="warning", userId=user_id, error=str(e))
            return None
        return stamp, summaries

    async def _aggregate(self, user_id: str) -> List[Dict[str, Any]]:
        rows = await self._store(
            self.store.select, PATTERNS_TABLE, user_id, order_by="confidence", descending=True,
            label="pattern_rows_read",
        )
        if not rows:
            return []

        # Engagement data is optional enrichment
        signals: List[Dict[str, Any]] = []
        try:
            signals = await self._store(
                self.store.select,
                SIGNALS_TABLE,
                user_id,
                filters={"signal_type": ENGAGED_SIGNAL},
                limit=SIGNAL_SCAN_LIMIT,
                label="engagement_read",
            )
        except RowStoreError as e:
            log_event(self.logger, "engagement_signals_unavailable", level="warning", userId=user_id, error=str(e))

        aggregated = []
        for row in rows:
            theme = row.get("theme")
            engaged = sum(1 for s in signals if (s.get("signal_data") or {}).get("pattern_theme") == theme)
            aggregated.append(
                {
                    "theme": theme,
                    "occurrence_count": occurrence_count(row),
                    "domains": list(row.get("domains") or []),
                    "confidence": float(row.get("confidence") or 0.0),
                    "synthesis": row.get("synthesis") or "",
                    "last_seen_at": row.get("updated_at") or "",
                    "engagement_count": engaged,
                }
            )
        return aggregated

    async def record_pattern_engagement(self, user_id: str, theme: str) -> bool:
        """Store a pattern_engaged learning signal; False when the store is unavailable."""
        try:
            await self._store(
                self.store.insert,
                SIGNALS_TABLE,
                user_id,
                [{"signal_type": ENGAGED_SIGNAL, "signal_data": {"pattern_theme": theme}}],
                label="engagement_write",
            )
            return True
        except RowStoreError as e:
            log_event(self.logger, "engagement_write_failed", level="warning", userId=user_id, error=str(e))
            return False


__all__ = ["PatternAnalyzer", "rank_patterns", "occurrence_count", "CACHE_TABLE", "SIGNALS_TABLE", "ENGAGED_SIGNAL"]
