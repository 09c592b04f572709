import asyncio

from coach_pipeline.services.pattern_analyzer import (
    CACHE_TABLE,
    ENGAGED_SIGNAL,
    SIGNALS_TABLE,
    PatternAnalyzer,
    occurrence_count,
    rank_patterns,
)
from coach_pipeline.services.pattern_synthesizer import CONVERSATIONS_TABLE, PATTERNS_TABLE
from coach_pipeline.store import StoreError

USER = "u1"


def seed_sessions(store, n):
    store.insert(CONVERSATIONS_TABLE, USER, [{"domain": "career"} for _ in range(n)])


def seed_pattern(store, theme, evidence=3, surface_count=0, confidence=0.9, updated_at=None):
    row = {
        "theme": theme,
        "domains": ["career", "relationships"],
        "confidence": confidence,
        "evidence": [{"domain": "career", "summary": str(i)} for i in range(evidence)],
        "synthesis": f"{theme} synthesis",
        "surface_count": surface_count,
    }
    if updated_at:
        row["updated_at"] = updated_at
    store.insert(PATTERNS_TABLE, USER, [row])


def test_occurrence_count_uses_evidence_or_surface_count():
    assert occurrence_count({"evidence": [1, 2], "surface_count": 5}) == 5
    assert occurrence_count({"evidence": [1, 2, 3, 4]}) == 4
    assert occurrence_count({}) == 0


def test_rank_patterns_orders_by_occurrence_engagement_recency():
    rows = [
        {"theme": "a", "occurrence_count": 3, "engagement_count": 0, "last_seen_at": "2026-01-03T00:00:00+00:00"},
        {"theme": "b", "occurrence_count": 5, "engagement_count": 0, "last_seen_at": "2026-01-01T00:00:00+00:00"},
        {"theme": "c", "occurrence_count": 3, "engagement_count": 2, "last_seen_at": "2026-01-01T00:00:00+00:00"},
        {"theme": "d", "occurrence_count": 3, "engagement_count": 0, "last_seen_at": "2026-01-05T00:00:00+00:00"},
    ]
    assert [r["theme"] for r in rank_patterns(rows)] == ["b", "c", "d", "a"]


def test_below_session_gate_returns_empty(store, config):
    seed_sessions(store, 4)
    seed_pattern(store, "Fear of judgment")
    assert asyncio.run(PatternAnalyzer(store, config).generate_pattern_summary(USER)) == []


def test_summary_filters_ranks_and_caps(store, config):
    seed_sessions(store, 6)
    seed_pattern(store, "three", evidence=3)
    seed_pattern(store, "five", evidence=5)
    seed_pattern(store, "surfaced", evidence=2, surface_count=4)
    seed_pattern(store, "rare", evidence=2)
    seed_pattern(store, "unsure", evidence=6, confidence=0.7)
    seed_pattern(store, "engaged", evidence=3)
    store.insert(SIGNALS_TABLE, USER, [{"signal_type": ENGAGED_SIGNAL, "signal_data": {"pattern_theme": "engaged"}}])

    out = asyncio.run(PatternAnalyzer(store, config).generate_pattern_summary(USER))
    assert [s.theme for s in out] == ["five", "surfaced", "engaged"]
    assert out[0].occurrence_count == 5
    assert out[0].domains == ["career", "relationships"]

    cached = store.select_one(CACHE_TABLE, USER)
    assert cached["session_count_at_analysis"] == 6
    assert [s["theme"] for s in cached["summaries"]] == ["five", "surfaced", "engaged"]


def test_cache_reused_until_enough_new_sessions(store, config):
    seed_sessions(store, 5)
    seed_pattern(store, "first", evidence=3)
    analyzer = PatternAnalyzer(store, config)
    assert [s.theme for s in asyncio.run(analyzer.generate_pattern_summary(USER))] == ["first"]

    seed_pattern(store, "second", evidence=9)
    seed_sessions(store, 2)
    assert [s.theme for s in asyncio.run(analyzer.generate_pattern_summary(USER))] == ["first"]

    seed_sessions(store, 1)
    assert [s.theme for s in asyncio.run(analyzer.generate_pattern_summary(USER))] == ["second", "first"]


def test_invalid_cache_row_triggers_recompute(store, config):
    seed_sessions(store, 5)
    seed_pattern(store, "fresh", evidence=3)
    store.upsert(CACHE_TABLE, USER, {"summaries": [{"theme": 3}], "session_count_at_analysis": 5})
    out = asyncio.run(PatternAnalyzer(store, config).generate_pattern_summary(USER))
    assert [s.theme for s in out] == ["fresh"]


def test_engagement_read_failure_does_not_block_summary(store, config):
    seed_sessions(store, 5)
    seed_pattern(store, "kept", evidence=3)
    analyzer = PatternAnalyzer(store, config)

    original = store.select

    def select(table, *a, **kw):
        if table == SIGNALS_TABLE:
            raise StoreError("signals unavailable")
        return original(table, *a, **kw)

    store.select = select
    assert [s.theme for s in asyncio.run(analyzer.generate_pattern_summary(USER))] == ["kept"]


def test_store_failure_returns_empty(config, flaky_store):
    store = flaky_store(failing={"count"})
    assert asyncio.run(PatternAnalyzer(store, config).generate_pattern_summary(USER)) == []


def test_record_pattern_engagement(store, config, flaky_store):
    analyzer = PatternAnalyzer(store, config)
    assert asyncio.run(analyzer.record_pattern_engagement(USER, "Fear of judgment")) is True
    rows = store.select(SIGNALS_TABLE, USER)
    assert rows[0]["signal_type"] == ENGAGED_SIGNAL
    assert rows[0]["signal_data"] == {"pattern_theme": "Fear of judgment"}

    broken = PatternAnalyzer(flaky_store(failing={"insert"}), config)
    assert asyncio.run(broken.record_pattern_engagement(USER, "x")) is False
