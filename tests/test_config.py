import pytest
from pydantic import ValidationError

from coach_pipeline import config as config_mod
from coach_pipeline.config import BACKGROUND_TASKS, PipelineConfig, config_from_env, default_config


def test_defaults():
    cfg = default_config()
    assert cfg.crisis_confidence_threshold == 0.6
    assert cfg.domain_stay_threshold == 0.7
    assert cfg.domain_switch_threshold == 0.85
    assert cfg.pattern_confidence_threshold == 0.85
    assert cfg.pattern_cache_ttl_seconds == 86400
    assert cfg.escalation_tier.model_id == "gemini-2.5-pro"
    assert set(cfg.background_tiers) == set(BACKGROUND_TASKS)
    assert cfg.background_tier("pattern_synthesis").max_output_tokens == 900


def test_thresholds_are_bounded():
    with pytest.raises(ValidationError):
        PipelineConfig(crisis_confidence_threshold=1.5)


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("CRISIS_CONFIDENCE_THRESHOLD", "0.5")
    monkeypatch.setenv("MODEL_FALLBACKS", "gemini-a, ,gemini-b")
    monkeypatch.setenv("REGION", "europe-west1")
    monkeypatch.setenv("TIER_ESCALATION_MODEL", "gemini-custom")
    monkeypatch.setenv("TIER_BACKGROUND_MODEL", "gemini-bg")
    monkeypatch.setenv("TIER_SUMMARY_MAX_OUTPUT_TOKENS", "123")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("EXPOSE_UPSTREAM_ERROR", "TRUE")
    monkeypatch.delenv("VERTEX_LOCATION", raising=False)

    cfg = config_from_env()
    assert cfg.crisis_confidence_threshold == 0.5
    assert cfg.model_fallbacks == ["gemini-a", "gemini-b"]
    assert cfg.vertex_location == "europe-west1"
    assert cfg.escalation_tier.model_id == "gemini-custom"
    assert cfg.escalation_tier.max_output_tokens == 2200
    assert cfg.background_tier("summary").model_id == "gemini-bg"
    assert cfg.background_tier("summary").max_output_tokens == 123
    assert cfg.log_level == "DEBUG"
    assert cfg.expose_upstream_error is True


def test_load_and_reload(monkeypatch):
    monkeypatch.setattr(config_mod, "_CONFIG", None)
    monkeypatch.setenv("MAX_MESSAGE_BYTES", "100")
    first = config_mod.load_config()
    assert first.max_message_bytes == 100
    assert config_mod.load_config() is first

    monkeypatch.setenv("MAX_MESSAGE_BYTES", "200")
    assert config_mod.load_config().max_message_bytes == 100
    assert config_mod.reload_config().max_message_bytes == 200
