import asyncio

from coach_pipeline.models import CrisisCategory
from coach_pipeline.services.classifier import ClassifierError
from coach_pipeline.services.crisis_detector import (
    CrisisDetector,
    crisis_response_text,
    has_ambiguity_phrase,
    match_crisis_phrase,
)


def _detect(detector, message, recent=()):
    return asyncio.run(detector.detect(message, list(recent)))


def test_keyword_match_short_circuits_without_classifier(config, fake_classifier):
    clf = fake_classifier()
    det = CrisisDetector(clf, config)
    r = _detect(det, "Sometimes I think I should just kill myself")
    assert r.crisis_detected is True
    assert r.confidence == 0.9
    assert r.category == CrisisCategory.SELF_HARM
    assert r.indicators == ["kill myself"]
    assert clf.calls == []


def test_want_to_die_is_suicidal_ideation(config, fake_classifier):
    det = CrisisDetector(fake_classifier(), config)
    r = _detect(det, "I want to die")
    assert r.crisis_detected is True
    assert r.category == CrisisCategory.SUICIDAL_IDEATION


def test_curly_apostrophe_still_matches():
    hit = match_crisis_phrase("I can’t go on like this")
    assert hit is not None
    assert hit[1] == CrisisCategory.SUICIDAL_IDEATION
    assert has_ambiguity_phrase("I don’t see the point anymore")


def test_plain_message_returns_safe_default(config, fake_classifier):
    clf = fake_classifier()
    det = CrisisDetector(clf, config)
    r = _detect(det, "I want to get better at public speaking")
    assert r.crisis_detected is False
    assert r.confidence == 0.0
    assert r.category == CrisisCategory.NONE
    assert r.indicators == []
    assert clf.calls == []


def test_ambiguity_runs_classifier_and_detects(config, fake_classifier):
    clf = fake_classifier({
        "crisis_classifier": '{"crisis": true, "confidence": 0.72, "category": "severe_distress", "reasoning": "hopelessness"}'
    })
    det = CrisisDetector(clf, config)
    r = _detect(det, "Everything feels hopeless lately")
    assert clf.labels() == ["crisis_classifier"]
    assert r.crisis_detected is True
    assert r.confidence == 0.72
    assert r.category == CrisisCategory.SEVERE_DISTRESS
    assert r.indicators == ["hopelessness"]


def test_ambiguity_in_recent_user_turn_triggers_classifier(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": '{"crisis": false, "confidence": 0.1}'})
    det = CrisisDetector(clf, config)
    recent = [
        {"role": "user", "content": "nothing matters anymore"},
        {"role": "assistant", "content": "I hear you."},
    ]
    r = _detect(det, "anyway, what should I eat", recent)
    assert clf.labels() == ["crisis_classifier"]
    assert r.crisis_detected is False
    assert r.category == CrisisCategory.NONE


def test_below_threshold_forces_category_none(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": '{"crisis": true, "confidence": 0.59, "category": "abuse"}'})
    r = _detect(CrisisDetector(clf, config), "I feel trapped")
    assert r.crisis_detected is False
    assert r.confidence == 0.59
    assert r.category == CrisisCategory.NONE


def test_threshold_is_inclusive(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": '{"confidence": 0.6, "category": "abuse"}'})
    r = _detect(CrisisDetector(clf, config), "I feel trapped")
    assert r.crisis_detected is True
    assert r.category == CrisisCategory.ABUSE


def test_unknown_category_coerced_to_none(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": '{"confidence": 0.95, "category": "existential"}'})
    r = _detect(CrisisDetector(clf, config), "I feel worthless")
    assert r.crisis_detected is True
    assert r.category == CrisisCategory.NONE


def test_fenced_json_is_accepted(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": 'Verdict:\n```json\n{"confidence": 0.8, "category": "self_harm"}\n```'})
    r = _detect(CrisisDetector(clf, config), "I'm falling apart")
    assert r.crisis_detected is True
    assert r.category == CrisisCategory.SELF_HARM


def test_fail_open_on_classifier_error(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": ClassifierError("timeout")})
    r = _detect(CrisisDetector(clf, config), "I feel hopeless")
    assert r.crisis_detected is False
    assert r.confidence == 0.0


def test_fail_open_on_unparseable_output(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": "I think the user is fine."})
    r = _detect(CrisisDetector(clf, config), "I feel hopeless")
    assert r.crisis_detected is False


def test_fail_open_on_out_of_range_or_string_confidence(config, fake_classifier):
    for body in ('{"confidence": 1.4}', '{"confidence": "0.9"}', '{"category": "abuse"}', '{"confidence": true}'):
        clf = fake_classifier({"crisis_classifier": body})
        r = _detect(CrisisDetector(clf, config), "I feel hopeless")
        assert r.crisis_detected is False, body
        assert r.confidence == 0.0, body


def test_unexpected_exception_fails_open(config, fake_classifier):
    clf = fake_classifier({"crisis_classifier": lambda turns: 1 / 0})
    r = _detect(CrisisDetector(clf, config), "I feel hopeless")
    assert r.crisis_detected is False


def test_crisis_response_lists_resources():
    text = crisis_response_text()
    assert "988" in text
    assert "Text HOME to 741741" in text
    assert "{resources}" not in text
