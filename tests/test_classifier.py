import asyncio
import time

import pytest

from coach_pipeline.config import PipelineConfig
from coach_pipeline.models import ChatMessage
from coach_pipeline.services.classifier import ClassifierClient, ClassifierError, extract_json_payload
from coach_pipeline.services.model_router import select_safety_classifier_model
from coach_pipeline.vertex import VertexClient, split_turns


class FakeGateway:
    created = []
    result = ("{}", {})

    def __init__(self, project, region, primary_model, fallbacks, client_cls):
        self.kwargs = dict(project=project, region=region, primary_model=primary_model, fallbacks=fallbacks)
        self.last_model_used = primary_model
        self.calls = []
        FakeGateway.created.append(self)

    def generate(self, turns, **kwargs):
        self.calls.append((turns, kwargs))
        r = FakeGateway.result
        if isinstance(r, Exception):
            raise r
        if callable(r):
            return r()
        return r


def setup_function(fn):
    FakeGateway.created = []
    FakeGateway.result = ("{}", {})


def _client(**cfg):
    cfg.setdefault("project_id", "proj")
    return ClassifierClient(PipelineConfig(**cfg), gateway_cls=FakeGateway)


def test_extract_json_payload_strategies():
    assert extract_json_payload('{"a": 1}') == {"a": 1}
    assert extract_json_payload('```\n{"a": 2}\n```') == {"a": 2}
    assert extract_json_payload('note ```text\nnope\n``` then ```json\n{"a": 3}\n```') == {"a": 3}
    assert extract_json_payload('Sure! {"a": 4} hope that helps {"b": 5}') == {"a": 4}
    assert extract_json_payload('bad {oops} then {"a": 6}') == {"a": 6}
    assert extract_json_payload("no json here") is None
    assert extract_json_payload("") is None
    assert extract_json_payload(None) is None


def test_complete_passes_selection_and_maps_usage():
    FakeGateway.result = ("hello", {"promptTokens": 5, "candidatesTokens": 2, "totalTokens": 7})
    clf = _client(model_fallbacks=["backup"])
    sel = select_safety_classifier_model(clf.config)
    out = asyncio.run(clf.complete([ChatMessage(role="user", content="hi")], sel, label="t", response_schema={"type": "object"}))

    assert out.text == "hello"
    assert out.model == sel.model_id
    assert out.usage == {"promptTokens": 5, "completionTokens": 2, "totalTokens": 7}
    gw = FakeGateway.created[0]
    assert gw.kwargs["primary_model"] == sel.model_id
    assert gw.kwargs["fallbacks"] == ["backup"]
    turns, kwargs = gw.calls[0]
    assert turns == [{"role": "user", "content": "hi"}]
    assert kwargs["temperature"] == sel.temperature
    assert kwargs["max_tokens"] == sel.max_output_tokens
    assert kwargs["response_mime_type"] == "application/json"


def test_complete_json_returns_payload_and_completion():
    FakeGateway.result = ('```json\n{"domain": "career"}\n```', {})
    clf = _client()
    payload, completion = asyncio.run(
        clf.complete_json([{"role": "user", "content": "x"}], select_safety_classifier_model(clf.config), label="t")
    )
    assert payload == {"domain": "career"}
    assert completion.text.startswith("```json")


def test_transport_errors_become_classifier_error():
    FakeGateway.result = RuntimeError("HTTP 503")
    clf = _client()
    with pytest.raises(ClassifierError):
        asyncio.run(clf.complete([{"role": "user", "content": "x"}], select_safety_classifier_model(clf.config), label="t"))


def test_timeout_becomes_classifier_error():
    FakeGateway.result = lambda: time.sleep(0.5) or ("late", {})
    clf = _client(classifier_timeout_seconds=0.05)
    with pytest.raises(ClassifierError) as ei:
        asyncio.run(clf.complete([{"role": "user", "content": "x"}], select_safety_classifier_model(clf.config), label="t"))
    assert "timed out" in str(ei.value)


def test_missing_project_without_injection_is_an_error():
    clf = ClassifierClient(PipelineConfig(project_id=None))
    with pytest.raises(ClassifierError):
        asyncio.run(clf.complete([{"role": "user", "content": "x"}], select_safety_classifier_model(clf.config), label="t"))


def test_split_turns_extracts_system_and_maps_roles():
    system, convo = split_turns([
        {"role": "system", "content": "a"},
        {"role": "user", "content": "hi"},
        {"role": "system", "content": "b"},
        {"role": "assistant", "content": "hello"},
    ])
    assert system == "a\n\nb"
    assert convo == [{"role": "user", "content": "hi"}, {"role": "model", "content": "hello"}]
    assert split_turns([{"role": "user", "content": "x"}])[0] is None


def test_response_schema_meta_keys_are_removed():
    cleaned = VertexClient._sanitize_response_schema({"$schema": "x", "type": "object", "properties": {"a": {"$id": "y", "type": "string"}}})
    assert cleaned == {"type": "object", "properties": {"a": {"type": "string"}}}
    assert VertexClient._sanitize_response_schema(None) is None


def test_transport_receives_the_classifier_timeout():
    FakeGateway.result = ("ok", {})
    clf = _client(classifier_timeout_seconds=7)
    asyncio.run(clf.complete([{"role": "user", "content": "x"}], select_safety_classifier_model(clf.config), label="t"))
    _, kwargs = FakeGateway.created[0].calls[0]
    assert kwargs["timeout"] == 7
    assert callable(kwargs["log_fallback"])
