import pytest

from coach_pipeline.services.vertex_gateway import VertexGateway


class FakeClient:
    calls = []
    behavior = {}

    def __init__(self, project, region, model_id):
        self.project = project
        self.region = region
        self.model_id = model_id

    def generate(self, turns, **kwargs):
        FakeClient.calls.append((self.model_id, turns, kwargs))
        action = FakeClient.behavior.get(self.model_id)
        if action is None:
            return ("ok from %s" % self.model_id, {"totalTokens": 3})
        if isinstance(action, Exception):
            raise action
        return action


def setup_function(fn):
    FakeClient.calls = []
    FakeClient.behavior = {}


TURNS = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]


def _generate(gw, **kw):
    return gw.generate(TURNS, temperature=0.0, max_tokens=10, **kw)


def test_fallback_order_and_last_model_used():
    FakeClient.behavior = {"primary": RuntimeError("boom")}
    gw = VertexGateway(project="p", region="r", primary_model="primary", fallbacks=["fallback"], client_cls=FakeClient)

    order = []
    text, meta = _generate(gw, log_fallback=order.append)
    assert text == "ok from fallback"
    assert meta == {"totalTokens": 3}
    assert order == ["primary"]
    assert [c[0] for c in FakeClient.calls] == ["primary", "fallback"]
    assert gw.last_model_used == "fallback"


def test_schema_and_timeout_are_passed_through():
    gw = VertexGateway(project="p", region="r", primary_model="m", client_cls=FakeClient)
    _generate(gw, response_mime_type="application/json", response_schema={"type": "object"}, timeout=4.0)
    kwargs = FakeClient.calls[0][2]
    assert kwargs["response_mime_type"] == "application/json"
    assert kwargs["response_schema"] == {"type": "object"}
    assert kwargs["timeout"] == 4.0
    assert FakeClient.calls[0][1] == TURNS


def test_bare_string_results_are_normalised():
    FakeClient.behavior = {"m": "plain"}
    gw = VertexGateway(project="p", region="r", primary_model="m", client_cls=FakeClient)
    assert _generate(gw) == ("plain", {})


def test_duplicate_fallbacks_are_skipped():
    gw = VertexGateway(project="p", region="r", primary_model="m", fallbacks=["m", "", "n"], client_cls=FakeClient)
    assert gw.models_to_try() == ["m", "n"]


def test_all_fail_raises_last_error():
    FakeClient.behavior = {"a": RuntimeError("A"), "b": RuntimeError("B")}
    gw = VertexGateway(project="p", region="r", primary_model="a", fallbacks=["b"], client_cls=FakeClient)
    with pytest.raises(RuntimeError) as ei:
        _generate(gw)
    assert str(ei.value) == "B"
