import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Ensure project root is on sys.path for `import coach_pipeline.*`
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from coach_pipeline.config import default_config  # noqa: E402
from coach_pipeline.services.classifier import ClassifierError, Completion, extract_json_payload  # noqa: E402
from coach_pipeline.store import InMemoryRowStore, StoreError  # noqa: E402


class FakeClassifier:
    """Stands in for ClassifierClient.

    `responses` maps a call label (crisis_classifier, domain_classifier,
    pattern_synthesis, chat_reply) to the raw text to return, an exception
    to raise, or a callable receiving the turns.
    """

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def labels(self):
        return [c[0] for c in self.calls]

    async def complete(self, messages, selection, *, label, response_schema=None):
        self.calls.append((label, list(messages), selection))
        r = self.responses.get(label)
        if isinstance(r, Exception):
            raise r
        if callable(r):
            r = r(messages)
        if r is None:
            raise ClassifierError(f"{label}: no scripted response")
        return Completion(text=r, model=selection.model_id, usage={"totalTokens": 10})

    async def complete_json(self, messages, selection, *, label, response_schema=None):
        c = await self.complete(messages, selection, label=label, response_schema=response_schema)
        return extract_json_payload(c.text), c


class FlakyStore(InMemoryRowStore):
    """In-memory store whose named operations raise StoreError."""

    def __init__(self, failing=()):
        super().__init__()
        self.failing = set(failing)

    def _maybe_fail(self, op):
        if op in self.failing:
            raise StoreError(f"{op} unavailable")

    def select(self, *a, **kw):
        self._maybe_fail("select")
        return super().select(*a, **kw)

    def select_one(self, *a, **kw):
        self._maybe_fail("select_one")
        return super().select_one(*a, **kw)

    def count(self, *a, **kw):
        self._maybe_fail("count")
        return super().count(*a, **kw)

    def insert(self, *a, **kw):
        self._maybe_fail("insert")
        return super().insert(*a, **kw)

    def update(self, *a, **kw):
        self._maybe_fail("update")
        return super().update(*a, **kw)

    def increment(self, *a, **kw):
        self._maybe_fail("increment")
        return super().increment(*a, **kw)

    def replace(self, *a, **kw):
        self._maybe_fail("replace")
        return super().replace(*a, **kw)


def iso_ago(**delta) -> str:
    return (datetime.now(timezone.utc) - timedelta(**delta)).isoformat()


@pytest.fixture
def config():
    return default_config()


@pytest.fixture
def store():
    return InMemoryRowStore()


@pytest.fixture
def fake_classifier():
    return FakeClassifier


@pytest.fixture
def flaky_store():
    return FlakyStore


@pytest.fixture
def ago():
    return iso_ago
