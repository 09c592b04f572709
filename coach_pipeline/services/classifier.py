"""
Async classifier/generator capability backed by Vertex AI.

All pipeline components talk to the language model through ClassifierClient:
role-tagged turns in, text plus token usage out. Transport failures
(non-2xx, timeout, missing configuration) surface as ClassifierError so each
component can map them onto its own safe default.
"""
from __future__ import annotations

import asyncio
import functools
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..config import PipelineConfig
from ..models import ChatMessage, ModelSelection
from ..telemetry.events import log_event
from .bounded import run_bounded

TurnLike = Union[ChatMessage, Dict[str, str]]

_FENCE_RE = re.compile(r"```\s*(json5?)?\s*\n?(.*?)```", re.IGNORECASE | re.DOTALL)


class ClassifierError(Exception):
    """The classifier could not be reached or returned an unusable response."""


@dataclass
class Completion:
    text: str
    model: Optional[str] = None
    usage: Dict[str, Any] = field(default_factory=dict)


def extract_json_payload(text: Optional[str]) -> Optional[Any]:
    """Extract a JSON value from a model response.

    Strategy:
    1) the whole (stripped) text parses as JSON
    2) fenced code blocks, labeled ```json first, then unlabeled
    3) the first decodable JSON object embedded in surrounding prose

    Returns the decoded Python object or None.
    """
    if not text:
        return None
    s = text.strip()
    try:
        return json.loads(s)
    except ValueError:
        pass

    matches = _FENCE_RE.findall(s)
    for lang, body in sorted(matches, key=lambda m: 0 if m[0] else 1):
        try:
            return json.loads(body.strip())
        except ValueError:
            continue

    decoder = json.JSONDecoder()
    idx = s.find("{")
    while idx != -1:
        try:
            obj, _end = decoder.raw_decode(s, idx)
            return obj
        except ValueError:
            idx = s.find("{", idx + 1)
    return None


def _as_turn(t: TurnLike) -> Dict[str, str]:
    if isinstance(t, ChatMessage):
        return {"role": t.role, "content": t.content}
    return {"role": str(t.get("role") or "user"), "content": str(t.get("content") or "")}


class ClassifierClient:
    def __init__(
        self,
        config: PipelineConfig,
        *,
        client_cls=None,
        gateway_cls=None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.client_cls = client_cls
        self.gateway_cls = gateway_cls
        self.logger = logger or logging.getLogger("coach_pipeline.classifier")

    def _gateway(self, selection: ModelSelection):
        if self.gateway_cls is None:
            from .vertex_gateway import VertexGateway

            gateway_cls = VertexGateway
        else:
            gateway_cls = self.gateway_cls
        return gateway_cls(
            project=self.config.project_id,
            region=self.config.vertex_location,
            primary_model=selection.model_id,
            fallbacks=self.config.model_fallbacks,
            client_cls=self.client_cls,
        )

    async def complete(
        self,
        messages: Sequence[TurnLike],
        selection: ModelSelection,
        *,
        label: str,
        response_schema: Optional[dict] = None,
    ) -> Completion:
        """Send turns to the selected model and return the text completion.

        Raises ClassifierError on any transport failure or timeout.
        """
        if not self.config.project_id and self.client_cls is None and self.gateway_cls is None:
            raise ClassifierError("PROJECT_ID not configured")

        turns = [_as_turn(m) for m in messages]
        gateway = self._gateway(selection)

        def _on_fallback(failed_mid: str) -> None:
            log_event(self.logger, "vertex_model_fallback", path=label, failedModel=failed_mid)

        timeout = self.config.classifier_timeout_seconds
        # Transport timeout matches the wait_for budget
        call = functools.partial(
            gateway.generate,
            turns,
            temperature=selection.temperature,
            max_tokens=selection.max_output_tokens,
            response_mime_type="application/json" if response_schema else None,
            response_schema=response_schema,
            timeout=timeout,
            log_fallback=_on_fallback,
        )
        try:
            text, meta = await run_bounded(
                call,
                timeout=timeout,
                label=label,
                slow_after=self.config.slow_call_seconds,
                logger=self.logger,
            )
        except asyncio.TimeoutError as e:
            raise ClassifierError(f"{label}: classifier timed out after {timeout}s") from e
        except Exception as e:
            raise ClassifierError(f"{label}: {e}") from e

        usage = {
            "promptTokens": meta.get("promptTokens"),
            "completionTokens": meta.get("candidatesTokens"),
            "totalTokens": meta.get("totalTokens"),
        }
        model = getattr(gateway, "last_model_used", None) or selection.model_id
        return Completion(text=text or "", model=model, usage=usage)

    async def complete_json(
        self,
        messages: Sequence[TurnLike],
        selection: ModelSelection,
        *,
        label: str,
        response_schema: Optional[dict] = None,
    ) -> Tuple[Optional[Any], Completion]:
        """Like complete(), plus the decoded JSON payload (None when the body is not JSON)."""
        completion = await self.complete(messages, selection, label=label, response_schema=response_schema)
        return extract_json_payload(completion.text), completion


__all__ = ["ClassifierError", "Completion", "ClassifierClient", "extract_json_payload"]
