from typing import Optional, Tuple, List, Dict, Any
import logging
import os
import warnings
import json

from google.api_core import exceptions as gax_exceptions
import google.auth
from google.auth.transport.requests import AuthorizedSession
from vertexai import init as vertex_init
from vertexai.generative_models import Content, GenerationConfig, GenerativeModel, Part

# Configurable behavior via env vars
SUPPRESS_VERTEXAI_DEPRECATION = os.getenv("SUPPRESS_VERTEXAI_DEPRECATION", "true").lower() == "true"
# Default to REST for forward-compatibility and better control over response MIME
USE_VERTEX_REST = os.getenv("USE_VERTEX_REST", "true").lower() == "true"

# Optionally suppress the Vertex SDK deprecation warning noise
if SUPPRESS_VERTEXAI_DEPRECATION:
    warnings.filterwarnings(
        "ignore",
        message="This feature is deprecated as of",
        category=UserWarning,
        module="vertexai.generative_models._generative_models",
    )

# Vertex uses "model" for the assistant role
_ROLE_MAP = {"user": "user", "assistant": "model", "model": "model"}


class VertexAIError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def split_turns(turns: List[Dict[str, str]]) -> Tuple[Optional[str], List[Dict[str, str]]]:
    """Separate the system instruction from conversation turns.

    Multiple system turns are joined with a blank line; the remaining turns
    keep their order with roles mapped to Vertex names.
    """
    system_parts: List[str] = []
    convo: List[Dict[str, str]] = []
    for t in turns or []:
        role = (t.get("role") or "user").lower()
        content = t.get("content") or ""
        if role == "system":
            if content:
                system_parts.append(content)
            continue
        convo.append({"role": _ROLE_MAP.get(role, "user"), "content": content})
    return ("\n\n".join(system_parts) or None), convo


class VertexClient:
    def __init__(self, project: str, region: str, model_id: str):
        self.logger = logging.getLogger("coach_pipeline.vertex")
        self.project = project
        self.region = region
        self.model_id = model_id

    @staticmethod
    def _sanitize_response_schema(schema: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Return a copy of the schema with any $-prefixed meta-keys removed.
        Vertex AI responseSchema does not accept "$schema" or other $-draft keys.
        """
        if not schema:
            return None

        def _clean(obj):
            if isinstance(obj, dict):
                return {k: _clean(v) for k, v in obj.items() if not (isinstance(k, str) and k.startswith("$"))}
            if isinstance(obj, list):
                return [_clean(x) for x in obj]
            return obj

        cleaned = _clean(schema)
        return cleaned if isinstance(cleaned, dict) and cleaned else None

    def _host(self) -> str:
        loc = self.region
        return "aiplatform.googleapis.com" if str(loc).lower() == "global" else f"{loc}-aiplatform.googleapis.com"

    def generate(
        self,
        turns: List[Dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        response_mime_type: Optional[str] = None,
        response_schema: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[str, dict]:
        """Generate a completion for role-tagged turns.

        Returns (text, meta) where meta carries finishReason and token usage
        (promptTokens, candidatesTokens, totalTokens).
        """
        system_instruction, convo = split_turns(turns)
        if not convo:
            raise VertexAIError("No conversation turns to send", status_code=400)
        if USE_VERTEX_REST:
            return self._generate_rest(convo, system_instruction, temperature, max_tokens, response_mime_type, response_schema, timeout)
        return self._generate_sdk(convo, system_instruction, temperature, max_tokens, response_mime_type, response_schema)

    def _generate_sdk(
        self,
        convo: List[Dict[str, str]],
        system_instruction: Optional[str],
        temperature: float,
        max_tokens: int,
        response_mime_type: Optional[str],
        response_schema: Optional[Dict[str, Any]],
    ) -> Tuple[str, dict]:
        try:
            self.logger.debug("vertex_init(project=%s, region=%s)", self.project, self.region)
            vertex_init(project=self.project, location=self.region)
            model = GenerativeModel(self.model_id, system_instruction=system_instruction)
            _resp_mime = response_mime_type or "text/plain"
            config = GenerationConfig(
                temperature=temperature,
                max_output_tokens=max_tokens,
                response_mime_type=_resp_mime,
                response_schema=self._sanitize_response_schema(response_schema) if _resp_mime == "application/json" else None,
            )
            contents = [Content(role=t["role"], parts=[Part.from_text(t["content"])]) for t in convo]
            resp = model.generate_content(contents, generation_config=config)

            txt = ""
            cands = getattr(resp, "candidates", None) or []
            for c in cands:
                parts = getattr(getattr(c, "content", None), "parts", None) or []
                txt = "".join(getattr(p, "text", "") or "" for p in parts)
                if txt:
                    break
            fr = getattr(cands[0], "finish_reason", None) if cands else None
            usage_md = getattr(resp, "usage_metadata", None)
            meta = {
                "model": self.model_id,
                "transport": "sdk",
                "finishReason": getattr(fr, "name", fr),
                "promptTokens": getattr(usage_md, "prompt_token_count", None),
                "candidatesTokens": getattr(usage_md, "candidates_token_count", None),
                "totalTokens": getattr(usage_md, "total_token_count", None),
            }
            if not txt.strip():
                raise VertexAIError("No text candidates returned from model (possibly safety blocked)")
            return txt.strip(), meta
        except VertexAIError:
            raise
        except gax_exceptions.NotFound as e:
            raise VertexAIError(f"Vertex AI API error: {e}", status_code=404) from e
        except (gax_exceptions.GoogleAPICallError, gax_exceptions.RetryError) as e:
            code = getattr(e, "code", None)
            raise VertexAIError(f"Vertex AI API error: {e}", status_code=code if isinstance(code, int) else None) from e
        except Exception as e:
            self.logger.exception("Vertex client unexpected error")
            raise VertexAIError(str(e)) from e

    def _generate_rest(
        self,
        convo: List[Dict[str, str]],
        system_instruction: Optional[str],
        temperature: float,
        max_tokens: int,
        response_mime_type: Optional[str],
        response_schema: Optional[Dict[str, Any]],
        timeout: Optional[float],
    ) -> Tuple[str, dict]:
        """Generate using REST generateContent to avoid the deprecated SDK surface."""
        try:
            creds, _ = google.auth.default(scopes=["https://www.googleapis.com/auth/cloud-platform"])
            session = AuthorizedSession(creds)
            # Gemini 2.x models are exposed under v1beta; others can use v1
            api_version = "v1beta" if str(self.model_id).startswith("gemini-2") else "v1"
            base_url = (
                f"https://{self._host()}/{api_version}/projects/{self.project}/locations/{self.region}"
                f"/publishers/google/models/{self.model_id}:generateContent"
            )
            self.logger.debug(json.dumps({"event": "vertex_rest_generate", "baseUrl": base_url, "modelId": self.model_id}))

            _resp_mime = response_mime_type or "text/plain"
            body: Dict[str, Any] = {
                "contents": [{"role": t["role"], "parts": [{"text": t["content"]}]} for t in convo],
                "generationConfig": {
                    "temperature": temperature,
                    "maxOutputTokens": max_tokens,
                    "responseMimeType": _resp_mime,
                },
            }
            if response_schema and _resp_mime == "application/json":
                _san = self._sanitize_response_schema(response_schema)
                if _san:
                    body["generationConfig"]["responseSchema"] = _san
            if system_instruction:
                body["systemInstruction"] = {"role": "system", "parts": [{"text": system_instruction}]}

            r = session.post(base_url, json=body, timeout=timeout)
            if r.status_code == 404:
                # Retry once on the other API version before giving up
                alt_url = base_url.replace("/v1beta/", "/v1/", 1) if "/v1beta/" in base_url else base_url.replace("/v1/", "/v1beta/", 1)
                r = session.post(alt_url, json=body, timeout=timeout)
                self.logger.info(json.dumps({"event": "vertex_rest_generate_fallback", "to": alt_url, "status": r.status_code}))
                if r.status_code == 404:
                    raise VertexAIError("Model not found: HTTP 404", status_code=404)
            if r.status_code >= 400:
                raise VertexAIError(f"Vertex REST error HTTP {r.status_code}: {r.text}", status_code=r.status_code)

            data = r.json()
            cands = data.get("candidates", [])
            txt = ""
            if cands:
                for p in (cands[0].get("content") or {}).get("parts") or []:
                    txt += p.get("text") or ""
            usage = data.get("usageMetadata") or {}
            meta = {
                "model": self.model_id,
                "transport": "rest",
                "finishReason": cands[0].get("finishReason") if cands else None,
                "promptTokens": usage.get("promptTokenCount"),
                "candidatesTokens": usage.get("candidatesTokenCount"),
                "totalTokens": usage.get("totalTokenCount"),
            }
            return txt.strip(), meta
        except VertexAIError:
            raise
        except Exception as e:
            self.logger.exception("Vertex REST unexpected error")
            raise VertexAIError(str(e)) from e
