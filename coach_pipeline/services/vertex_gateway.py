from typing import Callable, Dict, List, Optional, Tuple

from ..vertex import VertexClient as DefaultVertexClient


class VertexGateway:
    """Thin wrapper around VertexClient providing model fallback.

    The selection's model is tried first, then each configured fallback in
    order. The last error is re-raised when every model fails.
    """

    def __init__(
        self,
        project: Optional[str],
        region: str,
        primary_model: str,
        fallbacks: Optional[List[str]] = None,
        client_cls=None,
    ) -> None:
        self.project = project
        self.region = region
        self.primary_model = primary_model
        self.fallbacks = [m for m in (fallbacks or []) if m and m != primary_model]
        self.client_cls = client_cls or DefaultVertexClient
        self.last_model_used: Optional[str] = None

    def models_to_try(self) -> List[str]:
        return [self.primary_model] + self.fallbacks

    @staticmethod
    def _normalize_result(result) -> Tuple[str, dict]:
        # Clients return (text, meta); tolerate bare strings from simple fakes
        if isinstance(result, tuple) and len(result) == 2:
            return str(result[0]), dict(result[1] or {})
        return str(result), {}

    def generate(
        self,
        turns: List[Dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        response_mime_type: Optional[str] = None,
        response_schema: Optional[dict] = None,
        timeout: Optional[float] = None,
        log_fallback: Optional[Callable[[str], None]] = None,
    ) -> Tuple[str, dict]:
        last_err = None
        for mid in self.models_to_try():
            client = self.client_cls(project=self.project, region=self.region, model_id=mid)
            try:
                result = client.generate(
                    turns,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    response_mime_type=response_mime_type,
                    response_schema=response_schema,
                    timeout=timeout,
                )
                self.last_model_used = mid
                return self._normalize_result(result)
            except Exception as e:
                last_err = e
                if log_fallback:
                    log_fallback(mid)
                continue
        if last_err:
            raise last_err
        raise RuntimeError("Vertex call failed with no models attempted")
