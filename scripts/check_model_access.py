#!/usr/bin/env python3
"""
Check that every routing tier's model is reachable from this environment.

Reads the same environment as the service (PROJECT_ID, VERTEX_LOCATION,
TIER_<NAME>_MODEL, TIER_BACKGROUND_MODEL), lists the google publisher models
visible to the ADC principal, then sends a one-line prompt to each distinct
tier model.

Usage:
  export PROJECT_ID=my-project
  export VERTEX_LOCATION=us-central1
  python scripts/check_model_access.py

Exit codes:
  0 = every tier model generated
  1 = at least one tier model failed
  2 = configuration/auth issue (missing env or ADC)
"""
from __future__ import annotations

import json
import sys
from typing import Dict, List

import google.auth
import vertexai
from google.auth.transport.requests import AuthorizedSession
from vertexai.generative_models import GenerativeModel

from coach_pipeline.config import config_from_env

API_TMPL = "https://{host}/v1/projects/{project}/locations/{region}/publishers/google/models"


def _host(region: str) -> str:
    return "aiplatform.googleapis.com" if region.lower() == "global" else f"{region}-aiplatform.googleapis.com"


def list_gemini_models(project: str, region: str, session: AuthorizedSession) -> List[str]:
    resp = session.get(API_TMPL.format(host=_host(region), project=project, region=region))
    if resp.status_code != 200:
        raise RuntimeError(f"List models failed: HTTP {resp.status_code}: {resp.text}")
    ids = [m.get("name", "").split("/models/")[-1] for m in resp.json().get("models", [])]
    return [i for i in ids if i.startswith("gemini-")]


def tier_models() -> Dict[str, List[str]]:
    """model_id -> tiers that use it."""
    cfg = config_from_env()
    tiers = {
        "primary": cfg.primary_tier,
        "discovery": cfg.discovery_tier,
        "escalation": cfg.escalation_tier,
        "safety": cfg.safety_tier,
    }
    tiers.update({f"background:{k}": v for k, v in cfg.background_tiers.items()})
    by_model: Dict[str, List[str]] = {}
    for name, tier in tiers.items():
        by_model.setdefault(tier.model_id, []).append(name)
    return by_model


def try_generate(model_id: str) -> str:
    resp = GenerativeModel(model_id).generate_content("Reply with the single word: ready")
    text = getattr(resp, "text", None)
    if not text:
        raise RuntimeError("No text candidates returned from model")
    return text.strip()


def main() -> int:
    cfg = config_from_env()
    if not cfg.project_id:
        print("[check] PROJECT_ID is not set. export PROJECT_ID and retry.", file=sys.stderr)
        return 2
    region = cfg.vertex_location

    try:
        creds, _ = google.auth.default(scopes=["https://www.googleapis.com/auth/cloud-platform"])
        session = AuthorizedSession(creds)
    except Exception as e:
        print(f"[check] Could not obtain ADC credentials: {e}. Run: gcloud auth application-default login", file=sys.stderr)
        return 2

    print(f"[check] Project={cfg.project_id} location={region}")
    try:
        visible = list_gemini_models(cfg.project_id, region, session)
        print(json.dumps({"geminiModels": visible}, indent=2))
    except Exception as e:
        print(f"[check] ERROR listing models: {e}", file=sys.stderr)

    vertexai.init(project=cfg.project_id, location=region)
    failures = 0
    for model_id, tiers in tier_models().items():
        print(f"[check] {model_id} (tiers: {', '.join(tiers)})")
        try:
            print(f"[check]   SUCCESS: {try_generate(model_id)}")
        except Exception as e:
            failures += 1
            print(f"[check]   FAILED: {e}")

    if failures:
        print("[check] Some tier models failed. Ensure the ADC principal has roles/aiplatform.user and the model exists in this location.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
