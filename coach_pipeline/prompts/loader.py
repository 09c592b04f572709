"""Prompt templates shipped as package data next to this module."""
from __future__ import annotations

from functools import lru_cache
from importlib import resources
from typing import Any

PROMPTS_PACKAGE = "coach_pipeline.prompts"


@lru_cache(maxsize=None)
def _read_template(package: str, name: str) -> str:
    return resources.files(package).joinpath(name).read_text(encoding="utf-8")


def load_text(name: str, package: str = PROMPTS_PACKAGE) -> str:
    """Return a template as-is, for system instructions with no placeholders."""
    return _read_template(package, name).strip()


def load_and_render(name: str, package: str = PROMPTS_PACKAGE, **fields: Any) -> str:
    """Fill a template's {placeholders}; literal braces in templates are doubled.

    Callers sanitise user-derived values before passing them in.
    """
    return _read_template(package, name).format(**fields).strip()


__all__ = ["PROMPTS_PACKAGE", "load_text", "load_and_render"]
