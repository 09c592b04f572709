"""
Domain configuration registry.

Each coaching domain is described by one JSON file under domain_configs/.
The registry is loaded once and handed to the router and prompt assembly;
reload() re-reads the directory explicitly. Unknown or disabled domains
resolve to the general config, which always exists even when general.json
is missing.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .models import CoachingDomain
from .telemetry.events import log_event

DEFAULT_CONFIG_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "domain_configs")


class DomainConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = ""
    description: str = ""
    system_prompt_addition: str = ""
    tone: str = ""
    methodology: str = ""
    personality: str = ""
    domain_keywords: List[str] = Field(default_factory=list)
    focus_areas: List[str] = Field(default_factory=list)
    enabled: bool = True
    guardrails: Optional[str] = None


GENERAL_FALLBACK = DomainConfig(
    id="general",
    name="General Coaching",
    description="Broad personal coaching covering any topic",
    tone="warm, supportive, curious",
    methodology="active listening, open-ended questions, reflective coaching",
    personality="empathetic coach who adapts to whatever the user needs",
)


class DomainConfigRegistry:
    def __init__(self, config_dir: Optional[str] = None, logger: Optional[logging.Logger] = None) -> None:
        self.config_dir = config_dir or DEFAULT_CONFIG_DIR
        self.logger = logger or logging.getLogger("coach_pipeline.domains")
        self._configs: Dict[str, DomainConfig] = {}
        self.reload()

    def reload(self) -> None:
        configs: Dict[str, DomainConfig] = {}
        try:
            names = sorted(os.listdir(self.config_dir))
        except OSError as e:
            log_event(self.logger, "domain_configs_unreadable", level="error", dir=self.config_dir, error=str(e))
            names = []

        for name in names:
            if not name.endswith(".json"):
                continue
            path = os.path.join(self.config_dir, name)
            try:
                with open(path, "r", encoding="utf-8") as f:
                    cfg = DomainConfig.model_validate(json.load(f))
            except (OSError, ValueError, ValidationError) as e:
                log_event(self.logger, "domain_config_invalid", level="warning", file=name, error=str(e))
                continue
            configs[cfg.id] = cfg

        if "general" not in configs:
            log_event(self.logger, "domain_config_general_fallback", level="warning")
            configs["general"] = GENERAL_FALLBACK
        self._configs = configs

    def get(self, domain) -> DomainConfig:
        """Config for `domain`; unknown, missing or disabled domains get the general config."""
        key = domain.value if isinstance(domain, CoachingDomain) else str(domain or "")
        cfg = self._configs.get(key)
        if cfg is not None and cfg.enabled:
            return cfg
        return self._configs.get("general", GENERAL_FALLBACK)

    def keywords(self, domain) -> List[str]:
        return list(self.get(domain).domain_keywords)

    def enabled_configs(self) -> Dict[str, DomainConfig]:
        return {k: v for k, v in self._configs.items() if v.enabled}

    def all(self) -> Dict[str, DomainConfig]:
        return dict(self._configs)


__all__ = ["DomainConfig", "DomainConfigRegistry", "GENERAL_FALLBACK", "DEFAULT_CONFIG_DIR"]
