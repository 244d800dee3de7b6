from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_REDIRECT_URL = "https://www.fimall.lol/"


class FallbackModel(BaseModel):
    """Static catalog entry used when live discovery of ``source`` fails."""

    id: str
    source: str

    @field_validator("id", "source")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Value must be a non-empty string.")
        return normalized


class ProxyConfig(BaseModel):
    upstreams: list[str] = Field(default_factory=list)
    redirect_url: str = DEFAULT_REDIRECT_URL
    fallback_models: list[FallbackModel] = Field(default_factory=list)

    @field_validator("upstreams", mode="before")
    @classmethod
    def _coerce_upstreams(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            raise ValueError("Expected 'upstreams' to be a list of base URLs.")
        cleaned: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("Upstream base URLs must be strings.")
            normalized = item.strip()
            if normalized:
                cleaned.append(normalized)
        return cleaned

    @model_validator(mode="after")
    def _check_fallback_sources(self) -> ProxyConfig:
        known = set(self.upstreams)
        for fallback in self.fallback_models:
            if fallback.source not in known:
                raise ValueError(
                    f"Fallback model '{fallback.id}' references unknown upstream "
                    f"'{fallback.source}'."
                )
        return self

    def fallbacks_for(self, source_key: str) -> list[FallbackModel]:
        return [item for item in self.fallback_models if item.source == source_key]


def load_proxy_config(config_path: str | Path) -> ProxyConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Proxy config not found at '{config_path}'. "
            "Create it or set PROXY_CONFIG_PATH."
        )

    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")

    return ProxyConfig.model_validate(raw)
