"""Application configuration loading utilities."""

from __future__ import annotations

import os
import pathlib
from functools import lru_cache
from typing import Any, Dict, List

import yaml
from pydantic import BaseModel, ConfigDict, Field

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "config" / "providers.yaml"


class ProviderModel(BaseModel):
    """Provider record as seen by adapters; read-only at request time."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    display_name: str
    enabled: bool = True
    adapter: str
    endpoint: str
    default_model: str | None = None
    options: Dict[str, Any] = Field(default_factory=dict)


class DispatchSettings(BaseModel):
    request_timeout_seconds: float = Field(default=120.0, gt=0)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    sweep_enabled: bool = True
    default_rate_limit_cooldown_seconds: int = Field(default=3600, gt=0)


class AppConfig(BaseModel):
    providers: List[ProviderModel] = Field(default_factory=list)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)


def _config_path() -> pathlib.Path:
    configured = os.getenv("CHATRELAY_CONFIG")
    return pathlib.Path(configured) if configured else DEFAULT_CONFIG_PATH


@lru_cache(maxsize=1)
def load_config(path: pathlib.Path | None = None) -> AppConfig:
    """Load provider catalogue and dispatch settings from YAML.

    A missing file yields the built-in defaults with an empty catalogue.
    """
    config_path = path or _config_path()
    if not config_path.exists():
        return AppConfig()
    raw = yaml.safe_load(config_path.read_text()) or {}
    return AppConfig(**raw)
