"""Engine settings (evaluation policy, talk-control limits, LLM connection).

get_settings() returns defaults merged with the stored settings.json and
then with STORY_* environment overrides (app.py loads .env into the
environment at import).
update_settings() applies a partial update and persists it; nested
sections are merged key-by-key, scalars overwritten.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from story_orchestrator.llm import ProviderFormat

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_TURNS = 3
MIN_INTERVAL_TURNS = 1
MAX_INTERVAL_TURNS = 99

_ENV_MAP = {
    "STORY_LLM_URL": ("llm", "provider_url"),
    "STORY_LLM_API_KEY": ("llm", "api_key"),
    "STORY_LLM_FORMAT": ("llm", "provider_format"),
    "STORY_LLM_MODEL": ("llm", "model"),
    "STORY_INTERVAL_TURNS": ("interval_turns",),
}


class LLMConnection(BaseModel):
    provider_url: str = "http://localhost:5001"
    api_key: str = ""
    provider_format: ProviderFormat = "koboldcpp"
    model: str = ""
    timeout: float = 120.0


class Settings(BaseModel):
    interval_turns: int = Field(default=DEFAULT_INTERVAL_TURNS, ge=MIN_INTERVAL_TURNS, le=MAX_INTERVAL_TURNS)
    arbiter_response_length: int = Field(default=256, ge=16)
    arbiter_prompt: str = ""  # extra instructions appended to the judgment prompt
    snapshot_messages: int = Field(default=10, ge=1)
    snapshot_text_limit: int = Field(default=300, ge=20)
    talk_control_enabled: bool = True
    talk_control_flush_guard: int = Field(default=20, ge=1)
    talk_control_response_length: int = Field(default=200, ge=16)
    llm: LLMConnection = Field(default_factory=LLMConnection)


def clamp_interval(value: Any) -> int:
    """Coerce an interval to an int in [MIN_INTERVAL_TURNS, MAX_INTERVAL_TURNS]."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return DEFAULT_INTERVAL_TURNS
    return max(MIN_INTERVAL_TURNS, min(MAX_INTERVAL_TURNS, n))


def _settings_path(data_dir: Path) -> Path:
    return data_dir / "settings.json"


def _merge(base: dict[str, Any], fields: dict[str, Any]) -> dict[str, Any]:
    for key, value in fields.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key].update(value)
        else:
            base[key] = value
    return base


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, path in _ENV_MAP.items():
        value = os.getenv(var)
        if not value:
            continue
        if len(path) == 1:
            overrides[path[0]] = value
        else:
            overrides.setdefault(path[0], {})[path[1]] = value
    return overrides


def get_settings(data_dir: Path | None = None) -> Settings:
    """Read settings: defaults, then settings.json, then environment."""
    config = Settings().model_dump()
    if data_dir is not None:
        path = _settings_path(data_dir)
        if path.is_file():
            try:
                stored = json.loads(path.read_text())
            except json.JSONDecodeError as e:
                logger.warning("ignoring unreadable settings file %s: %s", path, e)
            else:
                if isinstance(stored, dict):
                    _merge(config, stored)
    _merge(config, _env_overrides())
    if "interval_turns" in config:
        config["interval_turns"] = clamp_interval(config["interval_turns"])
    return Settings.model_validate(config)


def update_settings(data_dir: Path, fields: dict[str, Any]) -> Settings:
    """Merge fields into stored settings and persist. Returns the full settings.

    Raises pydantic.ValidationError when the merged result is invalid; the
    file on disk is left untouched in that case.
    """
    path = _settings_path(data_dir)
    stored: dict[str, Any] = {}
    if path.is_file():
        stored = json.loads(path.read_text())
    merged = _merge(Settings.model_validate(stored).model_dump(), fields)
    settings = Settings.model_validate(merged)
    data_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2))
    return get_settings(data_dir)

