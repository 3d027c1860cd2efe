"""Tests for story_orchestrator.config: settings layering and persistence."""

import json

import pytest
from pydantic import ValidationError

from story_orchestrator.config import (
    DEFAULT_INTERVAL_TURNS,
    Settings,
    clamp_interval,
    get_settings,
    update_settings,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("STORY_LLM_URL", "STORY_LLM_API_KEY", "STORY_LLM_FORMAT", "STORY_LLM_MODEL", "STORY_INTERVAL_TURNS"):
        monkeypatch.delenv(var, raising=False)


def test_clamp_interval():
    assert clamp_interval(5) == 5
    assert clamp_interval("7") == 7
    assert clamp_interval(0) == 1
    assert clamp_interval(250) == 99
    assert clamp_interval(None) == DEFAULT_INTERVAL_TURNS
    assert clamp_interval("often") == DEFAULT_INTERVAL_TURNS


def test_defaults_without_data_dir():
    settings = get_settings()
    assert settings == Settings()
    assert settings.llm.provider_url == "http://localhost:5001"


def test_stored_settings_merged(tmp_path):
    (tmp_path / "settings.json").write_text(json.dumps({
        "interval_turns": 5,
        "llm": {"model": "mistral"},
    }))
    settings = get_settings(tmp_path)
    assert settings.interval_turns == 5
    assert settings.llm.model == "mistral"
    assert settings.llm.provider_url == "http://localhost:5001"


def test_stored_interval_clamped(tmp_path):
    (tmp_path / "settings.json").write_text(json.dumps({"interval_turns": 400}))
    assert get_settings(tmp_path).interval_turns == 99


def test_unreadable_settings_file_ignored(tmp_path):
    (tmp_path / "settings.json").write_text("{broken")
    assert get_settings(tmp_path) == Settings()


def test_environment_overrides_file(tmp_path, monkeypatch):
    (tmp_path / "settings.json").write_text(json.dumps({"llm": {"provider_url": "http://file:1"}}))
    monkeypatch.setenv("STORY_LLM_URL", "http://env:2")
    monkeypatch.setenv("STORY_LLM_FORMAT", "openai")
    monkeypatch.setenv("STORY_INTERVAL_TURNS", "8")
    settings = get_settings(tmp_path)
    assert settings.llm.provider_url == "http://env:2"
    assert settings.llm.provider_format == "openai"
    assert settings.interval_turns == 8


def test_update_settings_persists(tmp_path):
    settings = update_settings(tmp_path, {"interval_turns": 6, "llm": {"api_key": "secret"}})
    assert settings.interval_turns == 6
    assert settings.llm.api_key == "secret"

    settings = update_settings(tmp_path, {"llm": {"model": "m"}})
    assert settings.llm.api_key == "secret"
    assert settings.llm.model == "m"
    assert get_settings(tmp_path).interval_turns == 6


def test_update_settings_rejects_invalid(tmp_path):
    update_settings(tmp_path, {"interval_turns": 4})
    with pytest.raises(ValidationError):
        update_settings(tmp_path, {"interval_turns": 0})
    assert get_settings(tmp_path).interval_turns == 4
