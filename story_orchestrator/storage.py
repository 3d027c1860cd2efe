"""JSON file storage for story definitions and session state.

There is no database - reads and writes go through plain helper methods
that load and dump JSON.

Directory layout:

    {base}/
      settings.json         ← engine settings (see config.py)
      stories/
        {slug}.json         ← StoryDefinition documents
      state/
        {chat}.json         ← PersistedState: story signature + RuntimeState
"""

from __future__ import annotations

import json
import logging
import re
import unicodedata
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from story_orchestrator.graph import StoryGraph
from story_orchestrator.models import StoryDefinition
from story_orchestrator.state import (
    RuntimeState,
    make_default_state,
    sanitize_runtime,
    story_signature,
)

logger = logging.getLogger(__name__)


def slugify(title: str) -> str:
    """Convert a title or chat id to a filesystem-safe slug.

    "The Cursed Tavern" → "the-cursed-tavern"
    """
    text = unicodedata.normalize("NFKD", title)
    text = text.encode("ascii", "ignore").decode("ascii")
    text = text.lower()
    text = re.sub(r"['\"]", "", text)
    text = re.sub(r"[^a-z0-9]+", "-", text)
    text = text.strip("-")
    return text or "untitled"


class PersistedState(BaseModel):
    story_signature: str
    runtime: RuntimeState


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._stories = base_path / "stories"
        self._state = base_path / "state"
        self._stories.mkdir(parents=True, exist_ok=True)
        self._state.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _story_file(self, slug: str) -> Path:
        return self._stories / f"{slugify(slug)}.json"

    def _state_file(self, chat_id: str) -> Path:
        return self._state / f"{slugify(chat_id)}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Stories
    # ------------------------------------------------------------------

    def save_story(self, slug: str, story: StoryDefinition | dict[str, Any]) -> str:
        """Write a story document. Returns the slug it was stored under."""
        if isinstance(story, StoryDefinition):
            data = story.model_dump(by_alias=True, exclude_none=True)
        else:
            data = story
        self._write_json(self._story_file(slug), data)
        return slugify(slug)

    def load_story(self, slug: str) -> dict[str, Any] | None:
        """Return the raw story document; compile it with compile_story()."""
        path = self._story_file(slug)
        if not path.is_file():
            return None
        return self._read_json(path)

    def list_stories(self) -> list[str]:
        return sorted(p.stem for p in self._stories.glob("*.json"))

    def delete_story(self, slug: str) -> bool:
        path = self._story_file(slug)
        if not path.is_file():
            return False
        path.unlink()
        return True

    # ------------------------------------------------------------------
    # Runtime state
    # ------------------------------------------------------------------

    def save_runtime(self, chat_id: str, graph: StoryGraph, state: RuntimeState) -> None:
        persisted = PersistedState(story_signature=story_signature(graph), runtime=state)
        self._state_file(chat_id).write_text(persisted.model_dump_json(indent=2))

    def load_runtime(self, chat_id: str, graph: StoryGraph, interval_turns: int | None = None) -> RuntimeState:
        """Restore the chat's state, or a fresh default when it cannot be used."""
        default = (
            make_default_state(graph) if interval_turns is None
            else make_default_state(graph, interval_turns)
        )
        path = self._state_file(chat_id)
        if not path.is_file():
            return default
        try:
            persisted = PersistedState.model_validate_json(path.read_text())
        except ValidationError as e:
            logger.warning("discarding unreadable state for chat %s: %s", chat_id, e)
            return default
        if persisted.story_signature != story_signature(graph):
            logger.warning("story changed since state was saved for chat %s; starting fresh", chat_id)
            return default
        return sanitize_runtime(graph, persisted.runtime)

    def clear_runtime(self, chat_id: str) -> None:
        path = self._state_file(chat_id)
        if path.exists():
            path.unlink()
