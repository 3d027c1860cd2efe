"""Collaborator contracts with the host chat application.

The engine never talks to a concrete chat UI. It is handed objects that
satisfy these protocols:

    ChatHost         - chat transcript, character registry, generation
                       abort, message insertion, macro substitution,
                       automation commands
    ContextInjector  - world-info activation and the author's note
    PresetService    - generation preset overrides

InMemoryHost implements all three over plain Python state. The HTTP app
uses it as its host, and tests inspect what the engine asked it to do.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Protocol

from story_orchestrator.events import MESSAGE_RECEIVED, EventBus
from story_orchestrator.models import ChatMessage

logger = logging.getLogger(__name__)


class ChatHost(Protocol):
    def get_chat(self) -> list[ChatMessage]: ...

    def get_characters(self) -> list[str]: ...

    def abort_generation(self) -> None: ...

    async def add_message(self, message: ChatMessage) -> None: ...

    def substitute_params(self, text: str) -> str: ...

    async def run_automations(self, commands: list[str]) -> bool: ...


class ContextInjector(Protocol):
    def set_world_info(self, activate: list[str], deactivate: list[str]) -> None: ...

    def set_authors_note(self, text: str | None) -> None: ...


class PresetService(Protocol):
    def apply_overrides(self, overrides: dict[str, Any]) -> None: ...

    def reset(self) -> None: ...


# ---------------------------------------------------------------------------
# InMemoryHost
# ---------------------------------------------------------------------------

_MACRO = re.compile(r"\{\{\s*(user|char)\s*\}\}", re.IGNORECASE)


class InMemoryHost:
    """A self-contained host: chat list, character names, context state.

    add_message() appends to the chat and publishes MESSAGE_RECEIVED on the
    bus, the way a real host announces a new character message.
    """

    def __init__(
        self,
        bus: EventBus,
        characters: list[str] | None = None,
        user_name: str = "You",
    ) -> None:
        self.bus = bus
        self.chat: list[ChatMessage] = []
        self.characters: list[str] = list(characters or [])
        self.user_name = user_name
        self.active_world_info: set[str] = set()
        self.authors_note: str | None = None
        self.preset: dict[str, Any] = {}
        self.automation_log: list[list[str]] = []
        self.aborted = 0
        self.current_character: str | None = None

    # ChatHost ----------------------------------------------------------

    def get_chat(self) -> list[ChatMessage]:
        return self.chat

    def get_characters(self) -> list[str]:
        return self.characters

    def abort_generation(self) -> None:
        self.aborted += 1

    async def add_message(self, message: ChatMessage) -> None:
        self.chat.append(message)
        self.bus.emit(MESSAGE_RECEIVED, message)

    def substitute_params(self, text: str) -> str:
        def _sub(m: re.Match) -> str:
            if m.group(1).lower() == "user":
                return self.user_name
            return self.current_character or m.group(0)
        return _MACRO.sub(_sub, text)

    async def run_automations(self, commands: list[str]) -> bool:
        self.automation_log.append(list(commands))
        return True

    # ContextInjector ---------------------------------------------------

    def set_world_info(self, activate: list[str], deactivate: list[str]) -> None:
        self.active_world_info.update(activate)
        self.active_world_info.difference_update(deactivate)

    def set_authors_note(self, text: str | None) -> None:
        self.authors_note = text

    # PresetService -----------------------------------------------------

    def apply_overrides(self, overrides: dict[str, Any]) -> None:
        self.preset.update(overrides)

    def reset(self) -> None:
        self.preset = {}
