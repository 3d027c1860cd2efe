"""Turn gate: dedups user turns and role application per generation cycle.

The host fires overlapping events for a single user action (message sent,
generation started, speaker drafted). TurnGate turns that stream into two
guarantees:

  * the same user message is handled once (signature of text + message key)
  * a role's side effects are applied once per (epoch, checkpoint, role)

TurnController owns the host subscriptions and forwards accepted events to
the orchestrator.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from story_orchestrator.events import (
    GENERATION_ENDED,
    GENERATION_STARTED,
    GENERATION_STOPPED,
    GROUP_MEMBER_DRAFTED,
    MESSAGE_SENT,
    EventBus,
    Subscription,
    close_all,
)
from story_orchestrator.models import ChatMessage

if TYPE_CHECKING:
    from story_orchestrator.host import ChatHost
    from story_orchestrator.orchestrator import StoryOrchestrator

logger = logging.getLogger(__name__)

_SIGNATURE_LIMIT = 200


class TurnGate:
    def __init__(self) -> None:
        self._epoch = 0
        self._last_user_signature: str | None = None
        self._applied_roles: set[str] = set()

    @property
    def epoch(self) -> int:
        return self._epoch

    def new_epoch(self) -> None:
        self._epoch += 1
        self._applied_roles.clear()

    def end_epoch(self) -> None:
        self._applied_roles.clear()

    def should_accept_user(self, text: str, message_key: Any = None) -> bool:
        normalized = (text or "").strip()
        if not normalized:
            logger.debug("user turn rejected: empty")
            return False
        signature = json.dumps([normalized, message_key], default=str)[:_SIGNATURE_LIMIT].lower()
        if signature == self._last_user_signature:
            logger.debug("user turn rejected: duplicate key=%r", message_key)
            return False
        self._last_user_signature = signature
        return True

    def should_apply_role(self, role: str, checkpoint_index: int) -> bool:
        if not role:
            return False
        key = f"{self._epoch}:{checkpoint_index}:{role}"
        if key in self._applied_roles:
            return False
        self._applied_roles.add(key)
        return True

    def reset(self) -> None:
        self._epoch = 0
        self._last_user_signature = None
        self._applied_roles.clear()


# ---------------------------------------------------------------------------
# TurnController - host events -> gate -> orchestrator
# ---------------------------------------------------------------------------

class TurnController:
    def __init__(
        self,
        bus: EventBus,
        host: ChatHost,
        gate: TurnGate,
        orchestrator: StoryOrchestrator,
    ) -> None:
        self._bus = bus
        self._host = host
        self._gate = gate
        self._orchestrator = orchestrator
        self._subscriptions: list[Subscription] = []
        self.paused = False

    @property
    def attached(self) -> bool:
        return bool(self._subscriptions)

    def attach(self) -> None:
        if self._subscriptions:
            return
        self._subscriptions = [
            self._bus.on(MESSAGE_SENT, self._on_message_sent),
            self._bus.on(GENERATION_STARTED, self._on_generation_started),
            self._bus.on(GROUP_MEMBER_DRAFTED, self._on_member_drafted),
            self._bus.on(GENERATION_STOPPED, self._on_generation_finished),
            self._bus.on(GENERATION_ENDED, self._on_generation_finished),
        ]

    def detach(self) -> None:
        subs, self._subscriptions = self._subscriptions, []
        close_all(subs)
        self._gate.reset()

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_message_sent(self, message: Any = None) -> None:
        if self.paused:
            return
        resolved = self._resolve_user_message(message)
        if resolved is None:
            return
        key, text = resolved
        if not self._gate.should_accept_user(text, key):
            return
        self._orchestrator.handle_user_text(text)

    def _on_generation_started(self, gen_type: str = "normal", options: dict | None = None) -> None:
        options = options or {}
        if self.paused or gen_type == "quiet" or options.get("dry_run"):
            return
        self._gate.new_epoch()
        name = options.get("character") or options.get("quiet_name")
        if name:
            self._orchestrator.set_active_role(name)

    def _on_member_drafted(self, name: str | None = None) -> None:
        if self.paused or not name:
            return
        self._gate.new_epoch()
        self._orchestrator.set_active_role(name)

    def _on_generation_finished(self, *_: Any) -> None:
        self._gate.end_epoch()

    def _resolve_user_message(self, message: Any) -> tuple[Any, str] | None:
        """Return (key, text) for the user message behind a MESSAGE_SENT event.

        The payload may be the message itself or a chat index; with neither,
        the latest user message in the chat is used.
        """
        chat = self._host.get_chat()
        if isinstance(message, ChatMessage):
            if not message.is_user:
                return None
            key = message.extra.get("message_id")
            if key is None:
                key = next((i for i in range(len(chat) - 1, -1, -1) if chat[i] == message), len(chat))
            return key, message.text
        if isinstance(message, int) and 0 <= message < len(chat):
            msg = chat[message]
            return (message, msg.text) if msg.is_user else None
        for i in range(len(chat) - 1, -1, -1):
            if chat[i].is_user and not chat[i].is_system:
                return i, chat[i].text
        return None
