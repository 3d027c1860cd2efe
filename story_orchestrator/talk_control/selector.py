"""Reply selection for a talk-control moment."""

from __future__ import annotations

import logging
import random
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from story_orchestrator.models import TalkControlReplyDef, TalkControlTrigger
from story_orchestrator.talk_control.resolver import CharacterResolver, normalize_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TalkControlMoment(BaseModel):
    id: int
    type: TalkControlTrigger
    checkpoint_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ReplyRuntimeState(BaseModel):
    last_action_turn: int | None = None
    actions_this_turn: int = 0
    total_trigger_count: int = 0


class Selection(BaseModel):
    moment: TalkControlMoment
    checkpoint_id: str
    reply_index: int
    reply: TalkControlReplyDef


class ReplySelector:
    """Picks at most one reply per moment and owns the per-reply counters.

    Counters are keyed by (checkpoint id, reply index) and live for the
    session; reset_states() clears them.
    """

    def __init__(self, resolver: CharacterResolver, rng: random.Random | None = None) -> None:
        self._resolver = resolver
        self._rng = rng or random.Random()
        self._states: dict[str, ReplyRuntimeState] = {}
        self.current_turn = 0

    def state_for(self, checkpoint_id: str, reply_index: int) -> ReplyRuntimeState:
        key = f"{checkpoint_id}::{reply_index}"
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = ReplyRuntimeState()
        return state

    def update_turn(self, turn: int) -> None:
        if turn == self.current_turn:
            return
        self.current_turn = turn
        for state in self._states.values():
            state.actions_this_turn = 0

    def reset_states(self) -> None:
        self._states.clear()
        self.current_turn = 0

    def counters(self) -> dict[str, dict[str, Any]]:
        """Per-reply counters keyed by "checkpoint::index"."""
        return {key: state.model_dump() for key, state in self._states.items()}

    def shuffle(self, items: list[T]) -> list[T]:
        """Uniform random permutation into a new list."""
        return self._rng.sample(items, len(items))

    def select(self, moment: TalkControlMoment, replies: list[TalkControlReplyDef]) -> Selection | None:
        candidates = [(i, r) for i, r in enumerate(replies) if r.trigger == moment.type]
        for index, reply in self.shuffle(candidates):
            if not reply.enabled:
                continue
            if moment.type == "afterSpeak" and not self._speaker_matches(reply, moment):
                continue
            if self._rng.random() * 100 >= reply.probability:
                continue
            state = self.state_for(moment.checkpoint_id, index)
            if (
                state.last_action_turn is not None
                and self.current_turn - state.last_action_turn <= reply.cooldown_turns
            ):
                logger.debug("reply %s::%d skipped: fired at turn %d", moment.checkpoint_id, index, state.last_action_turn)
                continue
            if reply.max_triggers is not None and state.total_trigger_count >= reply.max_triggers:
                logger.debug("reply %s::%d skipped: max triggers reached", moment.checkpoint_id, index)
                continue
            return Selection(moment=moment, checkpoint_id=moment.checkpoint_id, reply_index=index, reply=reply)
        return None

    def record_dispatch(self, selection: Selection) -> None:
        state = self.state_for(selection.checkpoint_id, selection.reply_index)
        state.last_action_turn = self.current_turn
        state.actions_this_turn += 1
        state.total_trigger_count += 1

    def _speaker_matches(self, reply: TalkControlReplyDef, moment: TalkControlMoment) -> bool:
        expected = self._resolver.expected_speakers(reply)
        if not expected:
            return True
        speaker = normalize_name(str(moment.metadata.get("speaker_id", "")))
        return speaker in expected
