"""Talk-control service: moment queue, flush loop and generation intercept."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from typing import Any, Literal

from story_orchestrator.config import Settings
from story_orchestrator.events import (
    CHAT_CHANGED,
    GENERATION_ENDED,
    GENERATION_STARTED,
    GENERATION_STOPPED,
    MESSAGE_RECEIVED,
    MESSAGE_SENT,
    EventBus,
    Subscription,
    close_all,
)
from story_orchestrator.graph import StoryGraph
from story_orchestrator.host import ChatHost
from story_orchestrator.llm import LLM
from story_orchestrator.models import ChatMessage, TalkControlReplyDef, TalkControlTrigger
from story_orchestrator.talk_control.injector import TALK_CONTROL_MARKER, MessageInjector
from story_orchestrator.talk_control.resolver import PLAYER_SPEAKER_ID, CharacterResolver, normalize_name
from story_orchestrator.talk_control.selector import ReplySelector, Selection, TalkControlMoment

logger = logging.getLogger(__name__)

ArbiterPhase = Literal["before", "after"]


class TalkControlService:
    """Queues story moments and turns eligible replies into chat messages.

    Two depth counters guard re-entrancy: while an action runs,
    intercept_suppress keeps intercept_generation() from firing and
    self_dispatch keeps the injected message from queueing afterSpeak.
    """

    def __init__(
        self,
        graph: StoryGraph,
        *,
        host: ChatHost,
        llm: LLM,
        bus: EventBus,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        settings = settings or Settings()
        self._graph = graph
        self._host = host
        self._bus = bus
        config = graph.talk_control
        self._enabled = settings.talk_control_enabled and config is not None and config.enabled
        self._replies: dict[str, list[TalkControlReplyDef]] = (
            {cp_id: list(cp.replies) for cp_id, cp in config.checkpoints.items()} if config else {}
        )
        self._resolver = CharacterResolver(graph.roles)
        self._selector = ReplySelector(self._resolver, rng)
        self._injector = MessageInjector(
            llm, host,
            response_length=settings.talk_control_response_length,
            transcript_messages=settings.snapshot_messages,
        )
        self._guard = settings.talk_control_flush_guard

        self._queue: deque[TalkControlMoment] = deque()
        self._next_moment_id = 0
        self._checkpoint_id: str | None = None
        self._generation_active = False
        self._intercept_suppress = 0
        self._self_dispatch = 0
        self._flushing = False
        self._flush_task: asyncio.Task | None = None
        self._subscriptions: list[Subscription] = []
        self.paused = False
        self.disposed = False

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def checkpoint_id(self) -> str | None:
        return self._checkpoint_id

    @property
    def generation_active(self) -> bool:
        return self._generation_active

    @property
    def selector(self) -> ReplySelector:
        return self._selector

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> None:
        if self._subscriptions or self.disposed:
            return
        self._subscriptions = [
            self._bus.on(MESSAGE_SENT, self._on_message_sent),
            self._bus.on(MESSAGE_RECEIVED, self._on_message_received),
            self._bus.on(GENERATION_STARTED, self._on_generation_started),
            self._bus.on(GENERATION_STOPPED, self._on_generation_finished),
            self._bus.on(GENERATION_ENDED, self._on_generation_finished),
            self._bus.on(CHAT_CHANGED, self._on_chat_changed),
        ]

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        subs, self._subscriptions = self._subscriptions, []
        close_all(subs)
        self._queue.clear()
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        self._flush_task = None

    def reset_states(self) -> None:
        self._selector.reset_states()
        self._queue.clear()

    # ------------------------------------------------------------------
    # Orchestrator signals
    # ------------------------------------------------------------------

    def set_checkpoint(self, checkpoint_id: str, emit_enter: bool = True) -> None:
        self._checkpoint_id = checkpoint_id
        if emit_enter:
            self._enqueue("onEnter", checkpoint_id)

    def notify_arbiter(self, phase: ArbiterPhase, checkpoint_id: str, reason: str = "") -> None:
        trigger: TalkControlTrigger = "beforeArbiter" if phase == "before" else "afterArbiter"
        self._enqueue(trigger, checkpoint_id, {"reason": reason})

    def update_turn(self, turn: int) -> None:
        self._selector.update_turn(turn)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _enqueue(self, trigger: TalkControlTrigger, checkpoint_id: str | None, metadata: dict[str, Any] | None = None) -> None:
        if not self._enabled or self.paused or self.disposed or not checkpoint_id:
            return
        if not any(r.trigger == trigger for r in self._replies.get(checkpoint_id, [])):
            return
        self._next_moment_id += 1
        self._queue.append(TalkControlMoment(
            id=self._next_moment_id,
            type=trigger,
            checkpoint_id=checkpoint_id,
            metadata=metadata or {},
        ))
        logger.debug("talk-control moment queued %s cp=%s", trigger, checkpoint_id)
        self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self.disposed or not self._queue:
            return
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop; %d moments wait for the next flush", len(self._queue))
            return
        self._flush_task = loop.create_task(self.flush())
        self._flush_task.add_done_callback(self._after_flush)

    def _after_flush(self, task: asyncio.Task) -> None:
        # moments queued while the last flush was finishing
        if not task.cancelled() and not self._generation_active:
            self._schedule_flush()

    def _next_selection(self) -> Selection | None:
        moment = self._queue.popleft()
        return self._selector.select(moment, self._replies.get(moment.checkpoint_id, []))

    async def flush(self) -> int:
        """Drain queued moments, dispatching selected replies.

        Stops early when the host starts generating (the intercept hook then
        owns the queue) or after the iteration guard. Returns the number of
        replies injected.
        """
        if self._flushing:
            return 0
        self._flushing = True
        dispatched = 0
        try:
            iterations = 0
            while self._queue and not self.disposed and iterations < self._guard:
                iterations += 1
                if self._generation_active:
                    logger.debug("generation active; %d moments left queued", len(self._queue))
                    break
                selection = self._next_selection()
                if selection is not None and await self._dispatch(selection):
                    dispatched += 1
            if self._queue and iterations >= self._guard:
                logger.warning("talk-control flush guard reached; %d moments left queued", len(self._queue))
        finally:
            self._flushing = False
        return dispatched

    async def intercept_generation(self, gen_type: str = "normal", *, dry_run: bool = False) -> bool:
        """Pre-generation hook: replace the host's generation with a reply.

        Returns True when a reply was selected, the host generation aborted
        and the reply injected in its place.
        """
        if not self._enabled or self.paused or self.disposed:
            return False
        if self._intercept_suppress > 0 or gen_type == "quiet" or dry_run:
            return False
        selection = None
        iterations = 0
        while self._queue and selection is None and iterations < self._guard:
            iterations += 1
            selection = self._next_selection()
        if selection is None:
            return False
        self._host.abort_generation()
        self._generation_active = False
        await self._dispatch(selection)
        return True

    async def _dispatch(self, selection: Selection) -> bool:
        self._intercept_suppress += 1
        self._self_dispatch += 1
        try:
            character = self._resolver.resolve_character(selection.reply, self._host.get_characters())
            if character is None:
                return False
            checkpoint = self._graph.checkpoint(selection.checkpoint_id)
            text = await self._injector.build_text(
                selection.reply, character, checkpoint.objective if checkpoint else "",
            )
            if not text:
                return False
            await self._injector.inject(character, text, {
                "checkpoint_id": selection.checkpoint_id,
                "reply_index": selection.reply_index,
                "trigger": selection.moment.type,
            })
            self._selector.record_dispatch(selection)
            return True
        except Exception as e:
            logger.warning("talk-control action for %r failed: %s", selection.reply.member_id, e)
            return False
        finally:
            self._intercept_suppress -= 1
            self._self_dispatch -= 1

    async def wait_idle(self) -> None:
        while self._flush_task is not None and not self._flush_task.done():
            await asyncio.gather(self._flush_task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    def _on_message_sent(self, message: Any = None) -> None:
        if self._self_dispatch > 0:
            return
        if isinstance(message, ChatMessage) and not message.is_user:
            return
        self._enqueue("afterSpeak", self._checkpoint_id, {"speaker_id": PLAYER_SPEAKER_ID})

    def _on_message_received(self, message: Any = None) -> None:
        if self._self_dispatch > 0 or not isinstance(message, ChatMessage):
            return
        if message.is_system or message.is_user or TALK_CONTROL_MARKER in message.extra:
            return
        self._enqueue("afterSpeak", self._checkpoint_id, {
            "speaker_id": normalize_name(message.name),
            "speaker_name": message.name,
        })

    def _on_generation_started(self, gen_type: str = "normal", options: dict | None = None) -> None:
        options = options or {}
        if gen_type == "quiet" or options.get("dry_run"):
            return
        self._generation_active = True

    def _on_generation_finished(self, *_: Any) -> None:
        self._generation_active = False
        self._schedule_flush()

    def _on_chat_changed(self, *_: Any) -> None:
        self._generation_active = False
        self.reset_states()
