"""Session runtime: wires one story to one chat.

ensure_story() tears down any previous session, compiles the story,
restores the chat's saved state and builds the per-session objects:

    TurnGate, StoryOrchestrator (with its ArbiterQueue),
    TalkControlService, TurnController

Every object is created fresh per session and handed its collaborators
explicitly; nothing is shared between sessions. Runtime state is saved to
storage on every change.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from story_orchestrator.config import Settings
from story_orchestrator.events import CHAT_CHANGED, EventBus, Subscription
from story_orchestrator.graph import StoryGraph, compile_story
from story_orchestrator.host import ChatHost, ContextInjector, PresetService
from story_orchestrator.llm import LLM
from story_orchestrator.models import StoryDefinition
from story_orchestrator.orchestrator import StoryOrchestrator
from story_orchestrator.state import RuntimeState, derive_checkpoint_statuses
from story_orchestrator.storage import Storage
from story_orchestrator.talk_control.service import TalkControlService
from story_orchestrator.turn_gate import TurnController, TurnGate

logger = logging.getLogger(__name__)


class StoryRuntime:
    def __init__(
        self,
        *,
        bus: EventBus,
        host: ChatHost,
        context: ContextInjector,
        presets: PresetService,
        llm: LLM,
        storage: Storage | None = None,
        settings: Settings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._bus = bus
        self._host = host
        self._context = context
        self._presets = presets
        self._llm = llm
        self._storage = storage
        self._settings = settings or Settings()
        self._rng = rng

        self._graph: StoryGraph | None = None
        self._chat_id: str | None = None
        self._orchestrator: StoryOrchestrator | None = None
        self._talk_control: TalkControlService | None = None
        self._controller: TurnController | None = None
        self._chat_subscription: Subscription | None = None
        self._paused = False

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._orchestrator is not None and self._orchestrator.status == "ready"

    @property
    def graph(self) -> StoryGraph | None:
        return self._graph

    @property
    def chat_id(self) -> str | None:
        return self._chat_id

    @property
    def orchestrator(self) -> StoryOrchestrator | None:
        return self._orchestrator

    @property
    def talk_control(self) -> TalkControlService | None:
        return self._talk_control

    @property
    def automation_paused(self) -> bool:
        return self._paused

    @property
    def settings(self) -> Settings:
        return self._settings

    def status(self) -> dict[str, Any]:
        """Summary of the session for commands and the HTTP API."""
        if self._orchestrator is None or self._graph is None:
            return {"active": False}
        orch = self._orchestrator
        state = orch.snapshot()
        statuses = derive_checkpoint_statuses(self._graph, state)
        return {
            "active": self.active,
            "title": self._graph.title,
            "chat_id": self._chat_id,
            "active_checkpoint_id": state.active_checkpoint_id,
            "checkpoint_index": state.checkpoint_index,
            "turn": state.turn,
            "turns_since_eval": state.turns_since_eval,
            "checkpoint_turn_count": state.checkpoint_turn_count,
            "interval_turns": state.interval_turns,
            "checkpoints": [
                {"id": cp.id, "name": cp.name, "status": status}
                for cp, status in zip(self._graph.checkpoints, statuses)
            ],
            "paused": self._paused,
            "halted": orch.halted,
            "finished": orch.finished,
            "evaluation_pending": orch.evaluation_pending,
            "talk_control": self._talk_control.selector.counters() if self._talk_control else {},
        }

    def configure(self, settings: Settings, llm: LLM | None = None) -> None:
        """Replace settings (and optionally the LLM) for subsequent sessions.

        The arbiter prompt also takes effect in the running session.
        """
        self._settings = settings
        if llm is not None:
            self._llm = llm
        if self._orchestrator is not None:
            self._orchestrator.set_arbiter_prompt(settings.arbiter_prompt)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def ensure_story(self, story: StoryDefinition | dict[str, Any], chat_id: str) -> StoryGraph:
        """Start (or restart) the session for `chat_id`.

        Raises StoryValidationError before touching any state when the story
        is invalid. If initialisation fails the session is torn down and the
        error re-raised.
        """
        self.teardown()
        graph = compile_story(story)

        state = None
        if self._storage is not None:
            state = self._storage.load_runtime(chat_id, graph, self._settings.interval_turns)

        gate = TurnGate()
        talk_control = TalkControlService(
            graph,
            host=self._host,
            llm=self._llm,
            bus=self._bus,
            settings=self._settings,
            rng=self._rng,
        )
        orchestrator = StoryOrchestrator(
            graph,
            llm=self._llm,
            host=self._host,
            context=self._context,
            presets=self._presets,
            turn_gate=gate,
            settings=self._settings,
            state=state,
            talk_control=talk_control,
            on_state_change=self._persist,
        )
        controller = TurnController(self._bus, self._host, gate, orchestrator)

        self._graph = graph
        self._chat_id = chat_id
        self._orchestrator = orchestrator
        self._talk_control = talk_control
        self._controller = controller

        try:
            controller.attach()
            talk_control.attach()
            self._chat_subscription = self._bus.on(CHAT_CHANGED, self._on_chat_changed)
            await orchestrator.init()
        except Exception:
            logger.exception("story session for chat %s failed to start", chat_id)
            self.teardown()
            raise

        if self._paused:
            self._apply_pause()
        logger.info("story %r attached to chat %s", graph.title, chat_id)
        return graph

    def teardown(self) -> None:
        """Detach from the host and dispose the session. Safe to call twice."""
        if self._chat_subscription is not None:
            sub, self._chat_subscription = self._chat_subscription, None
            try:
                sub.close()
            except Exception as e:
                logger.warning("failed to unsubscribe chat listener: %s", e)
        if self._controller is not None:
            self._controller.detach()
        if self._talk_control is not None:
            self._talk_control.dispose()
        if self._orchestrator is not None:
            self._orchestrator.dispose()
        if self._graph is not None:
            logger.debug("story %r detached from chat %s", self._graph.title, self._chat_id)
        self._controller = None
        self._talk_control = None
        self._orchestrator = None
        self._graph = None
        self._chat_id = None

    def _on_chat_changed(self, chat_id: Any = None) -> None:
        if chat_id is not None and str(chat_id) == self._chat_id:
            return
        logger.info("chat changed from %s; closing story session", self._chat_id)
        self.teardown()

    # ------------------------------------------------------------------
    # Automation
    # ------------------------------------------------------------------

    def pause_automation(self) -> None:
        self._paused = True
        self._apply_pause()

    def resume_automation(self) -> None:
        self._paused = False
        self._apply_pause()

    def _apply_pause(self) -> None:
        if self._controller is not None:
            self._controller.paused = self._paused
        if self._talk_control is not None:
            self._talk_control.paused = self._paused

    async def intercept_generation(self, gen_type: str = "normal", *, dry_run: bool = False) -> bool:
        """Host pre-generation hook; see TalkControlService.intercept_generation."""
        if self._talk_control is None:
            return False
        return await self._talk_control.intercept_generation(gen_type, dry_run=dry_run)

    async def wait_idle(self) -> None:
        """Let queued evaluations and talk-control flushes settle."""
        for _ in range(10):
            if self._orchestrator is not None:
                await self._orchestrator.wait_idle()
            if self._talk_control is not None:
                await self._talk_control.wait_idle()
            await asyncio.sleep(0)
            busy = (
                self._orchestrator is not None
                and (self._orchestrator.evaluation_pending or self._orchestrator.arbiter.is_busy)
            )
            if not busy:
                return

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist(self, state: RuntimeState) -> None:
        if self._storage is None or self._graph is None or self._chat_id is None:
            return
        self._storage.save_runtime(self._chat_id, self._graph, state)
