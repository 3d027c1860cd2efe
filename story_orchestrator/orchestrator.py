"""Story orchestrator: the checkpoint state machine of one session.

Lifecycle: uninitialized -> ready (init) -> disposed (dispose).

Per accepted user turn (handle_user_text):
  1. Count the turn (turn, turns_since_eval, checkpoint_turn_count).
  2. Timed transitions: the smallest within_turns already reached is followed
     immediately, no arbiter involved.
  3. Regex transitions: the first match asks the arbiter for a verdict with
     reason "win" or "fail" (the transition's outcome).
  4. Otherwise, every interval_turns turns, ask the arbiter for a periodic
     verdict.

Verdicts:
  win      -> current checkpoint complete, follow the chosen win edge
  fail     -> current checkpoint failed, follow a fail edge if there is one,
              otherwise halt automatic advancement until a manual activation
  continue -> nothing changes

Activating a checkpoint clears queued arbiter work, applies its world-info
changes, re-applies the active role's author's note and preset overrides,
fires its automations and tells talk-control about the new checkpoint.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import TYPE_CHECKING, Any, Literal

from story_orchestrator.arbiter import (
    ArbiterDisposedError,
    ArbiterQueue,
    ArbiterRequest,
    ArbiterVerdict,
    CandidateTransition,
    EvaluationReason,
)
from story_orchestrator.config import Settings, clamp_interval
from story_orchestrator.graph import Checkpoint, RegexTrigger, StoryGraph, TimedTrigger, Transition
from story_orchestrator.host import ChatHost, ContextInjector, PresetService
from story_orchestrator.llm import LLM
from story_orchestrator.models import OnActivate
from story_orchestrator.state import CheckpointStatus, RuntimeState, compute_status_map, make_default_state, sanitize_runtime
from story_orchestrator.talk_control.resolver import normalize_name
from story_orchestrator.turn_gate import TurnGate

if TYPE_CHECKING:
    from story_orchestrator.talk_control.service import TalkControlService

logger = logging.getLogger(__name__)

Lifecycle = Literal["uninitialized", "ready", "disposed"]

StateCallback = Callable[[RuntimeState], None]
EvaluatedCallback = Callable[[ArbiterRequest, ArbiterVerdict], None]
RoleCallback = Callable[[str, str], None]


class OrchestratorStateError(RuntimeError):
    """Raised when an operation needs a ready orchestrator."""


class StoryOrchestrator:
    def __init__(
        self,
        graph: StoryGraph,
        *,
        llm: LLM,
        host: ChatHost,
        context: ContextInjector,
        presets: PresetService,
        turn_gate: TurnGate | None = None,
        settings: Settings | None = None,
        state: RuntimeState | None = None,
        talk_control: TalkControlService | None = None,
        on_state_change: StateCallback | None = None,
        on_evaluated: EvaluatedCallback | None = None,
        on_role_applied: RoleCallback | None = None,
    ) -> None:
        self._graph = graph
        self._host = host
        self._context = context
        self._presets = presets
        self._gate = turn_gate or TurnGate()
        self._settings = settings or Settings()
        self._talk_control = talk_control
        self._on_state_change = on_state_change
        self._on_evaluated = on_evaluated
        self._on_role_applied = on_role_applied

        if state is not None:
            self._state = sanitize_runtime(graph, state)
        else:
            self._state = make_default_state(graph, self._settings.interval_turns)

        self._arbiter_prompt = self._settings.arbiter_prompt
        self._arbiter = ArbiterQueue(
            llm,
            interval_turns=lambda: self._state.interval_turns,
            response_length=self._settings.arbiter_response_length,
            snapshot_messages=self._settings.snapshot_messages,
            snapshot_text_limit=self._settings.snapshot_text_limit,
            extra_prompt=lambda: self._arbiter_prompt,
        )

        self._role_lookup: dict[str, str] = {}
        for role, display in graph.roles.items():
            self._role_lookup[normalize_name(display)] = role
            self._role_lookup[normalize_name(role)] = role

        self._active_role: str | None = None
        self._pending_eval: str | None = None
        self._arbiter_preset_active = False
        self._halted = False
        self._finished = False
        self._tasks: set[asyncio.Task] = set()
        self.status: Lifecycle = "uninitialized"

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def graph(self) -> StoryGraph:
        return self._graph

    @property
    def arbiter(self) -> ArbiterQueue:
        return self._arbiter

    @property
    def active_checkpoint(self) -> Checkpoint:
        return self._graph.checkpoints[self._state.checkpoint_index]

    @property
    def active_role(self) -> str | None:
        return self._active_role

    @property
    def halted(self) -> bool:
        return self._halted

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def evaluation_pending(self) -> bool:
        return self._pending_eval is not None

    def snapshot(self) -> RuntimeState:
        return self._state.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self) -> None:
        """Apply story and checkpoint effects and become ready.

        Collaborator failures propagate; the orchestrator is disposed first.
        """
        if self.status == "disposed":
            raise OrchestratorStateError("Orchestrator has been disposed")
        if self.status == "ready":
            return
        try:
            if self._graph.on_start is not None:
                self._apply_world_info(self._graph.on_start)
                await self._run_automations("story start", self._graph.on_start.automations)
            cp = self.active_checkpoint
            self._activate(
                self._state.checkpoint_index,
                statuses=dict(self._state.checkpoint_statuses),
                reset_counters=False,
                run_automations=False,
            )
            if cp.on_activate is not None:
                await self._run_automations(cp.name, cp.on_activate.automations)
        except Exception:
            logger.exception("story %r failed to initialise", self._graph.title)
            self.dispose()
            raise
        self.status = "ready"
        logger.info("story %r ready at checkpoint %s", self._graph.title, self._state.active_checkpoint_id)

    def dispose(self) -> None:
        if self.status == "disposed":
            return
        self.status = "disposed"
        self._arbiter.dispose()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self._arbiter_preset_active:
            self._arbiter_preset_active = False
            self._presets.reset()
        self._gate.reset()
        self._pending_eval = None
        self._active_role = None
        self._talk_control = None
        self._on_state_change = None
        self._on_evaluated = None
        self._on_role_applied = None

    def _require_ready(self) -> None:
        if self.status != "ready":
            raise OrchestratorStateError(f"Orchestrator is {self.status}")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def handle_user_text(self, text: str) -> None:
        if self.status != "ready":
            logger.debug("user text ignored: orchestrator %s", self.status)
            return
        text = (text or "").strip()
        if not text:
            return

        s = self._state
        s.turn += 1
        s.turns_since_eval += 1
        s.checkpoint_turn_count += 1
        if self._talk_control is not None:
            self._talk_control.update_turn(s.turn)
        self._notify_state()

        if self._halted or self._finished:
            return

        cp = self.active_checkpoint
        outgoing = self._graph.outgoing(cp.id)

        timed = sorted(
            (t for t in outgoing
             if isinstance(t.trigger, TimedTrigger) and s.checkpoint_turn_count >= t.trigger.within_turns),
            key=lambda t: t.trigger.within_turns,
        )
        if timed:
            logger.info("timed transition %s fired after %d turns", timed[0].id, s.checkpoint_turn_count)
            self._follow(timed[0])
            return

        if self._pending_eval == cp.id:
            logger.debug("evaluation already pending for %s; not queuing another", cp.id)
            return

        for transition in outgoing:
            if not isinstance(transition.trigger, RegexTrigger):
                continue
            pattern = transition.trigger.match(text)
            if pattern is None:
                continue
            reason: EvaluationReason = "win" if transition.outcome == "win" else "fail"
            self._enqueue_evaluation(reason, latest=text, matched=transition, pattern=pattern.pattern)
            return

        if s.turns_since_eval >= s.interval_turns:
            self._enqueue_evaluation("interval", latest=text)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _build_request(
        self,
        reason: EvaluationReason,
        latest: str,
        matched: Transition | None = None,
        pattern: str | None = None,
    ) -> ArbiterRequest:
        cp = self.active_checkpoint
        candidates = []
        for t in self._graph.outgoing(cp.id):
            target = self._graph.checkpoint(t.target)
            condition = t.trigger.condition if isinstance(t.trigger, RegexTrigger) else ""
            candidates.append(CandidateTransition(
                id=t.id,
                label=t.label or (t.trigger.label if t.trigger else "") or t.description,
                target=t.target,
                target_name=target.name if target else t.target,
                outcome=t.outcome,
                condition=condition or t.description,
            ))
        matched_label = None
        if matched is not None:
            matched_label = matched.label or pattern or matched.id
        return ArbiterRequest(
            checkpoint_id=cp.id,
            checkpoint_name=cp.name,
            objective=cp.objective,
            reason=reason,
            turn=self._state.turn,
            matched=matched_label,
            latest_text=latest,
            messages=list(self._host.get_chat()),
            candidates=candidates,
        )

    def _enqueue_evaluation(
        self,
        reason: EvaluationReason,
        *,
        latest: str,
        matched: Transition | None = None,
        pattern: str | None = None,
    ) -> None:
        request = self._build_request(reason, latest, matched, pattern)
        self._state.turns_since_eval = 0
        self._pending_eval = request.checkpoint_id
        self._notify_state()
        logger.debug("evaluation queued cp=%s reason=%s", request.checkpoint_id, reason)
        self._spawn(self._evaluate(request, matched.id if matched else None))

    async def evaluate_now(self) -> ArbiterVerdict | None:
        """Ask the arbiter about the active checkpoint right away."""
        self._require_ready()
        chat = self._host.get_chat()
        latest = next((m.text for m in reversed(chat) if m.is_user), "")
        request = self._build_request("manual", latest)
        self._state.turns_since_eval = 0
        self._notify_state()
        return await self._evaluate(request, None)

    async def _evaluate(self, request: ArbiterRequest, matched_id: str | None) -> ArbiterVerdict | None:
        cp = self._graph.checkpoint(request.checkpoint_id)
        arbiter_preset = cp.on_activate.arbiter_preset if cp and cp.on_activate else None
        if self._talk_control is not None:
            self._talk_control.notify_arbiter("before", request.checkpoint_id, request.reason)
        try:
            if arbiter_preset:
                self._presets.apply_overrides(arbiter_preset)
                self._arbiter_preset_active = True
            verdict = await self._arbiter.evaluate(request)
            self._end_arbiter_preset()
            self._apply_verdict(request, verdict, matched_id)
            if self._on_evaluated is not None:
                try:
                    self._on_evaluated(request, verdict)
                except Exception:
                    logger.exception("on_evaluated callback failed")
            return verdict
        except ArbiterDisposedError:
            logger.debug("evaluation dropped: arbiter disposed")
            return None
        finally:
            self._end_arbiter_preset()
            if self._pending_eval == request.checkpoint_id:
                self._pending_eval = None
            if self._talk_control is not None:
                self._talk_control.notify_arbiter("after", request.checkpoint_id, request.reason)

    def _apply_verdict(self, request: ArbiterRequest, verdict: ArbiterVerdict, matched_id: str | None) -> None:
        if self.status != "ready" or verdict.superseded:
            return
        if request.checkpoint_id != self._state.active_checkpoint_id:
            logger.debug("stale verdict for %s ignored", request.checkpoint_id)
            return
        if verdict.outcome == "continue":
            return

        outcome = verdict.outcome
        edges = [t for t in self._graph.outgoing(request.checkpoint_id) if t.outcome == outcome]
        transition = self._select_transition(edges, verdict.next_transition_id, matched_id)
        if transition is not None:
            self._follow(transition)
            return

        if edges:
            logger.warning(
                "%s verdict for %s but no transition could be chosen among %s",
                outcome, request.checkpoint_id, [t.id for t in edges],
            )
            return

        statuses = dict(self._state.checkpoint_statuses)
        if outcome == "win":
            statuses[request.checkpoint_id] = "complete"
            self._finished = True
            logger.info("story %r finished at checkpoint %s", self._graph.title, request.checkpoint_id)
        else:
            statuses[request.checkpoint_id] = "failed"
            self._halted = True
            logger.info("checkpoint %s failed; waiting for manual activation", request.checkpoint_id)
        self._state.checkpoint_statuses = statuses
        self._notify_state()

    def _select_transition(
        self,
        edges: list[Transition],
        next_id: str | None,
        matched_id: str | None,
    ) -> Transition | None:
        by_id = {t.id: t for t in edges}
        if next_id:
            if next_id in by_id:
                return by_id[next_id]
            logger.warning("arbiter chose unknown transition %r", next_id)
        if matched_id in by_id:
            return by_id[matched_id]
        if len(edges) == 1:
            return edges[0]
        return None

    def _follow(self, transition: Transition) -> None:
        target_index = self._graph.index_of(transition.target)
        previous: dict[str, CheckpointStatus] = dict(self._state.checkpoint_statuses)
        previous[transition.source] = "complete" if transition.outcome == "win" else "failed"
        statuses = compute_status_map(self._graph, target_index, previous)
        logger.info(
            "transition %s (%s): %s -> %s",
            transition.id, transition.outcome, transition.source, transition.target,
        )
        self._activate(target_index, statuses=statuses)

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def _activate(
        self,
        index: int,
        *,
        statuses: dict[str, CheckpointStatus] | None = None,
        reset_counters: bool = True,
        run_automations: bool = True,
    ) -> Checkpoint:
        index = max(0, min(index, len(self._graph.checkpoints) - 1))
        cp = self._graph.checkpoints[index]

        self._arbiter.clear()
        self._pending_eval = None
        self._halted = False
        self._finished = False

        s = self._state
        s.checkpoint_index = index
        s.active_checkpoint_id = cp.id
        if reset_counters:
            s.turns_since_eval = 0
            s.checkpoint_turn_count = 0
        s.checkpoint_statuses = statuses or compute_status_map(self._graph, index, s.checkpoint_statuses)
        if s.checkpoint_statuses.get(cp.id) != "failed":
            s.checkpoint_statuses[cp.id] = "current"

        if cp.on_activate is not None:
            self._apply_world_info(cp.on_activate)
        if self._active_role is not None:
            self._apply_role(self._active_role)
        else:
            self._presets.reset()
        if run_automations and cp.on_activate is not None and cp.on_activate.automations:
            self._spawn(self._run_automations_logged(cp.name, cp.on_activate.automations))

        if self._talk_control is not None:
            self._talk_control.set_checkpoint(cp.id)
        logger.info("checkpoint active: %s (%s)", cp.name, cp.id)
        self._notify_state()
        return cp

    def activate_index(self, index: int) -> bool:
        """Force checkpoint `index` (progression order) to be current."""
        self._require_ready()
        if not 0 <= index < len(self._graph.checkpoints):
            return False
        statuses = compute_status_map(self._graph, index, self._state.checkpoint_statuses)
        self._activate(index, statuses=statuses)
        return True

    def activate_checkpoint(self, checkpoint_id: str) -> bool:
        index = self._graph.index_of(checkpoint_id)
        if index < 0:
            logger.warning("cannot activate unknown checkpoint %r", checkpoint_id)
            return False
        return self.activate_index(index)

    def activate_relative(self, delta: int) -> bool:
        return self.activate_index(self._state.checkpoint_index + delta)

    def reset_story(self) -> None:
        self._require_ready()
        interval = self._state.interval_turns
        self._state = make_default_state(self._graph, interval)
        self._gate.reset()
        if self._talk_control is not None:
            self._talk_control.reset_states()
        self._activate(self._state.checkpoint_index, statuses=dict(self._state.checkpoint_statuses))

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def set_active_role(self, name: str) -> bool:
        """Apply role-specific effects for the character about to speak."""
        if self.status != "ready":
            return False
        role = self._role_lookup.get(normalize_name(name))
        if role is None:
            logger.debug("no story role for speaker %r", name)
            return False
        if not self._gate.should_apply_role(role, self._state.checkpoint_index):
            return False
        self._active_role = role
        self._apply_role(role)
        if self._on_role_applied is not None:
            try:
                self._on_role_applied(role, self._state.active_checkpoint_id or "")
            except Exception:
                logger.exception("on_role_applied callback failed")
        return True

    def _apply_role(self, role: str) -> None:
        effects = self.active_checkpoint.on_activate
        note = effects.authors_note.get(role) if effects else None
        self._context.set_authors_note(note or None)
        self._restore_presets()

    def _end_arbiter_preset(self) -> None:
        if not self._arbiter_preset_active:
            return
        self._arbiter_preset_active = False
        if self.status == "disposed":
            self._presets.reset()
        else:
            self._restore_presets()

    def _restore_presets(self) -> None:
        self._presets.reset()
        effects = self.active_checkpoint.on_activate
        if effects is None or self._active_role is None:
            return
        overrides = effects.preset_overrides.get(self._active_role)
        if overrides:
            self._presets.apply_overrides(overrides)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def set_interval_turns(self, turns: Any) -> int:
        self._state.interval_turns = clamp_interval(turns)
        self._notify_state()
        return self._state.interval_turns

    def set_arbiter_prompt(self, text: str) -> None:
        self._arbiter_prompt = (text or "").strip()

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _apply_world_info(self, effects: OnActivate) -> None:
        if effects.world_info is None:
            return
        activate, deactivate = effects.world_info.activate, effects.world_info.deactivate
        if activate or deactivate:
            self._context.set_world_info(list(activate), list(deactivate))

    async def _run_automations(self, label: str, commands: list[str]) -> None:
        if not commands:
            return
        logger.debug("automations for %s: %s", label, commands)
        ok = await self._host.run_automations(list(commands))
        if not ok:
            logger.warning("automations for %s reported failure", label)

    async def _run_automations_logged(self, label: str, commands: list[str]) -> None:
        try:
            await self._run_automations(label, commands)
        except Exception as e:
            logger.warning("automations for %s failed: %s", label, e)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("no running event loop; background work skipped")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _notify_state(self) -> None:
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(self.snapshot())
        except Exception:
            logger.exception("state change callback failed")

    async def wait_idle(self) -> None:
        """Wait until background evaluations and automations have settled."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)
