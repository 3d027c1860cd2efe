"""Checkpoint arbiter: serialized LLM judgments of checkpoint progress.

ArbiterQueue.evaluate() enqueues an ArbiterRequest and returns when a single
worker task has processed it. The worker:

  1. renders a judgment prompt (checkpoint, objective, why we are asking,
     candidate transitions, a clamped transcript excerpt)
  2. calls the LLM with a bounded response length
  3. parses the reply permissively into completed / failed / reason /
     confidence / next_transition_id (parse_verdict)
  4. resolves an outcome: win, fail or continue

Only one request is ever in flight. A "win" discards everything still
queued: those awaiters receive a "continue" verdict marked superseded.
Any LLM failure or unparseable reply becomes "continue".
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import deque
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

from story_orchestrator.llm import LLM
from story_orchestrator.models import ChatMessage
from story_orchestrator.prompts import ARBITER_TEMPLATE, clamp_text, format_transcript, render_prompt

logger = logging.getLogger(__name__)

EvaluationReason = Literal["interval", "win", "fail", "timed", "manual"]
Outcome = Literal["win", "fail", "continue"]

_REASON_LIMIT = 200
_LATEST_LIMIT = 240

_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_OUTER_BRACES = re.compile(r"\{[\s\S]*\}")
_BRACES = re.compile(r"\{[\s\S]*?\}")
_FALLBACK_COMPLETED = re.compile(r'"completed"\s*:\s*(true|false)', re.IGNORECASE)
_FALLBACK_FAILED = re.compile(r'"failed"\s*:\s*(true|false)', re.IGNORECASE)

_RESPONSE_FORMAT = (
    'Respond ONLY with JSON: {"completed": true|false, "failed": true|false, '
    '"reason": "<short explanation>", "confidence": <0.0-1.0>'
)


class ArbiterDisposedError(RuntimeError):
    """Raised when work is submitted to a disposed arbiter."""


# ---------------------------------------------------------------------------
# Request / verdict types
# ---------------------------------------------------------------------------

class CandidateTransition(BaseModel):
    id: str
    label: str = ""
    target: str
    target_name: str = ""
    outcome: Literal["win", "fail"] = "win"
    condition: str = ""


class ArbiterRequest(BaseModel):
    checkpoint_id: str
    checkpoint_name: str
    objective: str = ""
    reason: EvaluationReason
    turn: int = 0
    matched: str | None = None  # pattern or transition that triggered the request
    latest_text: str = ""
    messages: list[ChatMessage] = Field(default_factory=list)
    candidates: list[CandidateTransition] = Field(default_factory=list)


class ParsedVerdict(BaseModel):
    completed: bool = False
    failed: bool = False
    reason: str | None = None
    confidence: float | None = None
    next_transition_id: str | None = None


class ArbiterVerdict(BaseModel):
    outcome: Outcome
    reason: str | None = None
    confidence: float | None = None
    next_transition_id: str | None = None
    superseded: bool = False
    raw: str = ""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def _first_present(data: dict, *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _from_mapping(data: dict) -> ParsedVerdict | None:
    completed = _to_bool(_first_present(data, "completed", "complete", "answer"))
    failed = _to_bool(_first_present(data, "failed", "failure", "lose"))
    if completed is None and failed is None:
        return None

    reason = data.get("reason")
    reason = clamp_text(reason, _REASON_LIMIT) if isinstance(reason, str) and reason.strip() else None

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = None
    else:
        confidence = max(0.0, min(1.0, float(confidence)))

    next_id = _first_present(data, "next_transition_id", "nextTransitionId")
    next_id = str(next_id).strip() if next_id is not None and str(next_id).strip() else None

    is_completed = bool(completed)
    return ParsedVerdict(
        completed=is_completed,
        failed=bool(failed) and not is_completed,
        reason=reason,
        confidence=confidence,
        next_transition_id=next_id,
    )


def parse_verdict(raw: str) -> ParsedVerdict | None:
    """Extract a verdict from a model reply, or None if there is none."""
    if not raw or not raw.strip():
        return None
    text = raw.strip()
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1).strip()

    outer = _OUTER_BRACES.search(text)
    blocks = sorted(_BRACES.findall(text), key=len, reverse=True)
    candidates = ([outer.group(0)] if outer else []) + blocks + [text]
    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            parsed = _from_mapping(data)
            if parsed is not None:
                return parsed

    completed = _FALLBACK_COMPLETED.search(text)
    failed = _FALLBACK_FAILED.search(text)
    if completed is None and failed is None:
        return None
    is_completed = completed is not None and completed.group(1).lower() == "true"
    is_failed = failed is not None and failed.group(1).lower() == "true" and not is_completed
    return ParsedVerdict(completed=is_completed, failed=is_failed)


def resolve_outcome(parsed: ParsedVerdict | None) -> Outcome:
    if parsed is None:
        return "continue"
    if parsed.completed:
        return "win"
    if parsed.failed:
        return "fail"
    return "continue"


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

def _reason_line(request: ArbiterRequest, interval_turns: int) -> str:
    if request.reason == "interval":
        return f"Periodic check (every {interval_turns} turns)."
    if request.reason == "win":
        return f"Completion trigger matched: {request.matched or 'unknown'}."
    if request.reason == "fail":
        return f"Failure trigger matched: {request.matched or 'unknown'}."
    if request.reason == "timed":
        return f"Turn limit reached: {request.matched or 'unknown'}."
    return "Manual check requested."


def build_arbiter_prompt(
    request: ArbiterRequest,
    *,
    interval_turns: int = 3,
    snapshot_messages: int = 10,
    snapshot_text_limit: int = 300,
    extra: str = "",
) -> str:
    candidates = [
        {
            "number": i,
            "id": c.id,
            "label": c.label or c.id,
            "target": c.target_name or c.target,
            "condition": c.condition,
        }
        for i, c in enumerate(request.candidates, start=1)
    ]
    response_format = _RESPONSE_FORMAT
    if candidates:
        response_format += ', "next_transition_id": "<id of the transition that happened, or null>"'
    response_format += "}"
    return render_prompt(ARBITER_TEMPLATE, {
        "checkpoint": {"name": request.checkpoint_name, "objective": request.objective or "(none)"},
        "reason_line": _reason_line(request, interval_turns),
        "turn": request.turn,
        "candidates": candidates,
        "transcript": format_transcript(request.messages, snapshot_messages, snapshot_text_limit),
        "latest": clamp_text(request.latest_text, _LATEST_LIMIT) or "(none)",
        "extra": extra.strip(),
        "response_format": response_format,
    })


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

EvaluatedCallback = Callable[[ArbiterRequest, ArbiterVerdict], None]


class _Job:
    __slots__ = ("request", "future")

    def __init__(self, request: ArbiterRequest, future: asyncio.Future) -> None:
        self.request = request
        self.future = future


class ArbiterQueue:
    """Single-consumer queue of arbiter requests.

    Args:
        llm:                The generation capability.
        on_evaluated:       Called with (request, verdict) after each job.
        interval_turns:     Callable returning the current interval policy,
                            used in the periodic-check prompt line.
        response_length:    Max tokens requested from the LLM.
        snapshot_messages:  Transcript excerpt length.
        snapshot_text_limit: Per-message character limit in the excerpt.
        extra_prompt:       Callable returning extra judgment instructions.
    """

    def __init__(
        self,
        llm: LLM,
        *,
        on_evaluated: EvaluatedCallback | None = None,
        interval_turns: Callable[[], int] = lambda: 3,
        response_length: int = 256,
        snapshot_messages: int = 10,
        snapshot_text_limit: int = 300,
        extra_prompt: Callable[[], str] = lambda: "",
    ) -> None:
        self._llm = llm
        self._on_evaluated = on_evaluated
        self._interval_turns = interval_turns
        self._response_length = response_length
        self._snapshot_messages = snapshot_messages
        self._snapshot_text_limit = snapshot_text_limit
        self._extra_prompt = extra_prompt
        self._queue: deque[_Job] = deque()
        self._busy = False
        self._drain_task: asyncio.Task | None = None
        self._disposed = False

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def disposed(self) -> bool:
        return self._disposed

    async def evaluate(self, request: ArbiterRequest) -> ArbiterVerdict:
        if self._disposed:
            raise ArbiterDisposedError("Arbiter has been disposed")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append(_Job(request, future))
        logger.debug(
            "arbiter queued cp=%s reason=%s pending=%d",
            request.checkpoint_id, request.reason, len(self._queue),
        )
        self._schedule_drain()
        return await future

    def clear(self) -> int:
        """Drop queued (not in-flight) requests; their awaiters get "continue"."""
        dropped = 0
        while self._queue:
            job = self._queue.popleft()
            if not job.future.done():
                job.future.set_result(ArbiterVerdict(outcome="continue", superseded=True))
            dropped += 1
        if dropped:
            logger.debug("arbiter cleared %d queued requests", dropped)
        return dropped

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.clear()
        self._on_evaluated = None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _schedule_drain(self) -> None:
        if self._busy or self._disposed or not self._queue:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        self._busy = True
        try:
            while self._queue and not self._disposed:
                job = self._queue.popleft()
                verdict = await self._run(job.request)

                if verdict.outcome == "win":
                    self.clear()
                if not job.future.done():
                    job.future.set_result(verdict)

                callback = self._on_evaluated
                if callback is not None:
                    try:
                        callback(job.request, verdict)
                    except Exception:
                        logger.exception("arbiter on_evaluated callback failed")

                if verdict.outcome == "win":
                    break
        finally:
            self._busy = False
            self._drain_task = None
            if self._queue and not self._disposed:
                self._schedule_drain()

    async def _run(self, request: ArbiterRequest) -> ArbiterVerdict:
        try:
            prompt = build_arbiter_prompt(
                request,
                interval_turns=self._interval_turns(),
                snapshot_messages=self._snapshot_messages,
                snapshot_text_limit=self._snapshot_text_limit,
                extra=self._extra_prompt(),
            )
            raw = await self._llm("arbiter", prompt, max_tokens=self._response_length)
        except Exception as e:
            logger.warning("arbiter evaluation failed cp=%s: %s", request.checkpoint_id, e)
            return ArbiterVerdict(outcome="continue", reason=f"evaluation failed: {e}")

        parsed = parse_verdict(raw)
        if parsed is None:
            logger.warning("arbiter reply had no verdict cp=%s raw=%r", request.checkpoint_id, raw[:120])
        outcome = resolve_outcome(parsed)
        logger.info(
            "arbiter verdict cp=%s reason=%s outcome=%s",
            request.checkpoint_id, request.reason, outcome,
        )
        return ArbiterVerdict(
            outcome=outcome,
            reason=parsed.reason if parsed else None,
            confidence=parsed.confidence if parsed else None,
            next_transition_id=parsed.next_transition_id if parsed else None,
            raw=raw,
        )
