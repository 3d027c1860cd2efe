"""Runtime state of a story session and helpers to derive / repair it.

RuntimeState is the serializable snapshot the orchestrator owns. It is
plain data: storage persists it, restore validates it against the graph
via sanitize_runtime().
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Literal

from pydantic import BaseModel, Field

from story_orchestrator.config import DEFAULT_INTERVAL_TURNS, clamp_interval
from story_orchestrator.graph import StoryGraph

logger = logging.getLogger(__name__)

CheckpointStatus = Literal["pending", "current", "complete", "failed"]


class RuntimeState(BaseModel):
    active_checkpoint_id: str | None = None
    checkpoint_index: int = 0
    turn: int = 0
    turns_since_eval: int = 0
    checkpoint_turn_count: int = 0
    checkpoint_statuses: dict[str, CheckpointStatus] = Field(default_factory=dict)
    interval_turns: int = DEFAULT_INTERVAL_TURNS


def compute_status_map(
    graph: StoryGraph,
    index: int,
    previous: dict[str, CheckpointStatus] | None = None,
) -> dict[str, CheckpointStatus]:
    """Statuses for `index` being current: earlier complete, later pending.

    A checkpoint already marked failed keeps that status.
    """
    previous = previous or {}
    statuses: dict[str, CheckpointStatus] = {}
    for i, cp in enumerate(graph.checkpoints):
        if previous.get(cp.id) == "failed" and i != index:
            statuses[cp.id] = "failed"
        elif i < index:
            statuses[cp.id] = "complete"
        elif i == index:
            statuses[cp.id] = "current"
        else:
            statuses[cp.id] = "pending"
    return statuses


def derive_checkpoint_statuses(graph: StoryGraph, state: RuntimeState) -> list[CheckpointStatus]:
    """Statuses in progression order, falling back to the computed map."""
    fallback = compute_status_map(graph, state.checkpoint_index)
    return [state.checkpoint_statuses.get(cp.id, fallback[cp.id]) for cp in graph.checkpoints]


def make_default_state(graph: StoryGraph, interval_turns: int = DEFAULT_INTERVAL_TURNS) -> RuntimeState:
    index = max(0, graph.index_of(graph.start))
    return RuntimeState(
        active_checkpoint_id=graph.checkpoints[index].id,
        checkpoint_index=index,
        checkpoint_statuses=compute_status_map(graph, index),
        interval_turns=clamp_interval(interval_turns),
    )


def sanitize_runtime(graph: StoryGraph, state: RuntimeState) -> RuntimeState:
    """Repair a restored state so it is consistent with the graph.

    The active id wins over the index when both are present but disagree;
    unknown ids fall back to the index, clamped into range. Counters are
    made non-negative and unknown checkpoint ids dropped from the status map.
    """
    count = len(graph.checkpoints)
    index = graph.index_of(state.active_checkpoint_id) if state.active_checkpoint_id else -1
    if index < 0:
        index = min(max(state.checkpoint_index, 0), count - 1)

    known = {cp.id for cp in graph.checkpoints}
    statuses = {k: v for k, v in state.checkpoint_statuses.items() if k in known}
    active_id = graph.checkpoints[index].id
    for i, cp in enumerate(graph.checkpoints):
        if cp.id not in statuses:
            statuses[cp.id] = "complete" if i < index else "pending"
    for cp_id, status in list(statuses.items()):
        if status == "current" and cp_id != active_id:
            statuses[cp_id] = "pending"
    if statuses[active_id] != "failed":
        statuses[active_id] = "current"

    return RuntimeState(
        active_checkpoint_id=active_id,
        checkpoint_index=index,
        turn=max(0, state.turn),
        turns_since_eval=max(0, state.turns_since_eval),
        checkpoint_turn_count=max(0, state.checkpoint_turn_count),
        checkpoint_statuses={cp.id: statuses[cp.id] for cp in graph.checkpoints},
        interval_turns=clamp_interval(state.interval_turns),
    )


def story_signature(graph: StoryGraph) -> str:
    """Stable fingerprint of the graph's checkpoints and edges."""
    payload = {
        "checkpoints": [cp.id for cp in graph.checkpoints],
        "edges": sorted(f"{t.id}:{t.source}->{t.target}:{t.outcome}" for t in graph.transitions),
        "start": graph.start,
    }
    encoded = json.dumps(payload, sort_keys=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()[:16]
