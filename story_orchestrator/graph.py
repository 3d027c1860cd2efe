"""Story graph compiler.

compile_story() turns a story definition (dict or StoryDefinition) into an
immutable StoryGraph, or raises a StoryValidationError subclass describing the
first failing step:

  1. schema shape         -> SchemaError
  2. duplicate ids        -> DuplicateId
  3. transition endpoints -> UnknownCheckpoint
  4. regex compilation    -> InvalidPattern
  5. start resolution     -> UnknownCheckpoint / NoStart / AmbiguousStart
  6. reachability         -> UnreachableOrCyclic

Checkpoints in the compiled graph are in traversal order (breadth-first,
a node is visited once all of its predecessors have been), which is the
canonical progression order used for indices and status maps.
"""

from __future__ import annotations

import logging
import re
from collections import deque
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from story_orchestrator.models import (
    OnActivate,
    RegexPattern,
    StoryDefinition,
    TalkControlDef,
    TransitionOutcome,
    WorldInfoActivations,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StoryValidationError(ValueError):
    """Raised when a story definition cannot be compiled."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors: list[str] = errors or [message]


class SchemaError(StoryValidationError):
    pass


class DuplicateId(StoryValidationError):
    pass


class UnknownCheckpoint(StoryValidationError):
    pass


class InvalidPattern(StoryValidationError):
    pass


class NoStart(StoryValidationError):
    pass


class AmbiguousStart(StoryValidationError):
    def __init__(self, candidates: list[str]) -> None:
        super().__init__(f"Ambiguous start checkpoint. Candidates: {', '.join(candidates)}")
        self.candidates = candidates


class UnreachableOrCyclic(StoryValidationError):
    def __init__(self, stranded: list[str]) -> None:
        super().__init__(
            f"Story graph contains unreachable or cyclic checkpoints: {', '.join(stranded)}"
        )
        self.stranded = stranded


# ---------------------------------------------------------------------------
# Compiled graph
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class RegexTrigger(_Frozen):
    type: str = "regex"
    patterns: tuple[re.Pattern, ...]
    condition: str = ""
    label: str = ""

    def match(self, text: str) -> re.Pattern | None:
        """Return the first pattern that matches text."""
        for pattern in self.patterns:
            if pattern.search(text):
                return pattern
        return None


class TimedTrigger(_Frozen):
    type: str = "timed"
    within_turns: int
    label: str = ""


class Transition(_Frozen):
    id: str
    source: str
    target: str
    outcome: TransitionOutcome = "win"
    label: str = ""
    description: str = ""
    trigger: RegexTrigger | TimedTrigger | None = None


class Checkpoint(_Frozen):
    id: str
    name: str
    objective: str = ""
    on_activate: OnActivate | None = None


class StoryGraph(_Frozen):
    title: str
    description: str = ""
    global_lorebook: str = ""
    roles: dict[str, str]
    on_start: OnActivate | None = None
    checkpoints: tuple[Checkpoint, ...]
    transitions: tuple[Transition, ...]
    start: str
    talk_control: TalkControlDef | None = None

    def index_of(self, checkpoint_id: str) -> int:
        """Position of a checkpoint in progression order, or -1."""
        for i, cp in enumerate(self.checkpoints):
            if cp.id == checkpoint_id:
                return i
        return -1

    def checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
        idx = self.index_of(checkpoint_id)
        return self.checkpoints[idx] if idx >= 0 else None

    def outgoing(self, checkpoint_id: str) -> tuple[Transition, ...]:
        return tuple(t for t in self.transitions if t.source == checkpoint_id)


# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_SLASH_FORM = re.compile(r"^/(.+)/([a-z]*)$", re.DOTALL)

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
}
_IGNORED_FLAGS = set("gyudv")

DEFAULT_FLAGS = "i"


def compile_regex(source_def: str | RegexPattern | dict[str, Any]) -> re.Pattern:
    """Compile a regex given as "text", "/text/flags" or {"pattern", "flags"}.

    Raises re.error on a malformed pattern or unknown flag.
    """
    if isinstance(source_def, dict):
        source_def = RegexPattern.model_validate(source_def)
    if isinstance(source_def, RegexPattern):
        source, flags = source_def.pattern, source_def.flags
    else:
        text = source_def.strip()
        m = _SLASH_FORM.match(text)
        if m:
            source, flags = m.group(1), m.group(2)
        else:
            source, flags = text, None

    if not flags:
        flags = DEFAULT_FLAGS

    re_flags = 0
    for flag in flags:
        if flag in _FLAG_MAP:
            re_flags |= _FLAG_MAP[flag]
        elif flag not in _IGNORED_FLAGS:
            raise re.error(f"unsupported flag {flag!r}")
    return re.compile(source, re_flags)


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

def _clean_keys(keys: list[str]) -> list[str]:
    seen: list[str] = []
    for key in keys:
        key = key.strip()
        if key and key not in seen:
            seen.append(key)
    return seen


def _normalize_on_activate(effects: OnActivate | None) -> OnActivate | None:
    if effects is None:
        return None
    world_info = None
    if effects.world_info is not None:
        world_info = WorldInfoActivations(
            activate=_clean_keys(effects.world_info.activate),
            deactivate=_clean_keys(effects.world_info.deactivate),
        )
    return OnActivate(
        authors_note={
            role.strip().lower(): note
            for role, note in effects.authors_note.items()
            if role.strip() and note.strip()
        },
        world_info=world_info,
        preset_overrides={
            role.strip().lower(): dict(overrides)
            for role, overrides in effects.preset_overrides.items()
            if role.strip()
        },
        automations=[cmd.strip() for cmd in effects.automations if cmd.strip()],
        arbiter_preset=dict(effects.arbiter_preset) if effects.arbiter_preset else None,
    )


def _format_schema_errors(e: ValidationError) -> list[str]:
    errors = []
    for err in e.errors():
        path = ".".join(str(p) for p in err["loc"]) or "<root>"
        errors.append(f"{path}: {err['msg']}")
    return errors


# ---------------------------------------------------------------------------
# Compiler
# ---------------------------------------------------------------------------

def compile_story(definition: StoryDefinition | dict[str, Any]) -> StoryGraph:
    """Validate a story definition and build its StoryGraph."""

    # 1. Schema
    if isinstance(definition, StoryDefinition):
        story = definition
    else:
        try:
            story = StoryDefinition.model_validate(definition)
        except ValidationError as e:
            errors = _format_schema_errors(e)
            raise SchemaError(f"Story failed schema validation ({len(errors)} errors)", errors) from e

    # 2. Duplicate ids
    duplicates: list[str] = []
    seen_cp: set[str] = set()
    for i, cp in enumerate(story.checkpoints):
        if cp.id in seen_cp:
            duplicates.append(f"checkpoints.{i}.id: Duplicate checkpoint id '{cp.id}'")
        seen_cp.add(cp.id)
    seen_tr: set[str] = set()
    for i, tr in enumerate(story.transitions):
        if tr.id in seen_tr:
            duplicates.append(f"transitions.{i}.id: Duplicate transition id '{tr.id}'")
        seen_tr.add(tr.id)
    if duplicates:
        raise DuplicateId(duplicates[0], duplicates)

    # 3. Transition endpoints
    unknown = [
        f"Transition {tr.id} references unknown "
        f"{'source' if tr.source not in seen_cp else 'target'} checkpoint"
        for tr in story.transitions
        if tr.source not in seen_cp or tr.target not in seen_cp
    ]
    if unknown:
        raise UnknownCheckpoint(unknown[0], unknown)

    # 4. Regex triggers
    transitions: list[Transition] = []
    for tr in story.transitions:
        trigger: RegexTrigger | TimedTrigger | None = None
        if tr.trigger is not None and tr.trigger.type == "regex":
            compiled = []
            for j, pattern_def in enumerate(tr.trigger.patterns):
                try:
                    compiled.append(compile_regex(pattern_def))
                except re.error as e:
                    raise InvalidPattern(
                        f"Invalid regex at transitions[{tr.id}].trigger.patterns[{j}]: {e}"
                    ) from e
            trigger = RegexTrigger(
                patterns=tuple(compiled),
                condition=tr.trigger.condition.strip(),
                label=tr.trigger.label or "",
            )
        elif tr.trigger is not None:
            trigger = TimedTrigger(
                within_turns=tr.trigger.within_turns,
                label=tr.trigger.label or "",
            )
        transitions.append(Transition(
            id=tr.id,
            source=tr.source,
            target=tr.target,
            outcome=tr.outcome,
            label=tr.label or "",
            description=tr.description or "",
            trigger=trigger,
        ))

    # 5. Start
    indegree = {cp.id: 0 for cp in story.checkpoints}
    for tr in transitions:
        indegree[tr.target] += 1

    if story.start is not None:
        start = story.start.strip()
        if start not in indegree:
            raise UnknownCheckpoint("Story start references unknown checkpoint id")
    else:
        candidates = [cp.id for cp in story.checkpoints if indegree[cp.id] == 0]
        if not candidates:
            raise NoStart(
                "Story transitions form a cycle and no starting checkpoint could be inferred"
            )
        if len(candidates) > 1:
            raise AmbiguousStart(candidates)
        start = candidates[0]

    # 6. Reachability: Kahn-style traversal from start
    remaining = dict(indegree)
    order: list[str] = []
    visited: set[str] = set()
    cyclic: set[str] = set()
    queue: deque[str] = deque([start])
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        order.append(current)
        for tr in transitions:
            if tr.source != current:
                continue
            # an edge back into an already visited node closes a cycle
            if tr.target in visited:
                cyclic.add(tr.target)
                continue
            remaining[tr.target] -= 1
            if remaining[tr.target] <= 0:
                queue.append(tr.target)

    stranded = [cp.id for cp in story.checkpoints if cp.id not in visited or cp.id in cyclic]
    if stranded:
        names = [cp.name for cp in story.checkpoints if cp.id in stranded]
        raise UnreachableOrCyclic(names)

    by_id = {cp.id: cp for cp in story.checkpoints}
    checkpoints = tuple(
        Checkpoint(
            id=by_id[cp_id].id,
            name=by_id[cp_id].name,
            objective=by_id[cp_id].objective,
            on_activate=_normalize_on_activate(by_id[cp_id].on_activate),
        )
        for cp_id in order
    )

    graph = StoryGraph(
        title=story.title,
        description=story.description,
        global_lorebook=story.global_lorebook,
        roles={k.strip().lower(): v.strip() for k, v in story.roles.items() if k.strip() and v.strip()},
        on_start=_normalize_on_activate(story.on_start),
        checkpoints=checkpoints,
        transitions=tuple(transitions),
        start=start,
        talk_control=story.talk_control,
    )
    logger.debug(
        "compiled story %r: %d checkpoints, %d transitions, start=%s",
        graph.title, len(checkpoints), len(transitions), start,
    )
    return graph
