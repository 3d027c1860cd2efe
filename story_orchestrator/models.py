"""Story definition schema and chat message types.

Story documents are validated with pydantic at the boundary; everything
downstream (graph compiler, orchestrator, talk-control) works on these types.

A minimal story:

    {
      "title": "The Lighthouse",
      "roles": {"dm": "Narrator", "companion": "Mira"},
      "checkpoints": [
        {"id": "arrive", "name": "Arrival", "objective": "Reach the lighthouse."},
        {"id": "climb",  "name": "The Climb", "objective": "Climb to the lamp room."}
      ],
      "transitions": [
        {"id": "t1", "from": "arrive", "to": "climb",
         "trigger": {"type": "regex", "patterns": ["door", "/enter(s|ed)?/i"],
                     "condition": "The player enters the lighthouse."}}
      ]
    }
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------

class RegexPattern(BaseModel):
    pattern: str = Field(min_length=1)
    flags: str | None = None


# "text", "/text/flags" or {"pattern": ..., "flags": ...}
PatternDef = Annotated[str, Field(min_length=1)] | RegexPattern


class RegexTriggerDef(BaseModel):
    type: Literal["regex"] = "regex"
    patterns: list[PatternDef] = Field(min_length=1)
    condition: str = ""
    label: str | None = None


class TimedTriggerDef(BaseModel):
    type: Literal["timed"]
    within_turns: int = Field(ge=1)
    label: str | None = None


TriggerDef = Annotated[RegexTriggerDef | TimedTriggerDef, Field(discriminator="type")]

TransitionOutcome = Literal["win", "fail"]


# ---------------------------------------------------------------------------
# On-activate effects
# ---------------------------------------------------------------------------

class WorldInfoActivations(BaseModel):
    activate: list[str] = Field(default_factory=list)
    deactivate: list[str] = Field(default_factory=list)


class OnActivate(BaseModel):
    """Side effects applied when a checkpoint (or the story) becomes active.

    authors_note and preset_overrides are keyed by role; the orchestrator
    applies the entry for whichever role is about to speak.
    """

    authors_note: dict[str, str] = Field(default_factory=dict)
    world_info: WorldInfoActivations | None = None
    preset_overrides: dict[str, dict[str, Any]] = Field(default_factory=dict)
    automations: list[str] = Field(default_factory=list)
    arbiter_preset: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Talk-control
# ---------------------------------------------------------------------------

TalkControlTrigger = Literal["onEnter", "beforeArbiter", "afterArbiter", "afterSpeak"]


class StaticReplyContent(BaseModel):
    kind: Literal["static"] = "static"
    text: str = Field(min_length=1)


class LLMReplyContent(BaseModel):
    kind: Literal["llm"]
    instruction: str = Field(min_length=1)


ReplyContent = Annotated[StaticReplyContent | LLMReplyContent, Field(discriminator="kind")]


class TalkControlReplyDef(BaseModel):
    member_id: str = Field(min_length=1)  # role key or character name that speaks
    speaker_id: str = ""  # afterSpeak only: who must have spoken ("player" for the user)
    enabled: bool = True
    trigger: TalkControlTrigger
    probability: int = Field(default=100, ge=0, le=100)
    max_triggers: int | None = Field(default=None, ge=1)
    cooldown_turns: int = Field(default=0, ge=0)
    content: ReplyContent


class TalkControlCheckpointDef(BaseModel):
    replies: list[TalkControlReplyDef] = Field(default_factory=list)


class TalkControlDef(BaseModel):
    enabled: bool = True
    checkpoints: dict[str, TalkControlCheckpointDef] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Story
# ---------------------------------------------------------------------------

class CheckpointDef(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    objective: str = ""
    on_activate: OnActivate | None = None


class TransitionDef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    source: str = Field(alias="from", min_length=1)
    target: str = Field(alias="to", min_length=1)
    outcome: TransitionOutcome = "win"
    label: str | None = None
    description: str | None = None
    trigger: TriggerDef | None = None


class StoryDefinition(BaseModel):
    """A story document as authored."""

    title: str = Field(min_length=1)
    description: str = ""
    global_lorebook: str = ""
    roles: dict[str, str] = Field(default_factory=dict)  # role key -> character name
    on_start: OnActivate | None = None
    checkpoints: list[CheckpointDef] = Field(min_length=1)
    transitions: list[TransitionDef] = Field(default_factory=list)
    start: str | None = None
    talk_control: TalkControlDef | None = None


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class ChatMessage(BaseModel):
    """One message of the host chat, as seen by the engine."""

    name: str
    text: str
    is_user: bool = False
    is_system: bool = False
    extra: dict[str, Any] = Field(default_factory=dict)
