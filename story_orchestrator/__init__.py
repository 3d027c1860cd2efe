"""Checkpoint-based story orchestration for turn-based chat.

A story is a directed acyclic graph of checkpoints joined by transitions.
One session drives one story against one chat:

  1. compile_story() validates the story definition into a read-only StoryGraph.
  2. TurnController listens to host events and feeds accepted user turns and
     drafted speakers to the orchestrator through the TurnGate (dedup).
  3. StoryOrchestrator counts turns, matches transition triggers and asks the
     ArbiterQueue for a verdict (win / fail / continue) via the LLM.
  4. On a verdict it moves the active checkpoint and applies on-activate
     effects (world info, author's note, preset overrides, automations).
  5. TalkControlService reacts to checkpoint moments and may replace the
     host's next generation with a scripted or generated character line.

StoryRuntime wires all of the above for a chat and persists the runtime state.
"""

from story_orchestrator.graph import StoryGraph, StoryValidationError, compile_story
from story_orchestrator.orchestrator import StoryOrchestrator
from story_orchestrator.runtime import StoryRuntime

__all__ = [
    "StoryGraph",
    "StoryOrchestrator",
    "StoryRuntime",
    "StoryValidationError",
    "compile_story",
]
