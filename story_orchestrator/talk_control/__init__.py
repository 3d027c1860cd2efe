"""Talk-control: scripted or generated character lines at story moments.

Moments:
  onEnter        a checkpoint became active
  beforeArbiter  an evaluation is about to run
  afterArbiter   an evaluation finished
  afterSpeak     the player or a character produced a message

TalkControlService queues moments and drains them on the event loop. For
each moment ReplySelector picks at most one eligible reply (shuffle,
enabled, speaker, probability, cooldown, max triggers). The reply's
character is found through CharacterResolver and MessageInjector produces
the text (static or LLM) and inserts it into the chat. While the host is
generating, a selected reply replaces the host's generation instead.
"""

from story_orchestrator.talk_control.injector import TALK_CONTROL_MARKER, MessageInjector
from story_orchestrator.talk_control.resolver import PLAYER_SPEAKER_ID, CharacterResolver, normalize_name
from story_orchestrator.talk_control.selector import ReplySelector, Selection, TalkControlMoment
from story_orchestrator.talk_control.service import TalkControlService

__all__ = [
    "PLAYER_SPEAKER_ID",
    "TALK_CONTROL_MARKER",
    "CharacterResolver",
    "MessageInjector",
    "ReplySelector",
    "Selection",
    "TalkControlMoment",
    "TalkControlService",
    "normalize_name",
]
