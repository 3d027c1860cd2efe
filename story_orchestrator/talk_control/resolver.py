"""Speaker-name normalisation and reply -> character resolution."""

from __future__ import annotations

import logging
import re
import unicodedata

from story_orchestrator.models import TalkControlReplyDef

logger = logging.getLogger(__name__)

PLAYER_SPEAKER_ID = "player"

_EXTENSION = re.compile(r"\.\w+$")
_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: str | None, *, strip_extension: bool = True) -> str:
    """Case-fold, drop diacritics and (optionally) a trailing file extension.

    "Élodie.png" → "elodie"
    """
    text = unicodedata.normalize("NFKD", name or "")
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = unicodedata.normalize("NFKC", text).strip().casefold()
    if strip_extension:
        text = _EXTENSION.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


class CharacterResolver:
    """Maps reply member / speaker ids to character names via story roles."""

    def __init__(self, roles: dict[str, str]) -> None:
        self._display_by_key: dict[str, str] = {}
        for role, display in roles.items():
            self._display_by_key[normalize_name(role)] = display
            self._display_by_key[normalize_name(display)] = display

    def display_name(self, member_id: str) -> str | None:
        return self._display_by_key.get(normalize_name(member_id))

    def expected_speakers(self, reply: TalkControlReplyDef) -> set[str]:
        """Normalized speaker ids an afterSpeak reply reacts to (empty = anyone)."""
        if not reply.speaker_id.strip():
            return set()
        speaker = normalize_name(reply.speaker_id)
        if speaker == PLAYER_SPEAKER_ID:
            return {PLAYER_SPEAKER_ID}
        expected = {speaker}
        display = self.display_name(reply.speaker_id)
        if display:
            expected.add(normalize_name(display))
        return expected

    def candidate_names(self, reply: TalkControlReplyDef) -> list[str]:
        names = [reply.member_id]
        display = self.display_name(reply.member_id)
        if display and display not in names:
            names.append(display)
        return names

    def resolve_character(self, reply: TalkControlReplyDef, characters: list[str]) -> str | None:
        """Return the host character name for the reply's member, or None."""
        by_norm = {normalize_name(c): c for c in characters}
        for candidate in self.candidate_names(reply):
            found = by_norm.get(normalize_name(candidate))
            if found is not None:
                return found
        logger.warning(
            "talk-control could not resolve character for member %r (candidates %s)",
            reply.member_id, self.candidate_names(reply),
        )
        return None
