"""Builds talk-control reply text and inserts it into the chat."""

from __future__ import annotations

import logging
import re
from typing import Any

from story_orchestrator.host import ChatHost
from story_orchestrator.llm import LLM
from story_orchestrator.models import ChatMessage, TalkControlReplyDef
from story_orchestrator.prompts import CONTINUE_TEMPLATE, TALK_CONTROL_TEMPLATE, format_transcript, render_prompt

logger = logging.getLogger(__name__)

TALK_CONTROL_MARKER = "story_orchestrator_talk_control"
MAX_CONTINUATIONS = 2

_MIN_COMPLETE_LENGTH = 20
_TERMINAL = re.compile(r"[.!?…\"'”’)\]*~]$")


def looks_truncated(text: str) -> bool:
    """Heuristic: the model stopped mid-sentence or mid-quote."""
    stripped = text.strip()
    if not stripped:
        return False
    if len(stripped) < _MIN_COMPLETE_LENGTH:
        return True
    if stripped.count('"') % 2 == 1:
        return True
    return not _TERMINAL.search(stripped)


def _strip_name_prefix(text: str, character: str) -> str:
    prefix = f"{character}:"
    stripped = text.strip()
    if stripped.lower().startswith(prefix.lower()):
        stripped = stripped[len(prefix):].strip()
    return stripped


class MessageInjector:
    def __init__(
        self,
        llm: LLM,
        host: ChatHost,
        *,
        response_length: int = 200,
        transcript_messages: int = 10,
    ) -> None:
        self._llm = llm
        self._host = host
        self._response_length = response_length
        self._transcript_messages = transcript_messages

    async def build_text(
        self,
        reply: TalkControlReplyDef,
        character: str,
        objective: str = "",
    ) -> str | None:
        """Return the reply's text, or None when nothing usable was produced."""
        content = reply.content
        if content.kind == "static":
            text = self._host.substitute_params(content.text).strip()
            return text or None

        try:
            prompt = render_prompt(TALK_CONTROL_TEMPLATE, {
                "char": character,
                "objective": objective,
                "transcript": format_transcript(self._host.get_chat(), self._transcript_messages),
                "instruction": self._host.substitute_params(content.instruction),
            })
            text = _strip_name_prefix(
                await self._llm("talk_control", prompt, max_tokens=self._response_length), character,
            )
            for _ in range(MAX_CONTINUATIONS):
                if not looks_truncated(text):
                    break
                more = await self._llm(
                    "talk_control",
                    render_prompt(CONTINUE_TEMPLATE, {"prompt": prompt, "char": character, "partial": text}),
                    max_tokens=self._response_length,
                )
                if not more.strip():
                    break
                text = f"{text}{more}" if more[:1].isspace() else f"{text} {more.strip()}"
                text = text.strip()
        except Exception as e:
            logger.warning("talk-control generation failed for %s: %s", character, e)
            return None
        return text or None

    async def inject(self, character: str, text: str, metadata: dict[str, Any]) -> ChatMessage:
        message = ChatMessage(name=character, text=text, extra={TALK_CONTROL_MARKER: metadata})
        await self._host.add_message(message)
        logger.info("talk-control line injected for %s (%s)", character, metadata.get("trigger"))
        return message
