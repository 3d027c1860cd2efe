"""Handlebars prompt rendering for the arbiter and talk-control.

Values are inserted with triple-stash ({{{x}}}) so chat text is not
HTML-escaped. Templates are compiled once and cached by source string.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from typing import Any

import pybars

from story_orchestrator.models import ChatMessage

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

_WHITESPACE = re.compile(r"\s+")


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


ARBITER_TEMPLATE = """You are an impartial story overseer.
Checkpoint: {{{checkpoint.name}}}
Objective: {{{checkpoint.objective}}}
{{{reason_line}}}
Player turn: {{turn}}
{{#if candidates}}Possible transitions:
{{#each candidates}}{{number}}. [{{{id}}}] {{{label}}} | Next: {{{target}}}{{#if condition}} / Condition: {{{condition}}}{{/if}}
{{/each}}{{/if}}Recent conversation (oldest first):
{{{transcript}}}
Latest player message: {{{latest}}}
{{#if extra}}{{{extra}}}
{{/if}}{{{response_format}}}"""

TALK_CONTROL_TEMPLATE = """You are {{{char}}}.
{{#if objective}}Current story objective: {{{objective}}}
{{/if}}Recent conversation (oldest first):
{{{transcript}}}
Instruction: {{{instruction}}}
Write only {{{char}}}'s next line of dialogue, in character, without a name prefix."""

CONTINUE_TEMPLATE = """{{{prompt}}}
{{{char}}}: {{{partial}}}"""


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context."""
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def clamp_text(text: str, limit: int) -> str:
    """Collapse whitespace and truncate to limit characters with "..."."""
    collapsed = _WHITESPACE.sub(" ", text or "").strip()
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: max(0, limit - 3)].rstrip() + "..."


def format_transcript(
    messages: Sequence[ChatMessage],
    limit: int = 10,
    text_limit: int = 300,
    name_limit: int = 40,
) -> str:
    """Number the last `limit` non-system messages as "N. who: text"."""
    visible = [m for m in messages if not m.is_system and m.text.strip()]
    recent = visible[-limit:] if limit > 0 else []
    lines = []
    for i, msg in enumerate(recent, start=1):
        who = clamp_text(msg.name or ("Player" if msg.is_user else "Character"), name_limit)
        lines.append(f"{i}. {who}: {clamp_text(msg.text, text_limit)}")
    return "\n".join(lines) if lines else "(no messages yet)"
