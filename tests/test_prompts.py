"""Tests for story_orchestrator.prompts: Handlebars rendering and text helpers."""

import pytest

from story_orchestrator.models import ChatMessage
from story_orchestrator.prompts import PromptError, clamp_text, format_transcript, render_prompt


class TestRenderPrompt:
    def test_simple_substitution(self) -> None:
        assert render_prompt("Hello {{{name}}}!", {"name": "Mira"}) == "Hello Mira!"

    def test_triple_stash_not_escaped(self) -> None:
        assert render_prompt("{{{text}}}", {"text": "<b>&</b>"}) == "<b>&</b>"

    def test_each_and_if(self) -> None:
        template = "{{#if show}}{{#each items}}[{{{this}}}]{{/each}}{{/if}}"
        assert render_prompt(template, {"show": True, "items": ["a", "b", "c"]}) == "[a][b][c]"
        assert render_prompt(template, {"show": False, "items": ["a"]}) == ""

    def test_bad_template_raises_prompt_error(self) -> None:
        with pytest.raises(PromptError, match="Template error"):
            render_prompt("{{> missing_partial}}", {})


class TestClampText:
    def test_short_text_unchanged(self) -> None:
        assert clamp_text("hello", 10) == "hello"

    def test_whitespace_collapsed(self) -> None:
        assert clamp_text("  a \n\n b\tc ", 20) == "a b c"

    def test_truncated_with_ellipsis(self) -> None:
        assert clamp_text("abcdefghijkl", 8) == "abcde..."

    def test_none_is_empty(self) -> None:
        assert clamp_text(None, 5) == ""


class TestFormatTranscript:
    def test_empty(self) -> None:
        assert format_transcript([]) == "(no messages yet)"

    def test_numbered_oldest_first(self) -> None:
        messages = [
            ChatMessage(name="You", text="hi", is_user=True),
            ChatMessage(name="Narrator", text="The wind howls."),
        ]
        assert format_transcript(messages) == "1. You: hi\n2. Narrator: The wind howls."

    def test_limit_keeps_latest(self) -> None:
        messages = [ChatMessage(name="You", text=str(i), is_user=True) for i in range(5)]
        assert format_transcript(messages, limit=2) == "1. You: 3\n2. You: 4"

    def test_system_and_blank_messages_skipped(self) -> None:
        messages = [
            ChatMessage(name="System", text="note", is_system=True),
            ChatMessage(name="Mira", text="   "),
            ChatMessage(name="", text="unnamed", is_user=True),
        ]
        assert format_transcript(messages) == "1. Player: unnamed"
