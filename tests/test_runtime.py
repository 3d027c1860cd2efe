"""Tests for story_orchestrator.runtime: one story session wired to host events."""

import random

import pytest

from conftest import CONTINUE, WIN, StubLLM
from story_orchestrator.config import Settings
from story_orchestrator.events import CHAT_CHANGED, MESSAGE_SENT, EventBus
from story_orchestrator.graph import StoryValidationError
from story_orchestrator.host import InMemoryHost
from story_orchestrator.models import ChatMessage
from story_orchestrator.runtime import StoryRuntime


def _runtime(bus, host, llm, storage=None) -> StoryRuntime:
    return StoryRuntime(
        bus=bus,
        host=host,
        context=host,
        presets=host,
        llm=llm,
        storage=storage,
        rng=random.Random(3),
    )


def _say(bus, host, text: str) -> None:
    message = ChatMessage(name="You", text=text, is_user=True)
    host.chat.append(message)
    bus.emit(MESSAGE_SENT, message)


class TestSession:
    async def test_ensure_story_starts_session(self, bus, host, story) -> None:
        runtime = _runtime(bus, host, StubLLM())
        graph = await runtime.ensure_story(story, "chat-1")
        assert runtime.active
        assert runtime.graph is graph
        status = runtime.status()
        assert status["title"] == "The Gatehouse"
        assert status["chat_id"] == "chat-1"
        assert status["active_checkpoint_id"] == "intro"
        assert [cp["status"] for cp in status["checkpoints"]] == ["current", "pending", "pending"]

    async def test_user_message_drives_story(self, bus, host, story) -> None:
        llm = StubLLM({"arbiter": [WIN]})
        runtime = _runtime(bus, host, llm)
        await runtime.ensure_story(story, "chat-1")
        _say(bus, host, "I found a key under the mat")
        await runtime.wait_idle()
        assert runtime.status()["active_checkpoint_id"] == "middle"
        llm.assert_exhausted()

    async def test_duplicate_send_counts_once(self, bus, host, story) -> None:
        runtime = _runtime(bus, host, StubLLM())
        await runtime.ensure_story(story, "chat-1")
        _say(bus, host, "hello")
        bus.emit(MESSAGE_SENT, host.chat[-1])
        assert runtime.status()["turn"] == 1

    async def test_invalid_story_leaves_no_session(self, bus, host, story) -> None:
        story["transitions"][0]["to"] = "ghost"
        runtime = _runtime(bus, host, StubLLM())
        with pytest.raises(StoryValidationError):
            await runtime.ensure_story(story, "chat-1")
        assert not runtime.active
        assert runtime.status() == {"active": False}
        assert bus.listener_count(MESSAGE_SENT) == 0

    async def test_restart_replaces_listeners(self, bus, host, story) -> None:
        runtime = _runtime(bus, host, StubLLM())
        await runtime.ensure_story(story, "chat-1")
        count = bus.listener_count(MESSAGE_SENT)
        await runtime.ensure_story(story, "chat-2")
        assert bus.listener_count(MESSAGE_SENT) == count
        assert runtime.chat_id == "chat-2"

    async def test_chat_change_tears_down(self, bus, host, story) -> None:
        runtime = _runtime(bus, host, StubLLM())
        await runtime.ensure_story(story, "chat-1")
        bus.emit(CHAT_CHANGED, "chat-1")
        assert runtime.active
        bus.emit(CHAT_CHANGED, "chat-2")
        assert not runtime.active
        assert bus.listener_count(MESSAGE_SENT) == 0

    async def test_teardown_twice(self, bus, host, story) -> None:
        runtime = _runtime(bus, host, StubLLM())
        await runtime.ensure_story(story, "chat-1")
        runtime.teardown()
        runtime.teardown()
        assert runtime.orchestrator is None

    async def test_pause_and_resume(self, bus, host, story) -> None:
        runtime = _runtime(bus, host, StubLLM())
        await runtime.ensure_story(story, "chat-1")
        runtime.pause_automation()
        _say(bus, host, "hello")
        assert runtime.status()["turn"] == 0
        assert runtime.status()["paused"]
        runtime.resume_automation()
        _say(bus, host, "hello again")
        assert runtime.status()["turn"] == 1

    async def test_pause_carries_into_next_session(self, bus, host, story) -> None:
        runtime = _runtime(bus, host, StubLLM())
        runtime.pause_automation()
        await runtime.ensure_story(story, "chat-1")
        _say(bus, host, "hello")
        assert runtime.status()["turn"] == 0

    async def test_configure_updates_running_arbiter_prompt(self, bus, host, story) -> None:
        llm = StubLLM({"arbiter": [CONTINUE]})
        runtime = _runtime(bus, host, llm)
        await runtime.ensure_story(story, "chat-1")
        runtime.configure(Settings(arbiter_prompt="Only judge the gate."))
        await runtime.orchestrator.evaluate_now()
        assert "Only judge the gate." in llm.calls[0][1]

    async def test_intercept_without_session(self, bus, host) -> None:
        runtime = _runtime(bus, host, StubLLM())
        assert await runtime.intercept_generation("normal") is False


class TestPersistence:
    async def test_progress_saved_and_restored(self, bus, host, story, storage) -> None:
        runtime = _runtime(bus, host, StubLLM({"arbiter": [WIN]}), storage)
        graph = await runtime.ensure_story(story, "chat-1")
        _say(bus, host, "the key!")
        await runtime.wait_idle()
        assert storage.load_runtime("chat-1", graph).active_checkpoint_id == "middle"

        other_bus = EventBus()
        other = _runtime(other_bus, InMemoryHost(other_bus), StubLLM(), storage)
        await other.ensure_story(story, "chat-1")
        status = other.status()
        assert status["active_checkpoint_id"] == "middle"
        assert status["turn"] == 1

    async def test_other_chat_starts_fresh(self, bus, host, story, storage) -> None:
        runtime = _runtime(bus, host, StubLLM({"arbiter": [WIN]}), storage)
        await runtime.ensure_story(story, "chat-1")
        _say(bus, host, "the key!")
        await runtime.wait_idle()
        await runtime.ensure_story(story, "chat-2")
        assert runtime.status()["active_checkpoint_id"] == "intro"


class TestTalkControlInSession:
    async def test_on_enter_reply_after_transition(self, bus, host, story) -> None:
        story["talk_control"] = {"checkpoints": {"middle": {"replies": [{
            "member_id": "companion",
            "trigger": "onEnter",
            "content": {"kind": "static", "text": "It's open!"},
        }]}}}
        runtime = _runtime(bus, host, StubLLM({"arbiter": [WIN]}))
        await runtime.ensure_story(story, "chat-1")
        _say(bus, host, "I use the key")
        await runtime.wait_idle()
        assert [(m.name, m.text) for m in host.chat[1:]] == [("Mira", "It's open!")]
        counters = runtime.status()["talk_control"]["middle::0"]
        assert counters["actions_this_turn"] == 1
        assert counters["total_trigger_count"] == 1

    async def test_arbiter_replies_wrap_evaluation(self, bus, host, story) -> None:
        story["talk_control"] = {"checkpoints": {"intro": {"replies": [
            {"member_id": "dm", "trigger": "beforeArbiter", "content": {"kind": "static", "text": "Hmm."}},
            {"member_id": "dm", "trigger": "afterArbiter", "content": {"kind": "static", "text": "Not yet."}},
        ]}}}
        runtime = _runtime(bus, host, StubLLM({"arbiter": [CONTINUE]}))
        await runtime.ensure_story(story, "chat-1")
        _say(bus, host, "is this the key?")
        await runtime.wait_idle()
        texts = [m.text for m in host.chat[1:]]
        assert texts == ["Hmm.", "Not yet."]
