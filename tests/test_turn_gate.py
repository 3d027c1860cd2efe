"""Tests for story_orchestrator.turn_gate: TurnGate and TurnController."""

from unittest.mock import MagicMock

import pytest

from story_orchestrator.events import (
    GENERATION_ENDED,
    GENERATION_STARTED,
    GROUP_MEMBER_DRAFTED,
    MESSAGE_SENT,
)
from story_orchestrator.models import ChatMessage
from story_orchestrator.turn_gate import TurnController, TurnGate


# ---------------------------------------------------------------------------
# TurnGate
# ---------------------------------------------------------------------------

class TestShouldAcceptUser:
    def test_first_message_accepted(self) -> None:
        assert TurnGate().should_accept_user("hello", 0) is True

    def test_same_message_and_key_rejected(self) -> None:
        gate = TurnGate()
        gate.should_accept_user("hello", 0)
        assert gate.should_accept_user("hello", 0) is False

    def test_same_text_new_key_accepted(self) -> None:
        gate = TurnGate()
        gate.should_accept_user("hello", 0)
        assert gate.should_accept_user("hello", 2) is True

    def test_signature_ignores_case_and_outer_whitespace(self) -> None:
        gate = TurnGate()
        gate.should_accept_user("Hello", 1)
        assert gate.should_accept_user("  hello ", 1) is False

    def test_empty_text_rejected(self) -> None:
        assert TurnGate().should_accept_user("   ", 0) is False

    def test_reset_forgets_last_message(self) -> None:
        gate = TurnGate()
        gate.should_accept_user("hello", 0)
        gate.reset()
        assert gate.should_accept_user("hello", 0) is True


class TestShouldApplyRole:
    def test_once_per_epoch(self) -> None:
        gate = TurnGate()
        assert gate.should_apply_role("dm", 0) is True
        assert gate.should_apply_role("dm", 0) is False

    def test_new_epoch_allows_again(self) -> None:
        gate = TurnGate()
        gate.should_apply_role("dm", 0)
        gate.new_epoch()
        assert gate.epoch == 1
        assert gate.should_apply_role("dm", 0) is True

    def test_other_role_or_checkpoint_is_separate(self) -> None:
        gate = TurnGate()
        gate.should_apply_role("dm", 0)
        assert gate.should_apply_role("companion", 0) is True
        assert gate.should_apply_role("dm", 1) is True

    def test_end_epoch_clears_roles(self) -> None:
        gate = TurnGate()
        gate.should_apply_role("dm", 0)
        gate.end_epoch()
        assert gate.should_apply_role("dm", 0) is True

    def test_empty_role_rejected(self) -> None:
        assert TurnGate().should_apply_role("", 0) is False

    def test_reset_zeroes_epoch(self) -> None:
        gate = TurnGate()
        gate.new_epoch()
        gate.new_epoch()
        gate.reset()
        assert gate.epoch == 0


# ---------------------------------------------------------------------------
# TurnController
# ---------------------------------------------------------------------------

class TestTurnController:
    @pytest.fixture
    def orchestrator(self) -> MagicMock:
        return MagicMock()

    @pytest.fixture
    def controller(self, bus, host, orchestrator) -> TurnController:
        controller = TurnController(bus, host, TurnGate(), orchestrator)
        controller.attach()
        return controller

    def _send(self, bus, host, text: str) -> ChatMessage:
        message = ChatMessage(name="You", text=text, is_user=True)
        host.chat.append(message)
        bus.emit(MESSAGE_SENT, message)
        return message

    def test_user_message_forwarded(self, controller, bus, host, orchestrator) -> None:
        self._send(bus, host, "I look around")
        orchestrator.handle_user_text.assert_called_once_with("I look around")

    def test_duplicate_event_forwarded_once(self, controller, bus, host, orchestrator) -> None:
        message = self._send(bus, host, "I look around")
        bus.emit(MESSAGE_SENT, message)
        bus.emit(MESSAGE_SENT, 0)
        assert orchestrator.handle_user_text.call_count == 1

    def test_repeated_text_in_new_message_forwarded(self, controller, bus, host, orchestrator) -> None:
        self._send(bus, host, "again")
        self._send(bus, host, "again")
        assert orchestrator.handle_user_text.call_count == 2

    def test_payload_without_message_uses_latest_user_message(self, controller, bus, host, orchestrator) -> None:
        host.chat.append(ChatMessage(name="You", text="open the door", is_user=True))
        host.chat.append(ChatMessage(name="Narrator", text="It creaks."))
        bus.emit(MESSAGE_SENT)
        orchestrator.handle_user_text.assert_called_once_with("open the door")

    def test_character_message_ignored(self, controller, bus, host, orchestrator) -> None:
        bus.emit(MESSAGE_SENT, ChatMessage(name="Mira", text="hi"))
        orchestrator.handle_user_text.assert_not_called()

    def test_generation_started_applies_role(self, controller, bus, orchestrator) -> None:
        bus.emit(GENERATION_STARTED, "normal", {"character": "Mira"})
        orchestrator.set_active_role.assert_called_once_with("Mira")

    def test_quiet_and_dry_run_generations_ignored(self, controller, bus, orchestrator) -> None:
        bus.emit(GENERATION_STARTED, "quiet", {"character": "Mira"})
        bus.emit(GENERATION_STARTED, "normal", {"character": "Mira", "dry_run": True})
        orchestrator.set_active_role.assert_not_called()

    def test_member_drafted_opens_epoch(self, controller, bus, orchestrator) -> None:
        gate = controller._gate
        bus.emit(GROUP_MEMBER_DRAFTED, "Narrator")
        assert gate.epoch == 1
        orchestrator.set_active_role.assert_called_once_with("Narrator")

    def test_generation_end_closes_epoch(self, controller, bus) -> None:
        gate = controller._gate
        gate.should_apply_role("dm", 0)
        bus.emit(GENERATION_ENDED)
        assert gate.should_apply_role("dm", 0) is True

    def test_paused_controller_ignores_events(self, controller, bus, host, orchestrator) -> None:
        controller.paused = True
        self._send(bus, host, "hello")
        bus.emit(GENERATION_STARTED, "normal", {"character": "Mira"})
        orchestrator.handle_user_text.assert_not_called()
        orchestrator.set_active_role.assert_not_called()

    def test_detach_removes_listeners(self, controller, bus, host, orchestrator) -> None:
        controller.detach()
        assert not controller.attached
        assert bus.listener_count(MESSAGE_SENT) == 0
        self._send(bus, host, "hello")
        orchestrator.handle_user_text.assert_not_called()
