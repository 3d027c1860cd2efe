"""Tests for story_orchestrator.state: status maps, defaults and repair."""

from story_orchestrator.state import (
    RuntimeState,
    compute_status_map,
    derive_checkpoint_statuses,
    make_default_state,
    sanitize_runtime,
    story_signature,
)
from story_orchestrator.graph import compile_story


class TestStatusMap:
    def test_compute_status_map(self, graph) -> None:
        assert compute_status_map(graph, 1) == {"intro": "complete", "middle": "current", "finale": "pending"}

    def test_failed_status_kept_for_other_checkpoints(self, graph) -> None:
        statuses = compute_status_map(graph, 2, {"intro": "failed"})
        assert statuses == {"intro": "failed", "middle": "complete", "finale": "current"}

    def test_failed_checkpoint_becomes_current_when_reactivated(self, graph) -> None:
        assert compute_status_map(graph, 0, {"intro": "failed"})["intro"] == "current"

    def test_derive_fills_missing_entries(self, graph) -> None:
        state = RuntimeState(active_checkpoint_id="middle", checkpoint_index=1, checkpoint_statuses={"intro": "failed"})
        assert derive_checkpoint_statuses(graph, state) == ["failed", "current", "pending"]


class TestDefaultState:
    def test_default_state_at_start(self, graph) -> None:
        state = make_default_state(graph, 4)
        assert state.active_checkpoint_id == "intro"
        assert state.checkpoint_index == 0
        assert state.turn == 0
        assert state.interval_turns == 4
        assert state.checkpoint_statuses["intro"] == "current"

    def test_interval_clamped(self, graph) -> None:
        assert make_default_state(graph, 0).interval_turns == 1
        assert make_default_state(graph, 1000).interval_turns == 99


class TestSanitizeRuntime:
    def test_active_id_wins_over_index(self, graph) -> None:
        state = sanitize_runtime(graph, RuntimeState(active_checkpoint_id="finale", checkpoint_index=0))
        assert state.checkpoint_index == 2
        assert state.checkpoint_statuses == {"intro": "complete", "middle": "complete", "finale": "current"}

    def test_unknown_id_falls_back_to_clamped_index(self, graph) -> None:
        state = sanitize_runtime(graph, RuntimeState(active_checkpoint_id="ghost", checkpoint_index=42))
        assert state.active_checkpoint_id == "finale"
        assert state.checkpoint_index == 2

    def test_counters_and_statuses_repaired(self, graph) -> None:
        state = sanitize_runtime(graph, RuntimeState(
            active_checkpoint_id="intro",
            turn=-3,
            turns_since_eval=-1,
            checkpoint_turn_count=-9,
            interval_turns=0,
            checkpoint_statuses={"ghost": "complete", "middle": "current"},
        ))
        assert (state.turn, state.turns_since_eval, state.checkpoint_turn_count) == (0, 0, 0)
        assert state.interval_turns == 1
        assert state.checkpoint_statuses == {"intro": "current", "middle": "pending", "finale": "pending"}

    def test_failed_active_checkpoint_stays_failed(self, graph) -> None:
        state = sanitize_runtime(graph, RuntimeState(
            active_checkpoint_id="middle", checkpoint_statuses={"middle": "failed"},
        ))
        assert state.checkpoint_statuses["middle"] == "failed"


class TestStorySignature:
    def test_stable_for_same_structure(self, story, graph) -> None:
        story["title"] = "Renamed"
        story["checkpoints"][0]["objective"] = "Something else"
        assert story_signature(compile_story(story)) == story_signature(graph)

    def test_changes_with_edges(self, story, graph) -> None:
        story["transitions"][1]["id"] = "open-gate"
        assert story_signature(compile_story(story)) != story_signature(graph)
