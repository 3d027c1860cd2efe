"""Shared test fixtures: a small linear story, a stage-keyed stub LLM and an
in-memory host wired to a fresh event bus."""

import copy

import pytest

from story_orchestrator.events import EventBus
from story_orchestrator.graph import compile_story
from story_orchestrator.host import InMemoryHost
from story_orchestrator.storage import Storage


# ---------------------------------------------------------------------------
# StubLLM - dispatches by stage name, independent queue per stage
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an Exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list] | None = None) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in (responses or {}).items()}
        self.calls: list[tuple[str, str]] = []
        self.max_tokens: list[int | None] = []

    async def __call__(self, stage: str, prompt: str, *, max_tokens: int | None = None) -> str:
        self.calls.append((stage, prompt))
        self.max_tokens.append(max_tokens)
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {[c[0] for c in self.calls]}"
            )
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed - catches missing LLM calls."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


WIN = '{"completed": true, "failed": false, "reason": "objective met", "confidence": 0.9}'
FAIL = '{"completed": false, "failed": true, "reason": "player gave up"}'
CONTINUE = '{"completed": false, "failed": false, "reason": "not yet"}'


# ---------------------------------------------------------------------------
# Story fixtures
# ---------------------------------------------------------------------------

LINEAR_STORY = {
    "title": "The Gatehouse",
    "roles": {"dm": "Narrator", "companion": "Mira"},
    "checkpoints": [
        {
            "id": "intro",
            "name": "Intro",
            "objective": "Find the key to the gate.",
            "on_activate": {
                "authors_note": {"dm": "Describe the locked gate."},
                "world_info": {"activate": ["gate"]},
            },
        },
        {
            "id": "middle",
            "name": "The Gate",
            "objective": "Open the gate.",
            "on_activate": {
                "authors_note": {"dm": "The gate groans."},
                "world_info": {"activate": ["courtyard"], "deactivate": ["gate"]},
                "preset_overrides": {"dm": {"temperature": 0.5}},
                "automations": ["/echo gate"],
            },
        },
        {"id": "finale", "name": "Finale", "objective": "Cross the courtyard."},
    ],
    "transitions": [
        {
            "id": "t1",
            "from": "intro",
            "to": "middle",
            "trigger": {"type": "regex", "patterns": ["key"], "condition": "The player finds the key."},
        },
        {
            "id": "t2",
            "from": "middle",
            "to": "finale",
            "trigger": {"type": "regex", "patterns": ["/open(ed)?/"], "condition": "The gate is opened."},
        },
    ],
}


@pytest.fixture
def story() -> dict:
    return copy.deepcopy(LINEAR_STORY)


@pytest.fixture
def graph(story):
    return compile_story(story)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def host(bus) -> InMemoryHost:
    return InMemoryHost(bus, characters=["Narrator", "Mira"])


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path)
