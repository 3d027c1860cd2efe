"""Demo story for development/testing."""

from story_orchestrator.storage import Storage

DEMO_STORY = {
    "title": "The Lighthouse at Greywater",
    "description": "A keeper has gone missing and the lamp has gone dark.",
    "global_lorebook": "greywater",
    "roles": {"dm": "Narrator", "companion": "Mira"},
    "on_start": {"world_info": {"activate": ["greywater-coast"]}},
    "checkpoints": [
        {
            "id": "arrival",
            "name": "Arrival",
            "objective": "Reach the lighthouse and get inside.",
            "on_activate": {
                "authors_note": {"dm": "Keep the storm oppressive and the door locked."},
                "world_info": {"activate": ["lighthouse-door"]},
            },
        },
        {
            "id": "climb",
            "name": "The Climb",
            "objective": "Climb the stairs to the lamp room.",
            "on_activate": {
                "authors_note": {
                    "dm": "The stairwell is narrow; something moves above.",
                    "companion": "Mira is frightened but insists on going first.",
                },
                "world_info": {"activate": ["stairwell"], "deactivate": ["lighthouse-door"]},
                "preset_overrides": {"companion": {"temperature": 0.9}},
            },
        },
        {
            "id": "lamp",
            "name": "The Lamp Room",
            "objective": "Relight the lamp before the ship hits the rocks.",
            "on_activate": {"automations": ["/sound storm-peak"]},
        },
        {
            "id": "wreck",
            "name": "The Wreck",
            "objective": "Survive the shipwreck on the rocks.",
        },
    ],
    "transitions": [
        {
            "id": "enter",
            "from": "arrival",
            "to": "climb",
            "label": "Inside",
            "trigger": {
                "type": "regex",
                "patterns": ["door", "/enter(s|ed)?/i"],
                "condition": "The player gets through the door into the lighthouse.",
            },
        },
        {
            "id": "reach-top",
            "from": "climb",
            "to": "lamp",
            "trigger": {
                "type": "regex",
                "patterns": ["lamp", "top"],
                "condition": "The player reaches the lamp room.",
            },
        },
        {
            "id": "too-slow",
            "from": "lamp",
            "to": "wreck",
            "outcome": "fail",
            "trigger": {"type": "timed", "within_turns": 6},
        },
    ],
    "talk_control": {
        "checkpoints": {
            "climb": {
                "replies": [
                    {
                        "member_id": "companion",
                        "trigger": "onEnter",
                        "probability": 100,
                        "content": {"kind": "static", "text": "Stay close to me, {{user}}."},
                    },
                    {
                        "member_id": "companion",
                        "speaker_id": "player",
                        "trigger": "afterSpeak",
                        "probability": 40,
                        "cooldown_turns": 2,
                        "content": {"kind": "llm", "instruction": "React nervously to what the player just did."},
                    },
                ]
            }
        }
    },
}


def create_demo_data(storage: Storage) -> str:
    """Write the demo story. Returns its slug."""
    return storage.save_story("greywater", DEMO_STORY)
