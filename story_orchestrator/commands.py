"""Text control commands for a running story session.

    checkpoint                  list checkpoints with their status
    checkpoint list|status|ls   same
    checkpoint next|prev        move one checkpoint forward / back
    checkpoint 2                activate by 1-based index
    checkpoint finale           activate by id

    story status                one-line summary
    story eval                  evaluate the active checkpoint now
    story reset                 back to the start checkpoint
    story pause|resume          stop / restart reacting to chat events
    story interval 4            set the periodic evaluation interval

Aliases: "cp" for checkpoint. Every command returns a human-readable line.
"""

from __future__ import annotations

import logging

from story_orchestrator.runtime import StoryRuntime

logger = logging.getLogger(__name__)

_STATUS_MARKS = {"complete": "x", "current": ">", "failed": "!", "pending": " "}


async def run_command(runtime: StoryRuntime, line: str) -> str:
    parts = line.strip().lstrip("/").split(maxsplit=1)
    if not parts:
        return "[story] Empty command"
    name = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""
    if name in ("checkpoint", "cp"):
        return checkpoint_command(runtime, arg)
    if name == "story":
        return await story_command(runtime, arg)
    return f"[story] Unknown command: {name}"


def _format_checkpoint_list(runtime: StoryRuntime) -> str:
    status = runtime.status()
    lines = [f"[checkpoint] {status['title']}"]
    for i, cp in enumerate(status["checkpoints"], start=1):
        lines.append(f"  [{_STATUS_MARKS[cp['status']]}] {i}. {cp['name']} ({cp['id']})")
    return "\n".join(lines)


def _format_activation(runtime: StoryRuntime) -> str:
    cp = runtime.orchestrator.active_checkpoint
    return f"[checkpoint] Active: {cp.name} ({runtime.orchestrator.snapshot().checkpoint_index + 1}/{len(runtime.graph.checkpoints)})"


def checkpoint_command(runtime: StoryRuntime, token: str) -> str:
    if not runtime.active:
        return "[checkpoint] No story loaded"
    orch = runtime.orchestrator
    lower = token.lower()

    if lower in ("", "list", "status", "ls"):
        return _format_checkpoint_list(runtime)

    if lower in ("next", "+1", "forward"):
        if not orch.activate_relative(1):
            return "[checkpoint] Already at the final checkpoint"
        return _format_activation(runtime)

    if lower in ("prev", "previous", "-1", "back"):
        if not orch.activate_relative(-1):
            return "[checkpoint] Already at the first checkpoint"
        return _format_activation(runtime)

    index = -1
    if token.isdigit() and int(token) >= 1:
        index = int(token) - 1
    if index < 0:
        index = runtime.graph.index_of(token)
    if index < 0 or not orch.activate_index(index):
        return f"[checkpoint] Not found: {token}"
    return _format_activation(runtime)


async def story_command(runtime: StoryRuntime, arg: str) -> str:
    parts = arg.split()
    action = parts[0].lower() if parts else "status"

    if action == "pause":
        runtime.pause_automation()
        return "[story] Automation paused"
    if action == "resume":
        runtime.resume_automation()
        return "[story] Automation resumed"

    if not runtime.active:
        return "[story] No story loaded"
    orch = runtime.orchestrator

    if action == "status":
        s = runtime.status()
        return (
            f"[story] {s['title']}: {orch.active_checkpoint.name} "
            f"(turn {s['turn']}, eval every {s['interval_turns']} turns"
            f"{', paused' if s['paused'] else ''}{', halted' if s['halted'] else ''}"
            f"{', finished' if s['finished'] else ''})"
        )
    if action in ("eval", "evaluate"):
        verdict = await orch.evaluate_now()
        if verdict is None:
            return "[story] Evaluation was dropped"
        reason = f": {verdict.reason}" if verdict.reason else ""
        return f"[story] Verdict {verdict.outcome}{reason}"
    if action == "reset":
        orch.reset_story()
        return f"[story] Reset to {orch.active_checkpoint.name}"
    if action == "interval":
        if len(parts) < 2:
            return "[story] Usage: story interval <turns>"
        value = orch.set_interval_turns(parts[1])
        return f"[story] Evaluating every {value} turns"
    return f"[story] Unknown action: {action}"
