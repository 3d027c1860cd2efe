"""Story session endpoints: start, inspect, chat events, commands."""

from fastapi import APIRouter, Depends, HTTPException

from story_orchestrator.commands import run_command
from story_orchestrator.events import (
    GENERATION_ENDED,
    GENERATION_STARTED,
    GENERATION_STOPPED,
    MESSAGE_RECEIVED,
    MESSAGE_SENT,
)
from story_orchestrator.graph import StoryValidationError
from story_orchestrator.models import ChatMessage

from .models import CharactersBody, CommandBody, GenerationBody, MessageBody, StartSessionBody, get_context

router = APIRouter()

_PHASE_EVENTS = {
    "started": GENERATION_STARTED,
    "stopped": GENERATION_STOPPED,
    "ended": GENERATION_ENDED,
}


def _require_session(ctx) -> None:
    if not ctx.runtime.active:
        raise HTTPException(409, "No story session is active")


@router.post("/session")
async def start_session(body: StartSessionBody, ctx=Depends(get_context)):
    """Load a stored story for a chat, restoring its saved progress."""
    story = ctx.storage.load_story(body.story)
    if story is None:
        raise HTTPException(404, "Story not found")
    try:
        await ctx.runtime.ensure_story(story, body.chat_id)
    except StoryValidationError as e:
        raise HTTPException(422, {"message": str(e), "errors": e.errors})
    return ctx.runtime.status()


@router.get("/session")
async def get_session(ctx=Depends(get_context)):
    """Current session status (checkpoints, counters, flags)."""
    return ctx.runtime.status()


@router.delete("/session")
async def end_session(ctx=Depends(get_context)):
    """Close the session; saved progress stays on disk."""
    ctx.runtime.teardown()
    return {"ok": True}


@router.get("/session/chat")
async def get_chat(ctx=Depends(get_context)):
    """Chat transcript as the engine sees it."""
    return [m.model_dump() for m in ctx.host.chat]


@router.put("/session/characters")
async def set_characters(body: CharactersBody, ctx=Depends(get_context)):
    """Replace the host character list used to resolve talk-control speakers."""
    ctx.host.characters = list(body.names)
    return {"characters": ctx.host.characters}


@router.post("/session/messages")
async def post_message(body: MessageBody, ctx=Depends(get_context)):
    """Report a chat message (user or character) to the engine."""
    _require_session(ctx)
    before = len(ctx.host.chat)
    message = ChatMessage(
        name=body.name or (ctx.host.user_name if body.is_user else "Character"),
        text=body.text,
        is_user=body.is_user,
    )
    ctx.host.chat.append(message)
    ctx.bus.emit(MESSAGE_SENT if body.is_user else MESSAGE_RECEIVED, message)
    await ctx.runtime.wait_idle()
    return {
        "status": ctx.runtime.status(),
        "injected": [m.model_dump() for m in ctx.host.chat[before + 1:]],
    }


@router.post("/session/generation")
async def post_generation(body: GenerationBody, ctx=Depends(get_context)):
    """Report a generation phase. On "started" the engine may take the turn."""
    _require_session(ctx)
    before = len(ctx.host.chat)
    ctx.host.current_character = body.character
    ctx.bus.emit(
        _PHASE_EVENTS[body.phase],
        body.type,
        {"dry_run": body.dry_run, "character": body.character},
    )
    intercepted = False
    if body.phase == "started":
        intercepted = await ctx.runtime.intercept_generation(body.type, dry_run=body.dry_run)
    await ctx.runtime.wait_idle()
    return {
        "intercepted": intercepted,
        "injected": [m.model_dump() for m in ctx.host.chat[before:]],
    }


@router.post("/session/command")
async def post_command(body: CommandBody, ctx=Depends(get_context)):
    """Run a checkpoint/story text command."""
    return {"result": await run_command(ctx.runtime, body.command)}
