"""Story document CRUD endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from story_orchestrator.graph import StoryValidationError, compile_story

from .models import get_context

router = APIRouter()


@router.get("/stories")
async def list_stories(ctx=Depends(get_context)):
    """List stored story slugs."""
    return ctx.storage.list_stories()


@router.get("/stories/{slug}")
async def get_story(slug: str, ctx=Depends(get_context)):
    """Get a story document."""
    story = ctx.storage.load_story(slug)
    if story is None:
        raise HTTPException(404, "Story not found")
    return story


@router.put("/stories/{slug}")
async def put_story(slug: str, body: dict[str, Any], ctx=Depends(get_context)):
    """Validate and store a story document."""
    try:
        graph = compile_story(body)
    except StoryValidationError as e:
        raise HTTPException(422, {"message": str(e), "errors": e.errors})
    stored = ctx.storage.save_story(slug, body)
    return {"slug": stored, "title": graph.title, "checkpoints": len(graph.checkpoints)}


@router.delete("/stories/{slug}")
async def delete_story(slug: str, ctx=Depends(get_context)):
    """Delete a story document."""
    if not ctx.storage.delete_story(slug):
        raise HTTPException(404, "Story not found")
    return {"ok": True}
