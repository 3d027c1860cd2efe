"""Health check and settings endpoints."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from story_orchestrator.config import update_settings

from .models import get_context

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(ctx=Depends(get_context)):
    """Get engine settings."""
    return ctx.settings.model_dump()


@router.patch("/settings")
async def patch_settings(body: dict, ctx=Depends(get_context)):
    """Update engine settings (partial merge). Applies to the next session."""
    try:
        settings = update_settings(ctx.data_dir, body)
    except ValidationError as e:
        raise HTTPException(422, e.errors(include_url=False))
    ctx.apply_settings(settings)
    return settings.model_dump()
