"""Pydantic request models for API endpoints, plus the context accessor."""

from typing import TYPE_CHECKING, Literal

from fastapi import Request
from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from story_orchestrator.app import AppContext


def get_context(request: Request) -> "AppContext":
    return request.app.state.ctx


class StartSessionBody(BaseModel):
    story: str
    chat_id: str


class MessageBody(BaseModel):
    name: str = ""
    text: str
    is_user: bool = True


class GenerationBody(BaseModel):
    phase: Literal["started", "stopped", "ended"]
    type: str = "normal"
    character: str | None = None
    dry_run: bool = False


class CommandBody(BaseModel):
    command: str


class CharactersBody(BaseModel):
    names: list[str] = Field(default_factory=list)
