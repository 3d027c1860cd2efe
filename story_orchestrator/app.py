"""FastAPI app exposing a story session over HTTP.

The app owns an in-memory host: a chat frontend reports its messages and
generation phases to /api/session/..., and the engine answers with state
changes and injected talk-control lines.
"""

import logging
import os
import random
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from story_orchestrator.config import Settings, get_settings
from story_orchestrator.events import EventBus
from story_orchestrator.host import InMemoryHost
from story_orchestrator.llm import LLM, llm_from_connection
from story_orchestrator.routes import router
from story_orchestrator.runtime import StoryRuntime
from story_orchestrator.storage import Storage

load_dotenv(Path.cwd() / ".env")

logging.basicConfig(
    level=os.getenv("STORY_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

DEFAULT_DATA_DIR = Path.cwd() / "data"


class AppContext:
    """Everything one app instance shares across requests."""

    def __init__(self, data_dir: Path, llm: LLM | None = None, rng: random.Random | None = None) -> None:
        self.data_dir = data_dir
        self.storage = Storage(data_dir)
        self.settings = get_settings(data_dir)
        self.bus = EventBus()
        self.host = InMemoryHost(self.bus)
        self._fixed_llm = llm
        self.llm: LLM = llm or llm_from_connection(self.settings.llm)
        self.runtime = StoryRuntime(
            bus=self.bus,
            host=self.host,
            context=self.host,
            presets=self.host,
            llm=self.llm,
            storage=self.storage,
            settings=self.settings,
            rng=rng,
        )

    def apply_settings(self, settings: Settings) -> None:
        """Use new settings for the next session (and the LLM connection)."""
        self.settings = settings
        if self._fixed_llm is None:
            self.llm = llm_from_connection(settings.llm)
        self.runtime.configure(settings, self.llm)


def create_app(data_dir: Path | None = None, llm: LLM | None = None, rng: random.Random | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("STORY_DATA_DIR", str(DEFAULT_DATA_DIR)))
    app = FastAPI(title="Story Orchestrator")
    app.state.ctx = AppContext(resolved, llm=llm, rng=rng)
    app.include_router(router, prefix="/api")
    return app
