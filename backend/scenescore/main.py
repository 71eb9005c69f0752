import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scenescore.config import (
    BUNDLED_AUDIO_DIR,
    CACHE_MAX_SIZE,
    FRONTEND_URL,
    LOG_LEVEL,
    MAX_WAIT_S,
    POLL_INTERVAL_S,
    PRESET_DIR,
)
from scenescore.routers import music
from scenescore.services.artifact_cache import ArtifactCache
from scenescore.services.batch_scheduler import SubmissionWindow
from scenescore.services.director import MusicDirector, PlaybackSink
from scenescore.services.events import Notifier
from scenescore.services.generation import Clock, MusicGenerator, Sleep
from scenescore.services.preset_library import PresetLibrary, PresetStore
from scenescore.services.suno_client import SunoClient

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app(
    *,
    client: SunoClient | None = None,
    preset_dir: Path | str = PRESET_DIR,
    bundled_audio_dir: Path | str | None = BUNDLED_AUDIO_DIR,
    cache_size: int = CACHE_MAX_SIZE,
    poll_interval: float = POLL_INTERVAL_S,
    max_wait: float = MAX_WAIT_S,
    sink: PlaybackSink | None = None,
    sleep: Sleep | None = None,
    clock: Clock | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        notifier = Notifier()
        library = PresetLibrary(PresetStore(preset_dir, bundled_audio_dir), notifier=notifier)
        library.load_all()
        cache = ArtifactCache(cache_size)
        generator = MusicGenerator(
            client or SunoClient(),
            cache,
            library=library,
            notifier=notifier,
            poll_interval=poll_interval,
            max_wait=max_wait,
            sleep=sleep,
            clock=clock,
        )
        app.state.notifier = notifier
        app.state.library = library
        app.state.cache = cache
        app.state.generator = generator
        app.state.director = MusicDirector(library, generator, sink)
        # One submission budget for every batch request.
        app.state.submission_window = SubmissionWindow(clock=clock)
        logger.info("SceneScore ready: %d presets in %s", len(library), preset_dir)
        yield

    app = FastAPI(title="SceneScore — Adaptive Game Music API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[FRONTEND_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(music.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
