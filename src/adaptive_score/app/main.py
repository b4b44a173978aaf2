from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from loguru import logger

from ..services.cache import ClipCache
from ..services.orchestrator import ScoreOrchestrator
from .clock import TickLoop
from .models import ScoreSettings
from .routes import router
from .settings import Settings, get_settings


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI instance."""
    settings = settings or get_settings()
    cache = ClipCache(
        settings.cache_max_bytes,
        settings.cache_max_clips,
        enable_profiling=settings.enable_profiling,
    )
    score_settings = ScoreSettings(
        seed=settings.default_seed,
        tempo_bpm=settings.default_tempo_bpm,
        loop_seconds=settings.default_loop_seconds,
        cache_max_megabytes=settings.cache_max_megabytes,
        cache_max_clips=settings.cache_max_clips,
    )
    orchestrator = ScoreOrchestrator(score_settings, cache, sample_rate=settings.sample_rate)
    clock = TickLoop(orchestrator, tick_hz=settings.tick_hz)

    async def _warmup_and_start() -> None:
        try:
            statuses = await clock.run_async(lambda score: score.warmup())
            app.state.warmup_status = statuses
            logger.info(
                "Score warmup complete: {}",
                {name: status.ready for name, status in statuses.items()},
            )
        except Exception:  # noqa: BLE001
            logger.exception("Score warmup failed")
        await clock.run_in_thread(lambda score: score.start())
        clock.start()

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        if settings.auto_start:
            await _warmup_and_start()
        yield
        await clock.stop()

    app = FastAPI(title="Adaptive Score", version="0.1.0", lifespan=_lifespan)
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.clock = clock
    app.state.warmup_status = {}
    app.include_router(router)
    return app


app = create_app()
