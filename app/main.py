from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api import router
from app.broadcast import EventBroadcaster
from datastore.history_buffer import build_default_history
from logging_config import configure_logging
from services.pipeline import WeightPipeline, build_default_pipeline
from settings import get_settings
from storage.config_store import build_default_config_store

logger = logging.getLogger(__name__)


async def prune_periodically(pipeline: WeightPipeline, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        pipeline.prune()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    pipeline = build_default_pipeline()
    detach = app.state.broadcaster.attach(pipeline)
    pruner = asyncio.create_task(
        prune_periodically(pipeline, get_settings().prune_interval_seconds)
    )
    logger.info("Weight pipeline started")
    try:
        yield
    finally:
        pruner.cancel()
        await asyncio.gather(pruner, return_exceptions=True)
        detach()
        pipeline.close()
        build_default_pipeline.cache_clear()
        build_default_history.cache_clear()
        build_default_config_store.cache_clear()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="Scale Inventory Monitor",
        description="Stabilizes scale readings, counts items and pushes updates to observers.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.broadcaster = EventBroadcaster()
    app.include_router(router)
    return app

app = create_app()
