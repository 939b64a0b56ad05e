"""rigwatch web interface: FastAPI app factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from .. import __version__
from ..config import MonitorConfig, load_config
from ..exec import SubprocessRunner, TmuxCapture
from ..monitor import ActivityMonitor, Aggregator, build_aggregator

logger = structlog.get_logger()


def create_app(
    config: MonitorConfig | None = None,
    aggregator: Aggregator | None = None,
    activity: ActivityMonitor | None = None,
) -> FastAPI:
    config = config or load_config()
    if aggregator is None:
        default_aggregator, default_activity = build_aggregator(
            config, SubprocessRunner(config.gt_root)
        )
        aggregator = default_aggregator
        activity = activity or default_activity
    elif activity is None:
        activity = ActivityMonitor(
            aggregator.status, TmuxCapture(SubprocessRunner(config.gt_root))
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "rigwatch started",
            gt_root=str(config.gt_root) if config.gt_root else None,
            rigs=list(config.rig_paths()),
        )
        yield
        logger.info("rigwatch stopped")

    app = FastAPI(title="rigwatch", version=__version__, lifespan=lifespan)

    app.state.config = config
    app.state.aggregator = aggregator
    app.state.activity = activity

    from .routes import router

    app.include_router(router)

    return app
