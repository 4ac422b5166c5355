from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from circles_node import config as config_mod
from circles_node.api.goals import router as goals_router
from circles_node.api.proposals import router as proposals_router
from circles_node.api.rankings import router as rankings_router
from circles_node.circles_runtime.service import CirclesCore, build_core

log = logging.getLogger(__name__)


def create_app(core: Optional[CirclesCore] = None, cfg: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    Build the HTTP app around a CirclesCore. When no core is passed one is
    built from config and its background sweeper runs for the app's
    lifetime.
    """
    cfg = cfg if cfg is not None else config_mod.load_config()
    owned = core is None
    if core is None:
        core = build_core(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if owned:
            s = config_mod.get_staleness_settings(cfg)
            core.start_background(interval_sec=s["sweep_interval_sec"], reminder_hours=s["reminder_hours"])
        try:
            yield
        finally:
            if owned:
                core.close()

    app = FastAPI(title="Circles Node API", version="0.1.0", lifespan=lifespan)
    app.state.core = core

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config_mod.get_cors_origins(cfg),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(proposals_router)
    app.include_router(rankings_router)
    app.include_router(goals_router)

    @app.get("/health")
    def health():
        return {"ok": True}

    return app
