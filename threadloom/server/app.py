# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from threadloom import __version__
from threadloom.config.configuration import Settings
from threadloom.config.loader import configure_logging
from threadloom.sessions.manager import SessionManager

from .context import AppContext
from .dependencies import get_sessions
from .sessions_router import router as sessions_router
from .threads_router import router as threads_router
from .triggers_router import router as triggers_router
from .webhooks_router import router as webhooks_router

logger = logging.getLogger(__name__)


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the API. Without a context, one is created from the environment at startup."""
    settings = context.settings if context is not None else Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or AppContext(settings)
        await ctx.start()
        app.state.context = ctx
        try:
            yield
        finally:
            await ctx.shutdown()

    app = FastAPI(
        title="Threadloom API",
        description="Persistent multi-agent conversation threads, sessions and triggers",
        version=__version__,
        lifespan=lifespan,
    )

    logger.info("Allowed origins: %s", settings.allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(sessions_router)
    app.include_router(threads_router)
    app.include_router(triggers_router)
    app.include_router(webhooks_router)

    @app.get("/api/stats")
    async def stats(sessions: SessionManager = Depends(get_sessions)) -> dict[str, Any]:
        return sessions.stats()

    return app


def _default_app() -> FastAPI:
    configure_logging()
    return create_app()


app = _default_app()
