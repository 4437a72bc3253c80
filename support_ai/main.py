"""FastAPI application wiring for the support AI engine.

- Configures logging, Prometheus metrics and rate limiting.
- Builds the :class:`~support_ai.engine.Engine` on startup (PostgreSQL when
  ``DATABASE_URL`` is set, in-memory otherwise) and runs the fanout worker in
  the background for the lifetime of the app.
- Serves the public chat API, the staff conversation API, and health/version
  probes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .engine import Engine, build_engine
from .limits import limiter
from .routers import chat, conversations

load_dotenv()

logger = logging.getLogger(__name__)


def create_app(engine: Engine | None = None) -> FastAPI:
    """Create the API; pass ``engine`` to bypass environment-driven wiring."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        current = engine or getattr(app.state, "engine", None) or build_engine()
        app.state.engine = current
        worker_task = asyncio.create_task(current.worker.run())
        try:
            yield
        finally:
            await current.aclose()
            worker_task.cancel()
            try:
                await worker_task
            except asyncio.CancelledError:
                pass

    app = FastAPI(title="Support AI Engine", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    widget_origins = os.getenv("WIDGET_ORIGINS")
    if widget_origins:
        origins = [o.strip() for o in widget_origins.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(chat.router)
    app.include_router(conversations.router)

    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )

    @app.get("/api/health")
    async def health():
        """Liveness/readiness probe with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        """Return version information for the application."""
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    return app


app = create_app()
