"""
FastAPI application entrypoint for the music streaming backend.

Process-wide handles (database, response cache, storage, identity provider and the
generation executor) are built once in `create_app` and kept on `app.state`;
request handlers receive them through dependencies.

CORS is enabled for local development (http://localhost:3000) and can be extended
via environment variables.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.api.auth import IdentityProvider
from src.api.config import Settings, configure_logging
from src.api.db import Database
from src.api.errors import register_error_handlers
from src.api.models import utcnow
from src.api.response_cache import ResponseCache
from src.api.routes_analytics import router as analytics_router
from src.api.routes_jobs import router as jobs_router
from src.api.routes_recommendations import router as recommendations_router
from src.api.routes_songs import router as songs_router
from src.api.schemas import HealthResponse
from src.api.storage import LocalObjectStorage

logger = logging.getLogger(__name__)

openapi_tags = [
    {"name": "Analytics", "description": "Listening event tracking and per-user statistics."},
    {"name": "Recommendations", "description": "Personalised, similar-song, mood and trending recommendations."},
    {"name": "Songs", "description": "Catalogue listing, playback URLs and content features."},
    {"name": "Jobs", "description": "Maintenance jobs for an external scheduler."},
    {"name": "Health", "description": "Service health and basic runtime info."},
]

_DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]
_GENERATION_WORKERS = 4


# PUBLIC_INTERFACE
def create_app(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    response_cache: Optional[ResponseCache] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Build the application. Arguments override the environment-derived defaults."""
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    database = database or Database()
    executor = ThreadPoolExecutor(max_workers=_GENERATION_WORKERS, thread_name_prefix="recommend")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        executor.shutdown(wait=False)
        database.dispose()

    app = FastAPI(
        title="Music Streaming Backend API",
        description=(
            "Listening analytics and hybrid recommendations for a music streaming service.\n\n"
            "Authentication: bearer access tokens issued by the identity provider.\n\n"
            "Streaming:\n"
            "- GET /songs/{song_id}/stream returns a presigned URL; GET /media/{token} supports range requests."
        ),
        version="3.0.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.database = database
    app.state.response_cache = response_cache or ResponseCache.from_url(settings.redis_url)
    app.state.storage = LocalObjectStorage.from_settings(settings)
    app.state.identity_provider = IdentityProvider.from_settings(settings)
    app.state.executor = executor
    app.state.clock = clock

    # credentials=true requires explicit origins (not '*') in browsers.
    cors_origins = _DEV_ORIGINS + [o for o in settings.cors_origins if o not in _DEV_ORIGINS]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(analytics_router)
    app.include_router(recommendations_router)
    app.include_router(songs_router)
    app.include_router(jobs_router)

    @app.get("/", summary="Liveness check", tags=["Health"])
    def liveness():
        """Return basic service liveness."""
        return {"status": "ok"}

    @app.get("/health", response_model=HealthResponse, summary="Health check", tags=["Health"])
    def health(request: Request) -> HealthResponse:
        """Report whether the database answers a trivial query."""
        if request.app.state.database.ping():
            return HealthResponse(status="ok", database="ok")
        return HealthResponse(status="degraded", database="unavailable")

    return app


app = create_app()
