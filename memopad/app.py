"""
FastAPI application entry point for the memo service.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from memopad.config import Settings, get_settings
from memopad.dependencies import build_platform_client
from memopad.platform import PlatformClient
from memopad.routes import pages_router, router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None, platform: Optional[PlatformClient] = None
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.platform.close()

    app = FastAPI(title="Memopad", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.platform = platform or build_platform_client(settings)

    if settings.is_development:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(pages_router)
    return app


app = create_app()
