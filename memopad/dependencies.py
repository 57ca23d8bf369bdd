"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from fastapi.requests import HTTPConnection

from memopad.config import Settings
from memopad.platform import (
    InMemoryPlatformClient,
    PlatformClient,
    SupabasePlatformClient,
)

logger = logging.getLogger(__name__)


def build_platform_client(settings: Settings) -> PlatformClient:
    """
    Construct the platform client for one application instance.
    """
    if (
        settings.use_in_memory_backends
        or not settings.supabase_url
        or not settings.supabase_anon_key
    ):
        logger.info("Using in-memory platform backend")
        return InMemoryPlatformClient()
    return SupabasePlatformClient(settings.supabase_url, settings.supabase_anon_key)


def get_platform(conn: HTTPConnection) -> PlatformClient:
    return conn.app.state.platform


def get_app_settings(conn: HTTPConnection) -> Settings:
    return conn.app.state.settings
