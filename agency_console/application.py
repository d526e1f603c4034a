"""Application factory wiring settings, storage and the identity provider."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from .api import create_app as create_api_app
from .config import ConsoleSettings, load_settings
from .database import Database, resolve_database_path
from .identity import IdentityProviderClient
from .security import AdminTokenAuth
from .service import LifecycleService

logger = logging.getLogger("agency_console.application")


def build_identity_client(settings: ConsoleSettings) -> Optional[IdentityProviderClient]:
    if not (settings.identity_provider_url and settings.identity_provider_key):
        return None
    return IdentityProviderClient(
        settings.identity_provider_url,
        settings.identity_provider_key,
        timeout=settings.identity_provider_timeout,
    )


def build_service(
    settings: ConsoleSettings,
    *,
    database: Optional[Database] = None,
) -> LifecycleService:
    """Create a :class:`LifecycleService` backed by an initialised database."""

    if database is None:
        database = Database(settings.database_path or resolve_database_path(None))
    database.initialize()

    identity = build_identity_client(settings)
    if identity is None:
        logger.warning("Identity provider is not configured; deletions will not revoke credentials")
    return LifecycleService(database, settings=settings, identity=identity)


def create_application(
    *,
    config_path: Optional[Path] = None,
    settings: Optional[ConsoleSettings] = None,
) -> FastAPI:
    """Create the ASGI application served by ``main.py serve``."""

    settings = settings or load_settings(config_path)
    service = build_service(settings)
    auth = AdminTokenAuth(settings.api_tokens, service.database)
    app = create_api_app(service=service, settings=settings, auth=auth)
    logger.info("Account store at %s", service.database.path)
    return app


__all__ = ["build_identity_client", "build_service", "create_application"]
