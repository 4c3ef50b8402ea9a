"""Shared API dependencies: settings, DB session, worker, worker auth."""

from __future__ import annotations

import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from docsync.config import Settings
from docsync.services.sync_worker import SyncWorker

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_worker(request: Request) -> SyncWorker:
    """Get the process-wide sync worker from app state."""
    worker: SyncWorker = request.app.state.worker
    return worker


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


async def require_worker_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> None:
    """Require ``Authorization: Bearer <WORKER_SECRET>``. Raises 401 otherwise."""
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode("utf-8"),
        settings.worker_secret.encode("utf-8"),
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
