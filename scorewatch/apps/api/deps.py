from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scorewatch.core.config import get_settings
from scorewatch.persistence.db import SessionLocal, get_session
from scorewatch.services.score_source import HttpScoreSource, ScoreSource


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # The batch opens one session per tenant, so it needs the factory rather than a session.
    return SessionLocal


def get_score_source() -> ScoreSource:
    return HttpScoreSource()


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_cron_secret(request: Request) -> None:
    # Scheduled triggers authenticate with a shared bearer secret; unset secret means dev mode.
    secret = get_settings().cron_secret
    if not secret:
        return
    token = _parse_bearer_token(request.headers.get("authorization"))
    if token is None or not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Unauthorized"},
            headers={"WWW-Authenticate": "Bearer"},
        )
