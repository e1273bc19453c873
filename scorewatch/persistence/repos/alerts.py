from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scorewatch.core.errors import RepositoryError
from scorewatch.domain.models import ALERT_STATUS_NEW, Alert


async def add_alert(
    session: AsyncSession,
    *,
    tenant_id: str,
    alert_type: str,
    severity: str,
    title: str,
    message: str,
    trigger_data: dict[str, Any] | None = None,
) -> Alert:
    alert = Alert(
        tenant_id=tenant_id,
        type=alert_type,
        severity=severity,
        title=title,
        message=message,
        trigger_data=trigger_data,
        status=ALERT_STATUS_NEW,
    )
    session.add(alert)
    try:
        await session.flush()
    except SQLAlchemyError as exc:
        raise RepositoryError("alert sink write failed") from exc
    return alert


async def list_alerts(session: AsyncSession, tenant_id: str, *, limit: int = 50) -> list[Alert]:
    rows = (
        await session.execute(
            select(Alert)
            .where(Alert.tenant_id == tenant_id)
            .order_by(Alert.created_at.desc(), Alert.id.desc())
            .limit(limit)
        )
    ).scalars().all()
    return list(rows)
