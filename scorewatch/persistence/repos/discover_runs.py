from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scorewatch.domain.models import DISCOVER_STATUS_COMPLETED, DiscoverRun


async def latest_completed_discover_run(session: AsyncSession, tenant_id: str) -> DiscoverRun | None:
    return (
        await session.execute(
            select(DiscoverRun)
            .where(DiscoverRun.tenant_id == tenant_id, DiscoverRun.status == DISCOVER_STATUS_COMPLETED)
            .order_by(DiscoverRun.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
