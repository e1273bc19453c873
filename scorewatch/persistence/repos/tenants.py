from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from scorewatch.domain.models import Tenant


async def list_active_tenants(session: AsyncSession) -> list[Tenant]:
    # Stable ordering keeps batch results comparable between runs.
    rows = (
        await session.execute(
            select(Tenant).where(Tenant.is_active.is_(True)).order_by(Tenant.created_at.asc(), Tenant.id.asc())
        )
    ).scalars().all()
    return list(rows)


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def set_baseline_if_unset(session: AsyncSession, tenant_id: str, score: float) -> bool:
    # Conditional UPDATE so concurrent passes cannot overwrite an existing baseline.
    result = await session.execute(
        update(Tenant)
        .where(Tenant.id == tenant_id, Tenant.baseline_score.is_(None))
        .values(baseline_score=score)
    )
    return (result.rowcount or 0) > 0
