from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy import select

from scorewatch.domain.models import DISCOVER_STATUS_COMPLETED, DiscoverRun, Tenant
from scorewatch.persistence.db import SessionLocal


@dataclass(frozen=True)
class DemoTenant:
    # Stable ids keep repeated seeding idempotent.
    id: str
    name: str
    target_score: float | None
    has_discover_run: bool


def build_demo_tenants() -> tuple[DemoTenant, ...]:
    return (
        DemoTenant(id="t-demo-1", name="Acme Holdings", target_score=80.0, has_discover_run=True),
        DemoTenant(id="t-demo-2", name="Globex", target_score=70.0, has_discover_run=True),
        # No completed discovery yet; the batch reports it as skipped.
        DemoTenant(id="t-demo-3", name="Initech", target_score=None, has_discover_run=False),
    )


async def seed() -> None:
    async with SessionLocal() as session:
        for demo in build_demo_tenants():
            existing = (await session.execute(select(Tenant).where(Tenant.id == demo.id))).scalar_one_or_none()
            if existing is not None:
                continue
            session.add(Tenant(id=demo.id, name=demo.name, target_score=demo.target_score, is_active=True))
            await session.flush()
            if demo.has_discover_run:
                session.add(DiscoverRun(tenant_id=demo.id, status=DISCOVER_STATUS_COMPLETED))
        await session.commit()
        print("seeded_demo_tenants=ok")


if __name__ == "__main__":
    asyncio.run(seed())
