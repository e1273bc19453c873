from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scorewatch.core.errors import RepositoryError
from scorewatch.domain.models import ScoreRun


def _history_query(tenant_id: str):
    # Chronological order; the autoincrement id breaks timestamp ties.
    return (
        select(ScoreRun)
        .where(ScoreRun.tenant_id == tenant_id)
        .order_by(ScoreRun.run_date.asc(), ScoreRun.id.asc())
    )


async def list_score_runs(session: AsyncSession, tenant_id: str, *, limit: int | None = None) -> list[ScoreRun]:
    query = _history_query(tenant_id)
    if limit is not None:
        # Keep the most recent `limit` runs while preserving ascending order.
        recent = (
            select(ScoreRun.id)
            .where(ScoreRun.tenant_id == tenant_id)
            .order_by(ScoreRun.run_date.desc(), ScoreRun.id.desc())
            .limit(limit)
        )
        query = query.where(ScoreRun.id.in_(recent))
    rows = (await session.execute(query)).scalars().all()
    return list(rows)


async def list_total_scores(session: AsyncSession, tenant_id: str) -> list[float]:
    rows = (
        await session.execute(
            select(ScoreRun.total_score)
            .where(ScoreRun.tenant_id == tenant_id)
            .order_by(ScoreRun.run_date.asc(), ScoreRun.id.asc())
        )
    ).scalars().all()
    return [float(value) for value in rows]


async def append_score_run(
    session: AsyncSession,
    *,
    tenant_id: str,
    total_score: float,
    components: dict[str, float],
    stats: dict[str, Any],
) -> ScoreRun:
    run = ScoreRun(
        tenant_id=tenant_id,
        total_score=total_score,
        components=dict(components),
        stats=dict(stats),
    )
    session.add(run)
    try:
        await session.flush()
    except SQLAlchemyError as exc:
        raise RepositoryError("history repository write failed") from exc
    return run
