from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from scorewatch.apps.api.deps import get_db
from scorewatch.apps.api.rate_limit import with_rate_limit
from scorewatch.core.config import PROFILE_STANDARD
from scorewatch.domain.models import Alert, ScoreRun
from scorewatch.persistence.repos.alerts import list_alerts
from scorewatch.persistence.repos.score_runs import list_score_runs
from scorewatch.persistence.repos.tenants import get_tenant


router = APIRouter(prefix="/tenants", tags=["tenants"])


class ScoreRunResponse(BaseModel):
    id: int
    total_score: float
    components: dict[str, float]
    stats: dict[str, float]
    run_date: datetime


class ScoreHistoryResponse(BaseModel):
    tenant_id: str
    baseline_score: float | None
    target_score: float | None
    items: list[ScoreRunResponse]


class AlertResponse(BaseModel):
    id: str
    type: str
    severity: str
    title: str
    message: str
    status: str
    trigger_data: dict[str, Any] | None
    created_at: datetime


class AlertListResponse(BaseModel):
    tenant_id: str
    items: list[AlertResponse]


def _score_run_response(row: ScoreRun) -> ScoreRunResponse:
    return ScoreRunResponse(
        id=row.id,
        total_score=row.total_score,
        components=row.components or {},
        stats=row.stats or {},
        run_date=row.run_date,
    )


def _alert_response(row: Alert) -> AlertResponse:
    return AlertResponse(
        id=row.id,
        type=row.type,
        severity=row.severity,
        title=row.title,
        message=row.message,
        status=row.status,
        trigger_data=row.trigger_data,
        created_at=row.created_at,
    )


def _not_found(tenant_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"code": "TENANT_NOT_FOUND", "message": f"Tenant {tenant_id} not found"},
    )


async def get_score_history(
    request: Request,
    tenant_id: str,
    limit: int | None = Query(default=None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    # Chronological history with control-band stats for trend charts.
    tenant = await get_tenant(db, tenant_id)
    if tenant is None:
        raise _not_found(tenant_id)
    rows = await list_score_runs(db, tenant_id, limit=limit)
    payload = ScoreHistoryResponse(
        tenant_id=tenant_id,
        baseline_score=tenant.baseline_score,
        target_score=tenant.target_score,
        items=[_score_run_response(row) for row in rows],
    )
    return JSONResponse(content=jsonable_encoder(payload))


async def get_tenant_alerts(
    request: Request,
    tenant_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    tenant = await get_tenant(db, tenant_id)
    if tenant is None:
        raise _not_found(tenant_id)
    rows = await list_alerts(db, tenant_id, limit=limit)
    payload = AlertListResponse(tenant_id=tenant_id, items=[_alert_response(row) for row in rows])
    return JSONResponse(content=jsonable_encoder(payload))


router.add_api_route(
    "/{tenant_id}/score-runs",
    with_rate_limit(get_score_history, PROFILE_STANDARD),
    methods=["GET"],
    name="get_score_history",
)
router.add_api_route(
    "/{tenant_id}/alerts",
    with_rate_limit(get_tenant_alerts, PROFILE_STANDARD),
    methods=["GET"],
    name="get_tenant_alerts",
)
