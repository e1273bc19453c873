from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from scorewatch.apps.api.deps import require_cron_secret
from scorewatch.services.telemetry import counters_snapshot


router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_cron_secret)])


class CountersResponse(BaseModel):
    counters: dict[str, int]


@router.get("/counters", response_model=CountersResponse)
async def get_counters() -> CountersResponse:
    # Expose rate-limit and batch outcome counters for operators.
    return CountersResponse(counters=counters_snapshot())
