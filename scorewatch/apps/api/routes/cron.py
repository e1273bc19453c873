from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from scorewatch.apps.api.deps import get_score_source, get_session_factory, require_cron_secret
from scorewatch.core.errors import BatchAbortedError
from scorewatch.services.recalculation import RecalculationOrchestrator
from scorewatch.services.score_source import ScoreSource


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.api_route(
    "/score-recalculation",
    methods=["GET", "POST"],
    dependencies=[Depends(require_cron_secret)],
)
async def run_score_recalculation(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    score_source: ScoreSource = Depends(get_score_source),
) -> JSONResponse:
    # Privileged batch path: no admission control, one pass over every active tenant.
    orchestrator = RecalculationOrchestrator(session_factory=session_factory, score_source=score_source)
    try:
        summary = await orchestrator.run()
    except BatchAbortedError as exc:
        logger.exception("recalc_batch_aborted")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"code": "RECALCULATION_FAILED", "message": "Score recalculation failed"},
        ) from exc
    return JSONResponse(content=summary.to_payload())
