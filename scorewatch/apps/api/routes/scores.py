from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from scorewatch.apps.api.deps import get_score_source
from scorewatch.apps.api.rate_limit import get_client_ip, with_rate_limit
from scorewatch.core.config import PROFILE_SCORE
from scorewatch.core.errors import ScoreSourceError, ScoreSourceTimeoutError
from scorewatch.services.score_source import ScoreSource


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scores", tags=["scores"])


async def _tenant_id_from_body(request: Request) -> str | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    tenant_id = body.get("tenantId")
    if isinstance(tenant_id, str) and tenant_id.strip():
        return tenant_id.strip()
    return None


async def score_request_identifier(request: Request) -> str:
    # Account per tenant and caller so one tenant cannot exhaust another's budget.
    tenant_id = await _tenant_id_from_body(request)
    client_ip = get_client_ip(request)
    return f"{tenant_id}:{client_ip}" if tenant_id else client_ip


async def calculate_score(
    request: Request,
    score_source: ScoreSource = Depends(get_score_source),
) -> JSONResponse:
    tenant_id = await _tenant_id_from_body(request)
    if tenant_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "tenantId is required"},
        )
    try:
        result = await score_source.fetch(tenant_id)
    except ScoreSourceTimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            detail={"code": "SCORE_SOURCE_TIMEOUT", "message": "Score computation timed out"},
        ) from exc
    except ScoreSourceError as exc:
        logger.warning("score_calculate_failed tenant_id=%s error=%s", tenant_id, exc)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"code": "SCORE_SOURCE_FAILED", "message": "Score computation failed"},
        ) from exc
    return JSONResponse(content=result.to_payload())


router.add_api_route(
    "/calculate",
    with_rate_limit(calculate_score, PROFILE_SCORE, get_identifier=score_request_identifier),
    methods=["POST"],
    name="calculate_score",
)
