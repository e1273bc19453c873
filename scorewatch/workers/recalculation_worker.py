from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from scorewatch.core.config import get_settings
from scorewatch.core.errors import BatchAbortedError
from scorewatch.core.logging import configure_logging
from scorewatch.persistence.db import SessionLocal
from scorewatch.services.recalculation import RecalculationOrchestrator
from scorewatch.services.score_source import HttpScoreSource

logger = logging.getLogger(__name__)


async def recalculate_scores(ctx: dict[str, Any]) -> dict[str, Any]:
    # One batch pass per cron fire; a later fire simply starts a fresh pass.
    orchestrator = RecalculationOrchestrator(session_factory=SessionLocal, score_source=HttpScoreSource())
    try:
        summary = await orchestrator.run()
    except BatchAbortedError:
        logger.exception("recalc_batch_aborted source=worker")
        return {"success": False, "error": "Score recalculation failed"}
    return summary.to_payload()


async def _startup(ctx: dict[str, Any]) -> None:
    configure_logging()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.recalc_queue_name
    functions = [recalculate_scores]
    cron_jobs = [
        cron(
            recalculate_scores,
            weekday=settings.recalc_cron_weekday,
            hour=settings.recalc_cron_hour,
            minute=settings.recalc_cron_minute,
            unique=True,
        )
    ]
    on_startup = _startup
