from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from scorewatch.core.config import get_settings
from scorewatch.core.errors import BatchAbortedError, ScorewatchError
from scorewatch.domain.models import Tenant
from scorewatch.persistence.repos.alerts import add_alert
from scorewatch.persistence.repos.discover_runs import latest_completed_discover_run
from scorewatch.persistence.repos.score_runs import append_score_run, list_total_scores
from scorewatch.persistence.repos.tenants import list_active_tenants, set_baseline_if_unset
from scorewatch.services.drift import DriftThresholds, assess_drift, build_drift_alert
from scorewatch.services.score_source import ScoreSource
from scorewatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OUTCOME_RECALCULATED = "recalculated"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERRORED = "errored"

SKIP_NO_DISCOVER_RUN = "no completed discover run"


@dataclass(frozen=True)
class TenantOutcome:
    tenant_id: str
    status: str
    new_score: float | None = None
    skipped: str | None = None
    error: str | None = None
    alert_severity: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"tenantId": self.tenant_id}
        if self.status == OUTCOME_SKIPPED:
            payload["skipped"] = self.skipped
        elif self.status == OUTCOME_ERRORED:
            payload["error"] = self.error
        else:
            payload["newScore"] = self.new_score
            payload["recalculated"] = True
            if self.alert_severity is not None:
                payload["alertSeverity"] = self.alert_severity
        return payload


@dataclass(frozen=True)
class BatchSummary:
    processed: int
    recalculated: int
    skipped: int
    errored: int
    duration_ms: int
    results: tuple[TenantOutcome, ...]
    message: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": True,
            "processed": self.processed,
            "recalculated": self.recalculated,
            "skipped": self.skipped,
            "errored": self.errored,
            "durationMs": self.duration_ms,
            "results": [outcome.to_payload() for outcome in self.results],
        }
        if self.message is not None:
            payload["message"] = self.message
        return payload


def _describe_failure(exc: Exception) -> str:
    # Surface our own error text; hide driver and unexpected internals.
    if isinstance(exc, ScorewatchError):
        return str(exc) or exc.__class__.__name__
    if isinstance(exc, SQLAlchemyError):
        return "history repository write failed"
    return "unexpected error"


async def _rollback_quietly(session: AsyncSession, tenant_id: str) -> None:
    # A dead connection can fail the rollback too; the original failure is what gets reported.
    try:
        await session.rollback()
    except Exception as exc:  # noqa: BLE001
        logger.warning("recalc_rollback_failed tenant_id=%s error=%s", tenant_id, exc)


def _shares_one_connection(session_factory: Any) -> bool:
    # SQLite and StaticPool hand every session the same connection, so one
    # tenant's rollback would discard another tenant's uncommitted writes.
    kw = getattr(session_factory, "kw", None)
    bind = kw.get("bind") if isinstance(kw, dict) else None
    if bind is None:
        return False
    engine = getattr(bind, "sync_engine", bind)
    return isinstance(engine.pool, StaticPool) or engine.dialect.name == "sqlite"


class RecalculationOrchestrator:
    """One full recalculation pass over every active tenant.

    Each tenant runs in its own session and transaction: a skipped or failed
    tenant never rolls back another tenant's writes, and only a failure to
    load the tenant list aborts the batch.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        score_source: ScoreSource,
        thresholds: DriftThresholds | None = None,
        max_concurrency: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._score_source = score_source
        self._thresholds = thresholds or DriftThresholds.from_settings()
        concurrency = max_concurrency if max_concurrency is not None else get_settings().recalc_max_concurrency
        self._max_concurrency = max(1, int(concurrency))
        if self._max_concurrency > 1 and _shares_one_connection(session_factory):
            logger.warning(
                "recalc_concurrency_capped requested=%s reason=single_connection_pool", self._max_concurrency
            )
            self._max_concurrency = 1
        self._clock = clock or time.monotonic

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    async def _load_tenants(self) -> list[Tenant]:
        try:
            async with self._session_factory() as session:
                return await list_active_tenants(session)
        except (SQLAlchemyError, OSError) as exc:
            raise BatchAbortedError("could not load active tenants") from exc

    async def run(self) -> BatchSummary:
        start = self._clock()
        tenants = await self._load_tenants()
        if not tenants:
            logger.info("recalc_batch_empty")
            return BatchSummary(
                processed=0,
                recalculated=0,
                skipped=0,
                errored=0,
                duration_ms=int((self._clock() - start) * 1000),
                results=(),
                message="No active tenants",
            )

        logger.info("recalc_batch_started tenants=%s concurrency=%s", len(tenants), self._max_concurrency)
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _bounded(tenant: Tenant) -> TenantOutcome:
            async with semaphore:
                return await self.process_tenant(tenant)

        # gather preserves input order, so results line up with the tenant list.
        outcomes = tuple(await asyncio.gather(*(_bounded(tenant) for tenant in tenants)))
        summary = BatchSummary(
            processed=len(tenants),
            recalculated=sum(1 for o in outcomes if o.status == OUTCOME_RECALCULATED),
            skipped=sum(1 for o in outcomes if o.status == OUTCOME_SKIPPED),
            errored=sum(1 for o in outcomes if o.status == OUTCOME_ERRORED),
            duration_ms=int((self._clock() - start) * 1000),
            results=outcomes,
        )
        logger.info(
            "recalc_batch_finished processed=%s recalculated=%s skipped=%s errored=%s duration_ms=%s",
            summary.processed,
            summary.recalculated,
            summary.skipped,
            summary.errored,
            summary.duration_ms,
        )
        return summary

    async def process_tenant(self, tenant: Tenant) -> TenantOutcome:
        tenant_id = tenant.id
        # Opening, rolling back and closing the session all sit inside the tenant boundary.
        try:
            async with self._session_factory() as session:
                try:
                    outcome = await self._recalculate(session, tenant)
                except Exception:
                    await _rollback_quietly(session, tenant_id)
                    raise
        except Exception as exc:  # noqa: BLE001 - one tenant's failure must not abort the batch
            logger.warning("recalc_tenant_failed tenant_id=%s error=%s", tenant_id, exc)
            outcome = TenantOutcome(tenant_id=tenant_id, status=OUTCOME_ERRORED, error=_describe_failure(exc))
        increment_counter(f"recalc_tenants_total.{outcome.status}")
        return outcome

    async def _recalculate(self, session: AsyncSession, tenant: Tenant) -> TenantOutcome:
        tenant_id = tenant.id
        discover_run = await latest_completed_discover_run(session, tenant_id)
        if discover_run is None:
            return TenantOutcome(tenant_id=tenant_id, status=OUTCOME_SKIPPED, skipped=SKIP_NO_DISCOVER_RUN)

        result = await self._score_source.fetch(tenant_id)
        prior_scores = await list_total_scores(session, tenant_id)
        assessment = assess_drift(prior_scores, result.total, thresholds=self._thresholds)

        await append_score_run(
            session,
            tenant_id=tenant_id,
            total_score=result.total,
            components=result.components,
            stats=assessment.stats_payload(),
        )
        await set_baseline_if_unset(session, tenant_id, result.total)

        draft = build_drift_alert(
            tenant_id=tenant_id,
            tenant_name=tenant.name,
            assessment=assessment,
            new_score=result.total,
        )
        if draft is not None:
            await add_alert(
                session,
                tenant_id=draft.tenant_id,
                alert_type=draft.type,
                severity=draft.severity,
                title=draft.title,
                message=draft.message,
                trigger_data=draft.trigger_data,
            )
            increment_counter(f"drift_alerts_total.{draft.severity}")
            logger.info(
                "recalc_drift_alert tenant_id=%s severity=%s drop=%.1f",
                tenant_id,
                draft.severity,
                assessment.drop or 0.0,
            )
        await session.commit()
        return TenantOutcome(
            tenant_id=tenant_id,
            status=OUTCOME_RECALCULATED,
            new_score=result.total,
            alert_severity=draft.severity if draft is not None else None,
        )
