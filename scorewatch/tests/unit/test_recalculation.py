from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from scorewatch.core.errors import BatchAbortedError, ScoreSourceResponseError, ScoreSourceTimeoutError
from scorewatch.domain.models import Alert, ScoreRun, Tenant
from scorewatch.services import recalculation
from scorewatch.services.drift import DriftThresholds
from scorewatch.services.recalculation import RecalculationOrchestrator
from scorewatch.services.score_source import ScoreResult
from scorewatch.services.telemetry import counters_snapshot
from scorewatch.tests.utils.fakes import StubScoreSource
from scorewatch.tests.utils.seed import seed_tenant


def _orchestrator(session_factory, source) -> RecalculationOrchestrator:
    return RecalculationOrchestrator(
        session_factory=session_factory,
        score_source=source,
        thresholds=DriftThresholds(),
        max_concurrency=1,
    )


async def _runs(session_factory, tenant_id: str) -> list[ScoreRun]:
    async with session_factory() as session:
        rows = await session.execute(
            select(ScoreRun).where(ScoreRun.tenant_id == tenant_id).order_by(ScoreRun.run_date, ScoreRun.id)
        )
        return list(rows.scalars().all())


async def _alerts(session_factory, tenant_id: str) -> list[Alert]:
    async with session_factory() as session:
        rows = await session.execute(select(Alert).where(Alert.tenant_id == tenant_id))
        return list(rows.scalars().all())


@pytest.mark.asyncio
async def test_empty_tenant_list_returns_zero_summary(session_factory) -> None:
    summary = await _orchestrator(session_factory, StubScoreSource()).run()
    payload = summary.to_payload()
    assert payload["success"] is True
    assert payload["processed"] == 0
    assert payload["recalculated"] == 0
    assert payload["results"] == []
    assert payload["message"] == "No active tenants"


@pytest.mark.asyncio
async def test_reference_scenario_records_stats_and_critical_alert(session_factory) -> None:
    tenant_id = await seed_tenant(session_factory, name="Tenant One", baseline_score=79.0, prior_scores=[80, 78, 82])
    source = StubScoreSource({tenant_id: ScoreResult(total=70.0, components={"c1": 65.0, "c2": 75.0})})

    summary = await _orchestrator(session_factory, source).run()

    assert summary.recalculated == 1
    assert summary.results[0].to_payload() == {
        "tenantId": tenant_id,
        "newScore": 70.0,
        "recalculated": True,
        "alertSeverity": "critical",
    }
    runs = await _runs(session_factory, tenant_id)
    assert [run.total_score for run in runs] == [80, 78, 82, 70]
    assert runs[-1].components == {"c1": 65.0, "c2": 75.0}
    assert runs[-1].stats == pytest.approx({"mean": 80.0, "stddev": 2.0, "ucl": 86.0, "lcl": 74.0})

    alerts = await _alerts(session_factory, tenant_id)
    assert len(alerts) == 1
    alert = alerts[0]
    assert (alert.type, alert.severity, alert.status) == ("narrative_drift", "critical", "new")
    assert alert.title == "Score Drop: Tenant One"
    assert alert.message == "Score decreased by 12.0 points (82.0 → 70.0). Review content strategy."
    assert alert.trigger_data["drop"] == pytest.approx(12.0)
    assert counters_snapshot()["drift_alerts_total.critical"] == 1


@pytest.mark.asyncio
async def test_small_drop_and_improvement_do_not_alert(session_factory) -> None:
    small = await seed_tenant(session_factory, prior_scores=[60.0])
    better = await seed_tenant(session_factory, prior_scores=[60.0])
    source = StubScoreSource({small: ScoreResult(total=55.0), better: ScoreResult(total=90.0)})

    summary = await _orchestrator(session_factory, source).run()

    assert summary.recalculated == 2
    assert await _alerts(session_factory, small) == []
    assert await _alerts(session_factory, better) == []


@pytest.mark.asyncio
async def test_failures_are_isolated_per_tenant(session_factory) -> None:
    ok_first = await seed_tenant(session_factory, name="A", prior_scores=[50.0])
    no_data = await seed_tenant(session_factory, name="B", discover_status=None)
    pending_only = await seed_tenant(session_factory, name="C", discover_status="running")
    upstream_down = await seed_tenant(session_factory, name="D", prior_scores=[40.0])
    timed_out = await seed_tenant(session_factory, name="E")
    ok_last = await seed_tenant(session_factory, name="F")
    await seed_tenant(session_factory, name="Inactive", is_active=False)

    upstream_error = ScoreSourceResponseError("score source failed: 500", status_code=500)
    source = StubScoreSource(
        {
            ok_first: ScoreResult(total=52.0),
            upstream_down: upstream_error,
            timed_out: ScoreSourceTimeoutError("score source timed out"),
            ok_last: ScoreResult(total=33.0),
        }
    )

    summary = await _orchestrator(session_factory, source).run()
    payload = summary.to_payload()

    assert payload["processed"] == 6
    assert len(payload["results"]) == 6
    assert (payload["recalculated"], payload["skipped"], payload["errored"]) == (2, 2, 2)
    by_tenant = {entry["tenantId"]: entry for entry in payload["results"]}
    assert by_tenant[ok_first] == {"tenantId": ok_first, "newScore": 52.0, "recalculated": True}
    assert by_tenant[no_data] == {"tenantId": no_data, "skipped": "no completed discover run"}
    assert by_tenant[pending_only]["skipped"] == "no completed discover run"
    assert by_tenant[upstream_down] == {"tenantId": upstream_down, "error": "score source failed: 500"}
    assert by_tenant[timed_out] == {"tenantId": timed_out, "error": "score source timed out"}
    assert by_tenant[ok_last]["newScore"] == 33.0
    # Skipped tenants never reach the score source.
    assert no_data not in source.calls and pending_only not in source.calls
    # Failed tenants keep their history untouched.
    assert [run.total_score for run in await _runs(session_factory, upstream_down)] == [40.0]
    assert counters_snapshot()["recalc_tenants_total.errored"] == 2


@pytest.mark.asyncio
async def test_repository_failure_rolls_back_only_that_tenant(session_factory, monkeypatch) -> None:
    healthy = await seed_tenant(session_factory, name="Healthy")
    broken = await seed_tenant(session_factory, name="Broken")
    real_baseline = recalculation.set_baseline_if_unset

    async def _flaky_baseline(session, tenant_id, score):
        if tenant_id == broken:
            raise OperationalError("UPDATE tenants", {}, Exception("disk I/O error"))
        return await real_baseline(session, tenant_id, score)

    monkeypatch.setattr(recalculation, "set_baseline_if_unset", _flaky_baseline)
    source = StubScoreSource(default=61.0)

    summary = await _orchestrator(session_factory, source).run()

    by_tenant = {outcome.tenant_id: outcome for outcome in summary.results}
    assert by_tenant[healthy].status == "recalculated"
    assert by_tenant[broken].status == "errored"
    assert by_tenant[broken].error == "history repository write failed"
    # The score run appended before the failure was rolled back with it.
    assert await _runs(session_factory, broken) == []
    assert len(await _runs(session_factory, healthy)) == 1


@pytest.mark.asyncio
async def test_baseline_set_by_first_pass_only(session_factory) -> None:
    tenant_id = await seed_tenant(session_factory)
    first = StubScoreSource({tenant_id: ScoreResult(total=64.0)})
    second = StubScoreSource({tenant_id: ScoreResult(total=58.0)})

    await _orchestrator(session_factory, first).run()
    await _orchestrator(session_factory, second).run()

    async with session_factory() as session:
        tenant = await session.get(Tenant, tenant_id)
    assert tenant is not None
    assert tenant.baseline_score == 64.0
    # Back-to-back passes are not deduplicated.
    assert [run.total_score for run in await _runs(session_factory, tenant_id)] == [64.0, 58.0]
    # One prior run is not enough for a band: it collapses onto the new score, and the drop of 6 warns.
    assert (await _runs(session_factory, tenant_id))[-1].stats == {"mean": 58.0, "stddev": 0.0, "ucl": 58.0, "lcl": 58.0}
    assert [alert.severity for alert in await _alerts(session_factory, tenant_id)] == ["warning"]


@pytest.mark.asyncio
async def test_first_run_band_collapses_onto_new_score(session_factory) -> None:
    tenant_id = await seed_tenant(session_factory)
    await _orchestrator(session_factory, StubScoreSource({tenant_id: ScoreResult(total=47.5)})).run()
    stats = (await _runs(session_factory, tenant_id))[0].stats
    assert stats == {"mean": 47.5, "stddev": 0.0, "ucl": 47.5, "lcl": 47.5}


@pytest.mark.asyncio
async def test_tenant_list_failure_aborts_batch() -> None:
    class _BrokenSession:
        async def __aenter__(self):
            raise OperationalError("SELECT tenants", {}, Exception("connection refused"))

        async def __aexit__(self, *exc_info):
            return False

    orchestrator = RecalculationOrchestrator(
        session_factory=lambda: _BrokenSession(),  # type: ignore[arg-type]
        score_source=StubScoreSource(),
        max_concurrency=1,
    )
    with pytest.raises(BatchAbortedError):
        await orchestrator.run()


@pytest.mark.asyncio
async def test_failed_rollback_stays_inside_tenant_boundary(session_factory, monkeypatch) -> None:
    healthy = await seed_tenant(session_factory, name="Healthy")
    dropped = await seed_tenant(session_factory, name="Dropped")
    real_append = recalculation.append_score_run

    async def _append(session, **kwargs):
        if kwargs["tenant_id"] == dropped:
            raise ConnectionResetError("connection already closed")
        return await real_append(session, **kwargs)

    async def _dead_rollback(self):
        raise ConnectionResetError("connection already closed")

    monkeypatch.setattr(recalculation, "append_score_run", _append)
    monkeypatch.setattr(AsyncSession, "rollback", _dead_rollback)

    summary = await _orchestrator(session_factory, StubScoreSource(default=61.0)).run()

    by_tenant = {outcome.tenant_id: outcome for outcome in summary.results}
    assert by_tenant[dropped].status == "errored"
    assert by_tenant[dropped].error == "unexpected error"
    assert by_tenant[healthy].status == "recalculated"
    assert len(await _runs(session_factory, healthy)) == 1


@pytest.mark.asyncio
async def test_parallel_batch_on_shared_connection_keeps_every_write(session_factory, monkeypatch) -> None:
    tenant_ids = [await seed_tenant(session_factory, name=f"P{i}") for i in range(4)]
    real_baseline = recalculation.set_baseline_if_unset

    async def _flaky_baseline(session, tenant_id, score):
        if tenant_id == tenant_ids[0]:
            raise OperationalError("UPDATE tenants", {}, Exception("disk I/O error"))
        return await real_baseline(session, tenant_id, score)

    monkeypatch.setattr(recalculation, "set_baseline_if_unset", _flaky_baseline)
    orchestrator = RecalculationOrchestrator(
        session_factory=session_factory,
        score_source=StubScoreSource(default=61.0),
        max_concurrency=4,
    )
    # In-memory SQLite shares one connection across sessions, so the pass runs one tenant at a time.
    assert orchestrator.max_concurrency == 1

    summary = await orchestrator.run()

    assert [outcome.status for outcome in summary.results] == ["errored", "recalculated", "recalculated", "recalculated"]
    for outcome in summary.results:
        persisted = len(await _runs(session_factory, outcome.tenant_id))
        assert persisted == (1 if outcome.status == "recalculated" else 0)


def test_concurrency_kept_for_pooled_connections() -> None:
    orchestrator = RecalculationOrchestrator(
        session_factory=lambda: None,  # type: ignore[arg-type]
        score_source=StubScoreSource(),
        max_concurrency=4,
    )
    assert orchestrator.max_concurrency == 4
