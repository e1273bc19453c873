from __future__ import annotations

import json

import httpx
import pytest

from scorewatch.core.errors import ScoreSourceError, ScoreSourceResponseError, ScoreSourceTimeoutError
from scorewatch.services.resilience import RetryPolicy
from scorewatch.services.score_source import HttpScoreSource, ScoreResult, parse_score_response


_POLICY = RetryPolicy(timeout_ms=1000, max_attempts=2, backoff_ms=1)


def _source(handler, *, cron_secret: str | None = "s3cret") -> HttpScoreSource:
    return HttpScoreSource(
        url="http://scores.test/api/lsi/calculate",
        cron_secret=cron_secret,
        policy=_POLICY,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_fetch_returns_total_and_components() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"total": 71.25, "components": {"c1": 60, "c2": 82.5}})

    result = await _source(handler).fetch("tenant-1")
    assert result == ScoreResult(total=71.25, components={"c1": 60.0, "c2": 82.5})
    assert json.loads(seen[0].content) == {"tenantId": "tenant-1"}
    assert seen[0].headers["X-Cron-Secret"] == "s3cret"


@pytest.mark.asyncio
async def test_secret_header_omitted_without_secret() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"total": 1, "components": {}})

    await _source(handler, cron_secret="").fetch("tenant-1")
    assert "X-Cron-Secret" not in seen[0].headers


@pytest.mark.asyncio
async def test_client_error_is_not_retried_and_keeps_upstream_message() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(404, json={"message": "Client not found"})

    with pytest.raises(ScoreSourceResponseError) as excinfo:
        await _source(handler).fetch("tenant-1")
    assert str(excinfo.value) == "score source failed: Client not found"
    assert excinfo.value.status_code == 404
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_server_error_is_retried() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"total": 50, "components": {"c1": 50}})

    result = await _source(handler).fetch("tenant-1")
    assert result.total == 50.0
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_timeout_maps_to_timeout_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ScoreSourceTimeoutError):
        await _source(handler).fetch("tenant-1")


@pytest.mark.asyncio
async def test_connection_failure_maps_to_score_source_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ScoreSourceError) as excinfo:
        await _source(handler).fetch("tenant-1")
    assert not isinstance(excinfo.value, ScoreSourceTimeoutError)
    assert "unreachable" in str(excinfo.value)


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="<html>oops</html>"),
        httpx.Response(200, json=[1, 2, 3]),
        httpx.Response(200, json={"components": {"c1": 1}}),
        httpx.Response(200, json={"total": "71", "components": {}}),
        httpx.Response(200, json={"total": True, "components": {}}),
        httpx.Response(200, json={"total": 71}),
        httpx.Response(200, json={"total": 71, "components": {"c1": "high"}}),
    ],
)
def test_malformed_responses_are_rejected(response: httpx.Response) -> None:
    with pytest.raises(ScoreSourceResponseError):
        parse_score_response(response)


def test_error_message_falls_back_to_status_code() -> None:
    with pytest.raises(ScoreSourceResponseError) as excinfo:
        parse_score_response(httpx.Response(500, text="Internal"))
    assert str(excinfo.value) == "score source failed: 500"
