from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from scorewatch.core.config import get_settings
from scorewatch.core.errors import ScoreSourceError, ScoreSourceResponseError, ScoreSourceTimeoutError
from scorewatch.services.resilience import RetryPolicy, retry_async, score_source_retry_policy
from scorewatch.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoreResult:
    # Composite score plus its per-component breakdown as returned upstream.
    total: float
    components: dict[str, float] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {"total": self.total, "components": dict(self.components)}


class ScoreSource(Protocol):
    async def fetch(self, tenant_id: str) -> ScoreResult: ...


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _error_message(response: httpx.Response) -> str:
    # Prefer the upstream's own message; fall back to the status code.
    try:
        data = response.json()
    except ValueError:
        return str(response.status_code)
    if isinstance(data, dict):
        for key in ("message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return str(response.status_code)


def parse_score_response(response: httpx.Response) -> ScoreResult:
    if not response.is_success:
        raise ScoreSourceResponseError(
            f"score source failed: {_error_message(response)}",
            status_code=response.status_code,
        )
    try:
        data = response.json()
    except ValueError as exc:
        raise ScoreSourceResponseError(
            "score source returned a non-JSON body", status_code=response.status_code
        ) from exc
    if not isinstance(data, dict):
        raise ScoreSourceResponseError("score source returned a non-object body", status_code=response.status_code)
    total = data.get("total")
    if not _is_number(total):
        raise ScoreSourceResponseError("score source response is missing a numeric total", status_code=response.status_code)
    raw_components = data.get("components")
    if not isinstance(raw_components, dict):
        raise ScoreSourceResponseError("score source response is missing components", status_code=response.status_code)
    components: dict[str, float] = {}
    for name, value in raw_components.items():
        if not _is_number(value):
            raise ScoreSourceResponseError(
                f"score source component {name!r} is not numeric", status_code=response.status_code
            )
        components[str(name)] = float(value)
    return ScoreResult(total=float(total), components=components)


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, (ScoreSourceTimeoutError, TimeoutError, httpx.TransportError)):
        return True
    if isinstance(exc, ScoreSourceResponseError):
        return exc.status_code is not None and exc.status_code >= 500
    return False


class HttpScoreSource:
    """Client for the external score computation endpoint.

    Calls carry the cron secret so the endpoint treats them as privileged and
    skips its own admission control.
    """

    def __init__(
        self,
        *,
        url: str | None = None,
        cron_secret: str | None = None,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._url = url or settings.score_source_url
        self._cron_secret = cron_secret if cron_secret is not None else settings.cron_secret
        self._secret_header = settings.cron_secret_header
        self._policy = policy or score_source_retry_policy()
        self._transport = transport

    async def _request(self, tenant_id: str) -> ScoreResult:
        headers = {"Content-Type": "application/json"}
        if self._cron_secret:
            headers[self._secret_header] = self._cron_secret
        timeout = httpx.Timeout(self._policy.timeout_ms / 1000.0)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(self._url, json={"tenantId": tenant_id}, headers=headers)
        except httpx.TimeoutException as exc:
            raise ScoreSourceTimeoutError("score source timed out") from exc
        return parse_score_response(response)

    async def fetch(self, tenant_id: str) -> ScoreResult:
        try:
            return await retry_async(
                lambda: self._request(tenant_id),
                policy=self._policy,
                retryable=_is_retryable,
            )
        except ScoreSourceError:
            increment_counter("score_source_failures_total")
            raise
        except TimeoutError as exc:
            increment_counter("score_source_failures_total")
            raise ScoreSourceTimeoutError("score source timed out") from exc
        except httpx.HTTPError as exc:
            increment_counter("score_source_failures_total")
            logger.warning("score_source_unreachable tenant_id=%s error=%s", tenant_id, exc)
            raise ScoreSourceError(f"score source unreachable: {exc}") from exc
