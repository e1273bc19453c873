from __future__ import annotations


class ScorewatchError(Exception):
    """Base error for Scorewatch."""


class ConfigError(ScorewatchError):
    """Missing or invalid configuration."""


class UnknownProfileError(ScorewatchError):
    """Admission check requested a limiter profile that is not registered."""


class CounterStoreError(ScorewatchError):
    """Counter store unreachable, timed out, or returned an unusable reply."""


class ScoreSourceError(ScorewatchError):
    """Score computation service failure."""


class ScoreSourceTimeoutError(ScoreSourceError):
    """Score computation service did not answer within the timeout."""


class ScoreSourceResponseError(ScoreSourceError):
    """Score computation service returned a non-2xx or malformed response."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RepositoryError(ScorewatchError):
    """History repository or alert sink failure."""


class BatchAbortedError(ScorewatchError):
    """Whole-batch failure; no tenant could be processed."""
