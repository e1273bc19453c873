"""Drift detection for tenant score history.

Two signals are produced for every new score:

* a control band (mean, sample stddev, mean +/- sigma * stddev) over the
  tenant's prior runs, stored with the run for trend charts (with fewer
  than two prior runs it collapses onto the new score), and
* an alert decision based only on the drop from the immediately preceding
  run: above the critical threshold raises a critical alert, above the
  warning threshold a warning, anything else (including improvements) none.

The alert rule never consults the band.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from scorewatch.core.config import get_settings
from scorewatch.domain.models import (
    ALERT_SEVERITY_CRITICAL,
    ALERT_SEVERITY_WARNING,
    ALERT_STATUS_NEW,
    ALERT_TYPE_NARRATIVE_DRIFT,
)
from scorewatch.services.statistics import ControlLimits, control_limits


@dataclass(frozen=True)
class DriftThresholds:
    warning_drop: float = 5.0
    critical_drop: float = 10.0
    sigma: float = 3.0

    @classmethod
    def from_settings(cls) -> DriftThresholds:
        settings = get_settings()
        return cls(
            warning_drop=settings.drift_warning_drop,
            critical_drop=settings.drift_critical_drop,
            sigma=settings.control_sigma,
        )


@dataclass(frozen=True)
class DriftAssessment:
    stats: ControlLimits
    previous_score: float | None
    drop: float | None
    severity: str | None

    @property
    def should_alert(self) -> bool:
        return self.severity is not None

    def stats_payload(self) -> dict[str, float]:
        return {
            "mean": self.stats.mean,
            "stddev": self.stats.stddev,
            "ucl": self.stats.ucl,
            "lcl": self.stats.lcl,
        }


@dataclass(frozen=True)
class AlertDraft:
    tenant_id: str
    severity: str
    title: str
    message: str
    trigger_data: dict[str, Any]
    type: str = ALERT_TYPE_NARRATIVE_DRIFT
    status: str = ALERT_STATUS_NEW


def classify_drop(drop: float, thresholds: DriftThresholds | None = None) -> str | None:
    thresholds = thresholds or DriftThresholds()
    if drop > thresholds.critical_drop:
        return ALERT_SEVERITY_CRITICAL
    if drop > thresholds.warning_drop:
        return ALERT_SEVERITY_WARNING
    return None


def assess_drift(
    prior_scores: Sequence[float],
    new_score: float,
    *,
    thresholds: DriftThresholds | None = None,
) -> DriftAssessment:
    # prior_scores must be chronological and exclude the run being created.
    thresholds = thresholds or DriftThresholds()
    stats = control_limits(prior_scores, sigma=thresholds.sigma, fallback_mean=new_score)
    if not prior_scores:
        return DriftAssessment(stats=stats, previous_score=None, drop=None, severity=None)
    previous = float(prior_scores[-1])
    drop = previous - new_score
    return DriftAssessment(
        stats=stats,
        previous_score=previous,
        drop=drop,
        severity=classify_drop(drop, thresholds),
    )


def build_drift_alert(
    *,
    tenant_id: str,
    tenant_name: str | None,
    assessment: DriftAssessment,
    new_score: float,
) -> AlertDraft | None:
    if not assessment.should_alert or assessment.previous_score is None or assessment.drop is None:
        return None
    previous = assessment.previous_score
    drop = assessment.drop
    return AlertDraft(
        tenant_id=tenant_id,
        severity=assessment.severity or ALERT_SEVERITY_WARNING,
        title=f"Score Drop: {tenant_name or 'Tenant'}",
        message=(
            f"Score decreased by {drop:.1f} points ({previous:.1f} → {new_score:.1f}). "
            "Review content strategy."
        ),
        trigger_data={
            "previousScore": previous,
            "newScore": new_score,
            "drop": drop,
            **assessment.stats_payload(),
        },
    )
