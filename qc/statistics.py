"""Descriptive statistics for a window of QC observations."""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import InsufficientData, InvalidConfiguration
from .westgard import QCObservation, validate_measurement, validate_targets

logger = logging.getLogger(__name__)

STATISTICS_PERIODS: Dict[str, int] = {"daily": 1, "weekly": 7, "monthly": 30, "quarterly": 90}

# Coverage factor applied to CV when estimating total analytical error.
TOTAL_ERROR_Z = 1.65


@dataclass(frozen=True)
class BandCounts:
    one_sd: int
    two_sd: int
    three_sd: int


@dataclass(frozen=True)
class QCStatistics:
    n: int
    mean: float
    sd: float
    cv: float
    bias: float
    minimum: float
    maximum: float
    median: float
    total_error: float
    within_sd: BandCounts
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    sigma: Optional[float] = None

    def to_json(self) -> Dict[str, object]:
        return {
            "n": self.n,
            "mean": self.mean,
            "sd": self.sd,
            "cv": self.cv,
            "bias": self.bias,
            "min": self.minimum,
            "max": self.maximum,
            "median": self.median,
            "totalError": self.total_error,
            "sigma": self.sigma,
            "withinSDCount": {
                "oneSD": self.within_sd.one_sd,
                "twoSD": self.within_sd.two_sd,
                "threeSD": self.within_sd.three_sd,
            },
            "periodStart": self.period_start.isoformat() if self.period_start else None,
            "periodEnd": self.period_end.isoformat() if self.period_end else None,
        }


def _median(values: List[float]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return ordered[mid]
    return (ordered[mid - 1] + ordered[mid]) / 2


def sample_sd(values: Sequence[float]) -> float:
    """Standard deviation with the n-1 denominator."""
    n = len(values)
    if n < 2:
        raise InsufficientData("At least two observations are required for SD", n=n)
    mean = sum(values) / n
    return math.sqrt(sum((v - mean) ** 2 for v in values) / (n - 1))


def count_within_bands(values: Sequence[float], target_mean: float, target_sd: float) -> BandCounts:
    distances = [abs(v - target_mean) for v in values]
    return BandCounts(
        one_sd=sum(1 for d in distances if d <= target_sd),
        two_sd=sum(1 for d in distances if d <= 2 * target_sd),
        three_sd=sum(1 for d in distances if d <= 3 * target_sd),
    )


def sigma_metric(allowable_error: float, bias: float, cv: float) -> Optional[float]:
    if cv == 0:
        return None
    return (allowable_error - abs(bias)) / cv


def compute_statistics(
    observations: Sequence[QCObservation],
    target_mean: float,
    target_sd: float,
    allowable_error: Optional[float] = None,
    period_start: Optional[datetime] = None,
    period_end: Optional[datetime] = None,
) -> QCStatistics:
    """Compute mean, SD, CV%, bias% and band counts for one control level.

    Excluded observations are ignored. Band counts are measured against the
    target mean and are nested, so a value within 1SD also counts toward the
    2SD and 3SD totals. ``sigma`` is only computed when ``allowable_error``
    (total allowable error, %) is supplied.
    """
    validate_targets(target_mean, target_sd)
    if target_mean == 0:
        raise InvalidConfiguration("Target mean must be non-zero to compute bias")

    included = [o for o in observations if not o.excluded]
    values = [validate_measurement(o.value) for o in included]
    n = len(values)
    if n == 0:
        raise InsufficientData("No QC observations found for the specified period", n=0)

    mean = sum(values) / n
    if n == 1:
        raise InsufficientData("SD and CV are undefined for a single observation", n=1, mean=mean)
    if mean == 0:
        raise InsufficientData("CV is undefined when the observed mean is zero", n=n, mean=mean)

    sd = sample_sd(values)
    cv = sd / mean * 100
    bias = (mean - target_mean) / target_mean * 100
    sigma = sigma_metric(allowable_error, bias, cv) if allowable_error is not None else None

    dates = [o.run_date for o in included]
    stats = QCStatistics(
        n=n,
        mean=mean,
        sd=sd,
        cv=cv,
        bias=bias,
        minimum=min(values),
        maximum=max(values),
        median=_median(values),
        total_error=abs(bias) + TOTAL_ERROR_Z * cv,
        within_sd=count_within_bands(values, target_mean, target_sd),
        period_start=period_start or min(dates),
        period_end=period_end or max(dates),
        sigma=sigma,
    )
    logger.debug("Computed QC statistics n=%d mean=%.4f sd=%.4f cv=%.2f", n, mean, sd, cv)
    return stats


def period_bounds(period: str, now: datetime) -> Tuple[datetime, datetime]:
    try:
        days = STATISTICS_PERIODS[period]
    except KeyError:
        raise ValueError(f"Unknown statistics period '{period}'") from None
    return now - timedelta(days=days), now


def statistics_for_period(
    observations: Sequence[QCObservation],
    target_mean: float,
    target_sd: float,
    period: str,
    now: datetime,
    allowable_error: Optional[float] = None,
) -> QCStatistics:
    """Restrict ``observations`` to a named period ending at ``now`` and summarise them."""
    start, end = period_bounds(period, now)
    in_period = [o for o in observations if start <= o.run_date <= end]
    return compute_statistics(
        in_period,
        target_mean,
        target_sd,
        allowable_error=allowable_error,
        period_start=start,
        period_end=end,
    )
