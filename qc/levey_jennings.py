"""Levey–Jennings charting series.

Points are ordered oldest first for plotting, the opposite of the newest-first
history used by the rule evaluator. Stored acceptance decisions are reused as
is; the rules are never re-run here.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from .westgard import AcceptanceStatus, QCObservation, validate_targets


@dataclass(frozen=True)
class ControlLimits:
    mean: float
    plus_1sd: float
    plus_2sd: float
    plus_3sd: float
    minus_1sd: float
    minus_2sd: float
    minus_3sd: float

    @property
    def upper_warning(self) -> float:
        return self.plus_2sd

    @property
    def upper_control(self) -> float:
        return self.plus_3sd

    @property
    def lower_warning(self) -> float:
        return self.minus_2sd

    @property
    def lower_control(self) -> float:
        return self.minus_3sd


@dataclass(frozen=True)
class LeveyJenningsPoint:
    date: datetime
    value: float
    limits: ControlLimits
    acceptance_status: Optional[AcceptanceStatus]
    violated_rules: Tuple[str, ...]
    z_score: float

    def to_json(self) -> Dict[str, object]:
        return {
            "date": self.date.isoformat(),
            "value": self.value,
            "mean": self.limits.mean,
            "plusOneSD": self.limits.plus_1sd,
            "plusTwoSD": self.limits.plus_2sd,
            "plusThreeSD": self.limits.plus_3sd,
            "minusOneSD": self.limits.minus_1sd,
            "minusTwoSD": self.limits.minus_2sd,
            "minusThreeSD": self.limits.minus_3sd,
            "status": self.acceptance_status.value if self.acceptance_status else None,
            "violatedRules": list(self.violated_rules),
            "zScore": self.z_score,
        }


def control_limits(target_mean: float, target_sd: float) -> ControlLimits:
    validate_targets(target_mean, target_sd)
    return ControlLimits(
        mean=target_mean,
        plus_1sd=target_mean + target_sd,
        plus_2sd=target_mean + 2 * target_sd,
        plus_3sd=target_mean + 3 * target_sd,
        minus_1sd=target_mean - target_sd,
        minus_2sd=target_mean - 2 * target_sd,
        minus_3sd=target_mean - 3 * target_sd,
    )


def build_levey_jennings_series(
    observations: Sequence[QCObservation], target_mean: float, target_sd: float
) -> List[LeveyJenningsPoint]:
    limits = control_limits(target_mean, target_sd)
    ordered = sorted(observations, key=lambda o: o.run_date)
    return [
        LeveyJenningsPoint(
            date=o.run_date,
            value=o.value,
            limits=limits,
            acceptance_status=o.acceptance_status,
            violated_rules=tuple(o.violated_rules),
            z_score=(o.value - target_mean) / target_sd,
        )
        for o in ordered
    ]
