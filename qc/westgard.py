"""Westgard multi-rule evaluation for a single new control observation.

The rule panel is a table of declarative records iterated in order, so a lab
can enable or disable rules through configuration instead of code. Values are
always handled newest first: ``values[0]`` is the observation being judged and
``values[1:]`` is its history window.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import InvalidConfiguration, InvalidMeasurement


class AcceptanceStatus(str, Enum):
    ACCEPTED = "accepted"
    WARNING = "warning"
    REJECTED = "rejected"


class RuleClass(str, Enum):
    WARNING = "warning"
    REJECTION = "rejection"


# Number of adjacent pairs scanned for R_4s, starting at the newest value.
R4S_PAIR_SCAN = 5


@dataclass(frozen=True)
class QCObservation:
    """One recorded measurement of a control material."""

    value: float
    run_date: datetime
    qc_test_id: str = ""
    level_id: str = ""
    acceptance_status: Optional[AcceptanceStatus] = None
    violated_rules: Tuple[str, ...] = ()
    excluded: bool = False
    z_score: Optional[float] = None


Predicate = Callable[[Sequence[float], float, float], bool]


@dataclass(frozen=True)
class WestgardRule:
    code: str
    name: str
    description: str
    rule_class: RuleClass
    min_values: int
    predicate: Predicate = field(repr=False, compare=False)

    def fires(self, values: Sequence[float], mean: float, sd: float) -> bool:
        if len(values) < self.min_values:
            return False
        return self.predicate(values, mean, sd)


def _beyond_2s(values: Sequence[float], mean: float, sd: float) -> bool:
    return abs(values[0] - mean) > 2 * sd


def _beyond_3s(values: Sequence[float], mean: float, sd: float) -> bool:
    return abs(values[0] - mean) > 3 * sd


def _same_side(values: Sequence[float], mean: float, limit: float) -> bool:
    return all(v > mean + limit for v in values) or all(v < mean - limit for v in values)


def _two_beyond_2s(values: Sequence[float], mean: float, sd: float) -> bool:
    return _same_side(values[:2], mean, 2 * sd)


def _range_4s(values: Sequence[float], mean: float, sd: float) -> bool:
    upper = mean + 2 * sd
    lower = mean - 2 * sd
    for i in range(min(len(values) - 1, R4S_PAIR_SCAN)):
        a, b = values[i], values[i + 1]
        if (a > upper and b < lower) or (a < lower and b > upper):
            return True
    return False


def _four_beyond_1s(values: Sequence[float], mean: float, sd: float) -> bool:
    return _same_side(values[:4], mean, sd)


def _ten_same_side(values: Sequence[float], mean: float, sd: float) -> bool:
    return _same_side(values[:10], mean, 0.0)


WESTGARD_RULES: Tuple[WestgardRule, ...] = (
    WestgardRule("1_2s", "1-2s", "One control observation exceeds ±2SD", RuleClass.WARNING, 1, _beyond_2s),
    WestgardRule("1_3s", "1-3s", "One control observation exceeds ±3SD", RuleClass.REJECTION, 1, _beyond_3s),
    WestgardRule(
        "2_2s", "2-2s", "Two consecutive values exceed the same ±2SD limit", RuleClass.REJECTION, 2, _two_beyond_2s
    ),
    WestgardRule(
        "R_4s", "R-4s", "One observation exceeds +2SD and an adjacent one exceeds -2SD", RuleClass.REJECTION, 2, _range_4s
    ),
    WestgardRule(
        "4_1s", "4-1s", "Four consecutive values exceed the same ±1SD limit", RuleClass.REJECTION, 4, _four_beyond_1s
    ),
    WestgardRule(
        "10x", "10x", "Ten consecutive values are on the same side of the mean", RuleClass.REJECTION, 10, _ten_same_side
    ),
)

RULE_CODES: Tuple[str, ...] = tuple(rule.code for rule in WESTGARD_RULES)
RULES_BY_CODE: Dict[str, WestgardRule] = {rule.code: rule for rule in WESTGARD_RULES}


@dataclass(frozen=True)
class EvaluationResult:
    violated_rules: Tuple[str, ...]
    acceptance_status: AcceptanceStatus

    def to_json(self) -> Dict[str, object]:
        return {"violatedRules": list(self.violated_rules), "acceptanceStatus": self.acceptance_status.value}


def validate_targets(target_mean: float, target_sd: float) -> None:
    if not math.isfinite(target_mean):
        raise InvalidConfiguration(f"Target mean must be finite, got {target_mean}")
    if not math.isfinite(target_sd) or target_sd <= 0:
        raise InvalidConfiguration(f"Target SD must be a positive number, got {target_sd}")


def validate_measurement(value: float) -> float:
    value = float(value)
    if not math.isfinite(value):
        raise InvalidMeasurement(f"QC value must be a finite number, got {value}")
    return value


def select_rules(codes: Optional[Iterable[str]] = None) -> List[WestgardRule]:
    """Return the enabled rules in table order.

    ``None`` enables the whole panel. Unknown codes are a configuration error.
    """
    if codes is None:
        return list(WESTGARD_RULES)
    enabled = set(codes)
    unknown = enabled.difference(RULE_CODES)
    if unknown:
        raise InvalidConfiguration(f"Unknown Westgard rule codes: {', '.join(sorted(unknown))}")
    return [rule for rule in WESTGARD_RULES if rule.code in enabled]


def check_westgard(
    new_value: float,
    target_mean: float,
    target_sd: float,
    history: Sequence[float] = (),
    rules: Optional[Iterable[str]] = None,
) -> List[str]:
    """Return the codes of rules violated by ``new_value`` given its history.

    ``history`` holds prior values of the same control level, most recent
    first. Rules that need more values than are available do not fire.
    """
    validate_targets(target_mean, target_sd)
    values = [validate_measurement(new_value)] + [validate_measurement(v) for v in history]
    return [rule.code for rule in select_rules(rules) if rule.fires(values, target_mean, target_sd)]


def derive_acceptance(violated_rules: Iterable[str]) -> AcceptanceStatus:
    classes = {RULES_BY_CODE[code].rule_class for code in violated_rules}
    if RuleClass.REJECTION in classes:
        return AcceptanceStatus.REJECTED
    if RuleClass.WARNING in classes:
        return AcceptanceStatus.WARNING
    return AcceptanceStatus.ACCEPTED


def evaluate_rules(
    new_value: float,
    target_mean: float,
    target_sd: float,
    history: Sequence[float] = (),
    rules: Optional[Iterable[str]] = None,
) -> EvaluationResult:
    violations = check_westgard(new_value, target_mean, target_sd, history, rules)
    return EvaluationResult(violated_rules=tuple(violations), acceptance_status=derive_acceptance(violations))


def z_score(value: float, target_mean: float, target_sd: float) -> float:
    validate_targets(target_mean, target_sd)
    return (validate_measurement(value) - target_mean) / target_sd
