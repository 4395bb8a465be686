"""Configuration models for QC targets, rule panels and history policy."""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from qc.errors import ConfigurationNotFound, InvalidConfiguration
from qc.westgard import RULE_CODES, select_rules, validate_targets


@dataclass(frozen=True)
class QCLevel:
    """Target values for one control level of a QC test."""

    id: str
    target_mean: float
    target_sd: float
    name: Optional[str] = None
    unit: Optional[str] = None

    def __post_init__(self) -> None:
        validate_targets(self.target_mean, self.target_sd)


@dataclass
class QCTest:
    """A QC test (analyte) with its control levels.

    ``rules`` overrides the lab-wide rule panel for this test when set.
    ``allowable_error`` is the total allowable error in percent, required for
    the sigma metric.
    """

    id: str
    name: str
    levels: Dict[str, QCLevel] = field(default_factory=dict)
    allowable_error: Optional[float] = None
    rules: Optional[List[str]] = None

    def __post_init__(self) -> None:
        if self.rules is not None:
            select_rules(self.rules)

    def level(self, level_id: str) -> QCLevel:
        try:
            return self.levels[level_id]
        except KeyError:
            raise ConfigurationNotFound(f"QC level {level_id} not found for test {self.id}") from None


@dataclass
class RulePanel:
    """Lab-wide set of enabled Westgard rules."""

    enabled: List[str] = field(default_factory=lambda: list(RULE_CODES))

    def __post_init__(self) -> None:
        select_rules(self.enabled)

    def for_test(self, test: QCTest) -> List[str]:
        return list(test.rules) if test.rules is not None else list(self.enabled)


# History must cover the longest rule window.
MIN_HISTORY = 10


@dataclass
class QCPolicy:
    """History lookup policy for the result recorder."""

    lookback_days: int = 30
    max_history: int = 20
    fetch_timeout_seconds: Optional[float] = 5.0

    def __post_init__(self) -> None:
        if self.lookback_days <= 0:
            raise InvalidConfiguration("lookback_days must be positive")
        if self.max_history < MIN_HISTORY:
            raise InvalidConfiguration(f"max_history must be at least {MIN_HISTORY}")
        if self.fetch_timeout_seconds is not None and self.fetch_timeout_seconds <= 0:
            raise InvalidConfiguration("fetch_timeout_seconds must be positive")
