"""QC failure alerts: severity classification and message text.

Delivery of the alert is left to the notification layer.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Tuple

from .westgard import AcceptanceStatus, QCObservation

CRITICAL_RULES = frozenset({"1_3s", "R_4s", "4_1s", "10x"})
HIGH_RULES = frozenset({"2_2s", "1_2s"})


class AlertSeverity(str, Enum):
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class QCAlert:
    qc_test_id: str
    level_id: str
    severity: AlertSeverity
    title: str
    message: str
    violated_rules: Tuple[str, ...]
    requires_acknowledgment: bool


def classify_severity(violated_rules: Iterable[str]) -> Optional[AlertSeverity]:
    codes = set(violated_rules)
    if codes & CRITICAL_RULES:
        return AlertSeverity.CRITICAL
    if codes & HIGH_RULES:
        return AlertSeverity.HIGH
    return None


def format_failure_message(
    test_name: str, level_id: str, observation: QCObservation, target_mean: float, target_sd: float
) -> str:
    z = observation.z_score
    lines = [
        f"QC failure detected for {test_name}",
        f"Control Level: {level_id}",
        f"Value: {observation.value} (Mean: {target_mean}, SD: {target_sd})",
        f"Z-Score: {z:.2f}" if z is not None else "Z-Score: N/A",
    ]
    if observation.violated_rules:
        lines.append(f"Violations: {', '.join(observation.violated_rules)}")
    return "\n".join(lines)


def build_alert(
    test_name: str,
    observation: QCObservation,
    target_mean: float,
    target_sd: float,
    level_name: Optional[str] = None,
) -> Optional[QCAlert]:
    """Return an alert for a warning or rejected observation, ``None`` otherwise.

    ``level_name`` labels the control level in the message; it defaults to the
    observation's ``level_id``.
    """
    if observation.acceptance_status in (None, AcceptanceStatus.ACCEPTED):
        return None
    severity = classify_severity(observation.violated_rules)
    if severity is None:
        return None
    critical = severity is AlertSeverity.CRITICAL
    return QCAlert(
        qc_test_id=observation.qc_test_id,
        level_id=observation.level_id,
        severity=severity,
        title="CRITICAL QC FAILURE" if critical else "QC Failure Alert",
        message=format_failure_message(
            test_name, level_name or observation.level_id, observation, target_mean, target_sd
        ),
        violated_rules=tuple(observation.violated_rules),
        requires_acknowledgment=critical,
    )
