"""Result recorder: fetch history, evaluate the rule panel, return the decision."""
import logging
from concurrent.futures import CancelledError, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from numbers import Real
from typing import Dict, List, Optional

from lims.adapter import HistorySource, QCLevelCatalog
from lims.config import QCPolicy

from .errors import HistoryUnavailable
from .westgard import AcceptanceStatus, QCObservation, evaluate_rules, z_score

logger = logging.getLogger(__name__)


@dataclass
class AuditLogger:
    """Append-only trail of ``event:field:...`` lines for one submission or review."""

    entries: List[str] = field(default_factory=list)

    def log(self, event: str, *fields: object) -> None:
        self.entries.append(":".join([event, *(str(f) for f in fields)]))

    def events(self, event: str) -> List[str]:
        prefix = f"{event}:"
        return [entry for entry in self.entries if entry.startswith(prefix)]


@dataclass(frozen=True)
class RecordedResult:
    acceptance_status: AcceptanceStatus
    violated_rules: tuple
    z_score: float
    observation: QCObservation

    def to_json(self) -> Dict[str, object]:
        return {
            "acceptanceStatus": self.acceptance_status.value,
            "violatedRules": list(self.violated_rules),
            "zScore": self.z_score,
        }


def _history_values(history: object) -> List[float]:
    if not isinstance(history, (list, tuple)):
        raise HistoryUnavailable(f"History lookup returned {type(history).__name__}, expected a sequence")
    values: List[float] = []
    for entry in history:
        if isinstance(entry, QCObservation):
            if not entry.excluded:
                values.append(float(entry.value))
        elif isinstance(entry, Real) and not isinstance(entry, bool):
            values.append(float(entry))
        else:
            raise HistoryUnavailable(f"History lookup returned an invalid entry: {entry!r}")
    return values


class ResultRecorder:
    """Classifies new QC observations against their recent history.

    The recorder performs a single history read per observation and never
    persists anything; the caller stores the returned observation. Callers
    recording concurrently for the same (test, level) must serialize those
    calls, see ``orchestrator.workflow.SerializedRecorder``.
    """

    def __init__(
        self,
        catalog: QCLevelCatalog,
        history_source: HistorySource,
        policy: Optional[QCPolicy] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.catalog = catalog
        self.history_source = history_source
        self.policy = policy or catalog.policy
        self.audit = audit or AuditLogger()

    def fetch_history(self, qc_test_id: str, level_id: str) -> List[float]:
        """Return prior values, most recent first, or raise ``HistoryUnavailable``."""
        args = (qc_test_id, level_id, self.policy.lookback_days, self.policy.max_history)
        try:
            if self.policy.fetch_timeout_seconds is None:
                history = self.history_source.fetch_recent_observations(*args)
            else:
                executor = ThreadPoolExecutor(max_workers=1)
                try:
                    future = executor.submit(self.history_source.fetch_recent_observations, *args)
                    history = future.result(timeout=self.policy.fetch_timeout_seconds)
                finally:
                    executor.shutdown(wait=False)
        except HistoryUnavailable:
            raise
        except FutureTimeoutError as exc:
            raise HistoryUnavailable(
                f"History lookup for {qc_test_id}/{level_id} timed out after "
                f"{self.policy.fetch_timeout_seconds}s"
            ) from exc
        except CancelledError as exc:
            raise HistoryUnavailable(f"History lookup for {qc_test_id}/{level_id} was cancelled") from exc
        except Exception as exc:
            raise HistoryUnavailable(f"History lookup for {qc_test_id}/{level_id} failed: {exc}") from exc
        return _history_values(history)

    def record_observation(
        self, qc_test_id: str, level_id: str, value: float, run_date: datetime
    ) -> RecordedResult:
        level = self.catalog.fetch_level_config(qc_test_id, level_id)
        rules = self.catalog.rules_for(qc_test_id)
        history = self.fetch_history(qc_test_id, level_id)

        evaluation = evaluate_rules(value, level.target_mean, level.target_sd, history, rules)
        score = z_score(value, level.target_mean, level.target_sd)
        observation = QCObservation(
            value=value,
            run_date=run_date,
            qc_test_id=qc_test_id,
            level_id=level_id,
            acceptance_status=evaluation.acceptance_status,
            violated_rules=evaluation.violated_rules,
            z_score=score,
        )

        status = evaluation.acceptance_status.value
        violations = ",".join(evaluation.violated_rules) or "none"
        self.audit.log("recorded", qc_test_id, level_id, status, violations)
        if evaluation.acceptance_status is AcceptanceStatus.ACCEPTED:
            logger.info("QC %s/%s value=%s accepted (history=%d)", qc_test_id, level_id, value, len(history))
        else:
            logger.warning(
                "QC %s/%s value=%s %s, violated rules: %s", qc_test_id, level_id, value, status, violations
            )
        return RecordedResult(
            acceptance_status=evaluation.acceptance_status,
            violated_rules=evaluation.violated_rules,
            z_score=score,
            observation=observation,
        )
