"""Serialized QC submission and the review pipeline built on it."""
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Hashable, List, Optional, Tuple, Type

from lims.adapter import InMemoryObservationStore, QCLevelCatalog
from qc.alerts import QCAlert, build_alert
from qc.errors import InsufficientData, QCError
from qc.levey_jennings import build_levey_jennings_series
from qc.recorder import AuditLogger, RecordedResult, ResultRecorder
from qc.statistics import compute_statistics


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}

    def lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def __len__(self) -> int:
        return len(self._locks)


class SerializedRecorder:
    """Single writer per (qc_test_id, level_id).

    The lock is held across evaluation and persistence so a second submission
    for the same level always sees the first one in its history window.
    Submissions for different levels do not block each other.
    """

    def __init__(self, recorder: ResultRecorder, store: InMemoryObservationStore, locks: Optional[KeyedLocks] = None):
        self.recorder = recorder
        self.store = store
        self.locks = locks or KeyedLocks()

    def submit(self, qc_test_id: str, level_id: str, value: float, run_date: datetime) -> RecordedResult:
        with self.locks.lock_for((qc_test_id, level_id)):
            result = self.recorder.record_observation(qc_test_id, level_id, value, run_date)
            self.store.append(result.observation)
        return result


@dataclass
class WorkflowTask:
    name: str
    func: Callable[..., object]
    tolerates: Tuple[Type[QCError], ...] = ()


class WorkflowDAG:
    """Runs review tasks in order and records each outcome in the audit trail.

    A task may declare QC errors it tolerates; such an error becomes that
    task's output and later tasks still run. Any other error stops the run.
    """

    def __init__(self, logger: AuditLogger):
        self.logger = logger
        self.tasks: List[WorkflowTask] = []

    def add_task(self, name: str, func: Callable[..., object], tolerates: Tuple[Type[QCError], ...] = ()) -> None:
        self.tasks.append(WorkflowTask(name=name, func=func, tolerates=tolerates))

    def run(self) -> List[Tuple[str, object]]:
        results: List[Tuple[str, object]] = []
        for task in self.tasks:
            try:
                output = task.func()
            except task.tolerates as exc:
                self.logger.log("skipped", task.name, exc.kind)
                results.append((task.name, exc))
                continue
            except QCError as exc:
                self.logger.log("failed", task.name, exc.kind)
                raise
            results.append((task.name, output))
            self.logger.log("executed", task.name)
        return results


def build_qc_review(
    catalog: QCLevelCatalog,
    store: InMemoryObservationStore,
    qc_test_id: str,
    level_id: str,
    value: float,
    run_date: datetime,
    submissions: Optional[SerializedRecorder] = None,
) -> Tuple[WorkflowDAG, AuditLogger]:
    """Build the submit → alert → statistics → chart pipeline for one observation.

    Submission goes through ``SerializedRecorder`` so reviews for the same
    level never interleave their history reads and appends. Until the level
    has two stored observations the ``statistics`` output is the
    ``InsufficientData`` error instead of a ``QCStatistics``.
    """
    if submissions is None:
        submissions = SerializedRecorder(ResultRecorder(catalog, store, audit=AuditLogger()), store)
    logger = submissions.recorder.audit
    test = catalog.get_test(qc_test_id)
    level = test.level(level_id)
    state: Dict[str, RecordedResult] = {}

    dag = WorkflowDAG(logger)

    def _submit() -> RecordedResult:
        state["result"] = submissions.submit(qc_test_id, level_id, value, run_date)
        return state["result"]

    def _alert() -> Optional[QCAlert]:
        return build_alert(
            test.name, state["result"].observation, level.target_mean, level.target_sd, level_name=level.name
        )

    dag.add_task("submit", _submit)
    dag.add_task("alert", _alert)
    dag.add_task(
        "statistics",
        lambda: compute_statistics(
            store.observations(qc_test_id, level_id),
            level.target_mean,
            level.target_sd,
            allowable_error=test.allowable_error,
        ),
        tolerates=(InsufficientData,),
    )
    dag.add_task(
        "levey_jennings",
        lambda: build_levey_jennings_series(
            store.observations(qc_test_id, level_id), level.target_mean, level.target_sd
        ),
    )
    return dag, logger
