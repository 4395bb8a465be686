"""Adapters for the QC level catalog and observation history.

The engine only depends on the two protocols below. ``QCLevelCatalog`` loads
targets from YAML/JSON files and ``InMemoryObservationStore`` keeps an
append-only history; both stand in for the LIMS document store.
"""
import json
import logging
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import yaml

from qc.errors import ConfigurationNotFound, InvalidConfiguration
from qc.westgard import QCObservation

from .config import QCLevel, QCPolicy, QCTest, RulePanel

logger = logging.getLogger(__name__)


class LevelConfigSource(Protocol):
    def fetch_level_config(self, qc_test_id: str, level_id: str) -> QCLevel:
        ...


class HistorySource(Protocol):
    def fetch_recent_observations(
        self, qc_test_id: str, level_id: str, lookback_days: int, max_count: int
    ) -> Sequence[QCObservation]:
        ...


class QCLevelCatalog:
    """QC tests and their level targets, optionally loaded from a catalog file."""

    def __init__(
        self,
        tests: Iterable[QCTest] = (),
        rule_panel: Optional[RulePanel] = None,
        policy: Optional[QCPolicy] = None,
    ):
        self._tests: Dict[str, QCTest] = {test.id: test for test in tests}
        self.rule_panel = rule_panel or RulePanel()
        self.policy = policy or QCPolicy()

    @classmethod
    def from_file(cls, path: Path) -> "QCLevelCatalog":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"QC catalog {path} not found")
        with path.open(encoding="utf-8") as f:
            raw = json.load(f) if path.suffix == ".json" else yaml.safe_load(f)
        return cls.from_dict(raw or {})

    @classmethod
    def from_directory(cls, catalog_dir: Path, name: str) -> "QCLevelCatalog":
        for suffix in (".yaml", ".yml", ".json"):
            path = Path(catalog_dir) / f"{name}{suffix}"
            if path.exists():
                return cls.from_file(path)
        raise FileNotFoundError(f"QC catalog {name} not found in {catalog_dir}")

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "QCLevelCatalog":
        if not isinstance(raw, dict):
            raise InvalidConfiguration(f"QC catalog must be a mapping, got {type(raw).__name__}")
        tests: List[QCTest] = []
        for entry in raw.get("tests", []):
            try:
                levels = {
                    str(level["id"]): QCLevel(
                        id=str(level["id"]),
                        target_mean=float(level["target_mean"]),
                        target_sd=float(level["target_sd"]),
                        name=level.get("name"),
                        unit=level.get("unit", entry.get("unit")),
                    )
                    for level in entry.get("levels", [])
                }
                allowable_error = entry.get("allowable_error")
                tests.append(
                    QCTest(
                        id=str(entry["id"]),
                        name=entry.get("name", str(entry["id"])),
                        levels=levels,
                        allowable_error=float(allowable_error) if allowable_error is not None else None,
                        rules=entry.get("rules"),
                    )
                )
            except InvalidConfiguration:
                raise
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise InvalidConfiguration(f"Invalid QC test entry {entry!r}: {exc}") from exc
        try:
            panel = RulePanel(enabled=list(raw["rules"])) if "rules" in raw else RulePanel()
            policy = QCPolicy(**raw["policy"]) if "policy" in raw else QCPolicy()
        except InvalidConfiguration:
            raise
        except (TypeError, ValueError) as exc:
            raise InvalidConfiguration(f"Invalid QC catalog settings: {exc}") from exc
        logger.info("Loaded QC catalog with %d tests", len(tests))
        return cls(tests, rule_panel=panel, policy=policy)

    def add_test(self, test: QCTest) -> None:
        self._tests[test.id] = test

    def get_test(self, qc_test_id: str) -> QCTest:
        try:
            return self._tests[qc_test_id]
        except KeyError:
            raise ConfigurationNotFound(f"QC test {qc_test_id} not found") from None

    def fetch_level_config(self, qc_test_id: str, level_id: str) -> QCLevel:
        return self.get_test(qc_test_id).level(level_id)

    def rules_for(self, qc_test_id: str) -> List[str]:
        return self.rule_panel.for_test(self.get_test(qc_test_id))

    def tests(self) -> List[QCTest]:
        return list(self._tests.values())


class InMemoryObservationStore:
    """Append-only observation history keyed by (qc_test_id, level_id)."""

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._observations: Dict[Tuple[str, str], List[QCObservation]] = {}

    def append(self, observation: QCObservation) -> None:
        key = (observation.qc_test_id, observation.level_id)
        with self._lock:
            self._observations.setdefault(key, []).append(observation)

    def fetch_recent_observations(
        self, qc_test_id: str, level_id: str, lookback_days: int, max_count: int
    ) -> List[QCObservation]:
        since = self._clock() - timedelta(days=lookback_days)
        with self._lock:
            candidates = list(self._observations.get((qc_test_id, level_id), []))
        recent = [o for o in candidates if o.run_date >= since]
        recent.sort(key=lambda o: o.run_date, reverse=True)
        return recent[:max_count]

    def observations(self, qc_test_id: str, level_id: str) -> List[QCObservation]:
        """All stored observations for a level, oldest first."""
        with self._lock:
            stored = list(self._observations.get((qc_test_id, level_id), []))
        return sorted(stored, key=lambda o: o.run_date)


__all__ = [
    "HistorySource",
    "InMemoryObservationStore",
    "LevelConfigSource",
    "QCLevelCatalog",
]
