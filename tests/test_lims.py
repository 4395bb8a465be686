from datetime import datetime, timedelta
from pathlib import Path

import pytest

from lims.adapter import InMemoryObservationStore, QCLevelCatalog
from lims.config import QCLevel, QCPolicy, QCTest, RulePanel
from qc.errors import ConfigurationNotFound, InvalidConfiguration
from qc.westgard import QCObservation

NOW = datetime(2024, 7, 1, 12, 0)
EXAMPLE_CATALOG = Path(__file__).resolve().parents[1] / "lims" / "catalogs" / "example.yaml"


def test_catalog_loads_levels_rules_and_policy(tmp_path):
    catalog_file = tmp_path / "lab.yaml"
    catalog_file.write_text(
        """
rules: [1_2s, 1_3s, 2_2s]
policy:
  lookback_days: 14
  max_history: 12
tests:
  - id: glucose
    name: Glucose
    allowable_error: 6.9
    levels:
      - id: level1
        target_mean: 100
        target_sd: 5
  - id: tsh
    name: hTSH
    rules: [1_3s]
    levels:
      - id: level1
        target_mean: 0.5
        target_sd: 0.05
"""
    )
    catalog = QCLevelCatalog.from_file(catalog_file)

    level = catalog.fetch_level_config("glucose", "level1")
    assert (level.target_mean, level.target_sd) == (100.0, 5.0)
    assert catalog.get_test("glucose").allowable_error == 6.9
    assert catalog.rules_for("glucose") == ["1_2s", "1_3s", "2_2s"]
    assert catalog.rules_for("tsh") == ["1_3s"]
    assert catalog.policy.lookback_days == 14
    assert catalog.policy.max_history == 12


def test_catalog_resolves_file_by_name(tmp_path):
    (tmp_path / "lab.json").write_text(
        '{"tests": [{"id": "k", "levels": [{"id": "L1", "target_mean": 4.2, "target_sd": 0.1}]}]}'
    )
    catalog = QCLevelCatalog.from_directory(tmp_path, "lab")
    assert catalog.fetch_level_config("k", "L1").target_mean == 4.2
    with pytest.raises(FileNotFoundError):
        QCLevelCatalog.from_directory(tmp_path, "missing")


def test_shipped_example_catalog_loads():
    catalog = QCLevelCatalog.from_file(EXAMPLE_CATALOG)
    assert {test.id for test in catalog.tests()} == {"glucose", "tsh"}
    assert "10x" not in catalog.rules_for("tsh")


def test_missing_test_or_level_raises_configuration_not_found():
    catalog = QCLevelCatalog([QCTest(id="glucose", name="Glucose", levels={"level1": QCLevel("level1", 100.0, 5.0)})])
    with pytest.raises(ConfigurationNotFound, match="unknown"):
        catalog.fetch_level_config("unknown", "level1")
    with pytest.raises(ConfigurationNotFound, match="level9"):
        catalog.fetch_level_config("glucose", "level9")


def test_catalog_rejects_non_positive_sd(tmp_path):
    catalog_file = tmp_path / "bad.yaml"
    catalog_file.write_text("tests:\n  - id: g\n    levels:\n      - id: L1\n        target_mean: 1\n        target_sd: 0\n")
    with pytest.raises(InvalidConfiguration):
        QCLevelCatalog.from_file(catalog_file)


def test_catalog_rejects_incomplete_level(tmp_path):
    catalog_file = tmp_path / "bad.yaml"
    catalog_file.write_text("tests:\n  - id: g\n    levels:\n      - id: L1\n        target_mean: 1\n")
    with pytest.raises(InvalidConfiguration, match="target_sd"):
        QCLevelCatalog.from_file(catalog_file)


def test_catalog_root_must_be_a_mapping(tmp_path):
    catalog_file = tmp_path / "list.yaml"
    catalog_file.write_text("- id: glucose\n- id: tsh\n")
    with pytest.raises(InvalidConfiguration, match="mapping"):
        QCLevelCatalog.from_file(catalog_file)


def test_catalog_rejects_unknown_policy_keys(tmp_path):
    catalog_file = tmp_path / "policy.yaml"
    catalog_file.write_text("policy:\n  lookback_days: 30\n  retention_years: 7\n")
    with pytest.raises(InvalidConfiguration, match="retention_years") as excinfo:
        QCLevelCatalog.from_file(catalog_file)
    assert isinstance(excinfo.value.__cause__, TypeError)


def test_catalog_rejects_malformed_sections():
    with pytest.raises(InvalidConfiguration):
        QCLevelCatalog.from_dict({"rules": 5})
    with pytest.raises(InvalidConfiguration):
        QCLevelCatalog.from_dict({"policy": ["lookback_days"]})
    with pytest.raises(InvalidConfiguration, match="Invalid QC test entry"):
        QCLevelCatalog.from_dict({"tests": ["glucose"]})


def test_config_validation():
    with pytest.raises(InvalidConfiguration):
        RulePanel(enabled=["1_2s", "8x"])
    with pytest.raises(InvalidConfiguration):
        QCPolicy(max_history=5)
    with pytest.raises(InvalidConfiguration):
        QCPolicy(fetch_timeout_seconds=0)


def test_store_returns_recent_history_newest_first():
    store = InMemoryObservationStore(clock=lambda: NOW)
    for days_ago, value in [(40, 90.0), (3, 101.0), (1, 103.0), (2, 102.0)]:
        store.append(QCObservation(value=value, run_date=NOW - timedelta(days=days_ago), qc_test_id="g", level_id="L1"))
    store.append(QCObservation(value=55.0, run_date=NOW, qc_test_id="g", level_id="L2"))

    recent = store.fetch_recent_observations("g", "L1", lookback_days=30, max_count=10)
    assert [o.value for o in recent] == [103.0, 102.0, 101.0]
    assert [o.value for o in store.fetch_recent_observations("g", "L1", 30, 2)] == [103.0, 102.0]
    assert [o.value for o in store.observations("g", "L1")] == [90.0, 101.0, 102.0, 103.0]
