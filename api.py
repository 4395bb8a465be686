"""JSON HTTP surface for the QC engine."""
import logging
import math
import os
from datetime import datetime, timezone
from numbers import Real
from typing import Dict, List, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from lims.adapter import InMemoryObservationStore, QCLevelCatalog
from orchestrator.workflow import SerializedRecorder
from qc.alerts import build_alert
from qc.errors import (
    ConfigurationNotFound,
    HistoryUnavailable,
    InsufficientData,
    InvalidConfiguration,
    InvalidMeasurement,
    QCError,
)
from qc.levey_jennings import build_levey_jennings_series
from qc.recorder import ResultRecorder
from qc.statistics import STATISTICS_PERIODS, compute_statistics, statistics_for_period
from qc.westgard import AcceptanceStatus, QCObservation, evaluate_rules

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidConfiguration: 422,
    InvalidMeasurement: 422,
    InsufficientData: 422,
    ConfigurationNotFound: 404,
    HistoryUnavailable: 503,
}


def parse_timestamp(raw: object, field_name: str) -> datetime:
    if not isinstance(raw, str):
        raise BadRequest(f"'{field_name}' must be an ISO-8601 timestamp")
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError as exc:
        raise BadRequest(f"Invalid timestamp '{raw}': {exc}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _is_number(raw: object) -> bool:
    return isinstance(raw, Real) and not isinstance(raw, bool) and math.isfinite(raw)


def parse_number(payload: Dict[str, object], field_name: str, required: bool = True) -> Optional[float]:
    raw = payload.get(field_name)
    if raw is None and not required:
        return None
    if not _is_number(raw):
        raise BadRequest(f"'{field_name}' must be a finite number")
    return float(raw)


def parse_flag(payload: Dict[str, object], field_name: str) -> bool:
    raw = payload.get(field_name)
    if raw is None:
        return False
    if not isinstance(raw, bool):
        raise BadRequest(f"'{field_name}' must be true or false")
    return raw


def parse_codes(payload: Dict[str, object], field_name: str) -> Optional[List[str]]:
    raw = payload.get(field_name)
    if raw is None:
        return None
    if not isinstance(raw, list) or not all(isinstance(code, str) for code in raw):
        raise BadRequest(f"'{field_name}' must be a list of rule codes")
    return raw


def parse_observations(payload: Dict[str, object]) -> List[QCObservation]:
    raw_list = payload.get("observations")
    if not isinstance(raw_list, list):
        raise BadRequest("'observations' must be a list")
    observations: List[QCObservation] = []
    for raw in raw_list:
        if not isinstance(raw, dict):
            raise BadRequest("Each observation must be an object")
        status = raw.get("acceptanceStatus")
        try:
            acceptance = AcceptanceStatus(status) if status is not None else None
        except ValueError:
            raise BadRequest(f"Unknown acceptance status '{status}'")
        observations.append(
            QCObservation(
                value=parse_number(raw, "value"),
                run_date=parse_timestamp(raw.get("runDate"), "runDate"),
                acceptance_status=acceptance,
                violated_rules=tuple(parse_codes(raw, "violatedRules") or ()),
                excluded=parse_flag(raw, "excluded"),
            )
        )
    return observations


def _json_body() -> Dict[str, object]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    return payload


def create_app(
    catalog: Optional[QCLevelCatalog] = None,
    store: Optional[InMemoryObservationStore] = None,
) -> Flask:
    app = Flask(__name__)

    if catalog is None:
        catalog_path = os.environ.get("QC_CATALOG_PATH")
        catalog = QCLevelCatalog.from_file(catalog_path) if catalog_path else QCLevelCatalog()
    store = store or InMemoryObservationStore()
    submissions = SerializedRecorder(ResultRecorder(catalog, store), store)

    @app.errorhandler(QCError)
    def handle_qc_error(exc: QCError):
        status = next((code for kind, code in ERROR_STATUS.items() if isinstance(exc, kind)), 500)
        body: Dict[str, object] = {"error": exc.kind, "message": str(exc)}
        if isinstance(exc, InsufficientData):
            body.update({"n": exc.n, "mean": exc.mean})
        logger.warning("QC request failed: %s: %s", exc.kind, exc)
        return jsonify(body), status

    @app.errorhandler(HTTPException)
    def handle_http_error(exc: HTTPException):
        return jsonify({"error": exc.name, "message": exc.description}), exc.code

    @app.route("/qc/evaluate", methods=["POST"])
    def evaluate():
        payload = _json_body()
        history = payload.get("history", [])
        if not isinstance(history, list) or not all(_is_number(v) for v in history):
            raise BadRequest("'history' must be a list of numbers, most recent first")
        result = evaluate_rules(
            parse_number(payload, "newValue"),
            parse_number(payload, "targetMean"),
            parse_number(payload, "targetSD"),
            history,
            parse_codes(payload, "rules"),
        )
        return jsonify(result.to_json())

    @app.route("/qc/observations", methods=["POST"])
    def record_observation():
        payload = _json_body()
        qc_test_id = payload.get("qcTestId")
        level_id = payload.get("levelId")
        if not isinstance(qc_test_id, str) or not isinstance(level_id, str):
            raise BadRequest("'qcTestId' and 'levelId' are required")
        run_date = parse_timestamp(payload.get("runDate"), "runDate")
        result = submissions.submit(qc_test_id, level_id, parse_number(payload, "value"), run_date)

        test = catalog.get_test(qc_test_id)
        level = test.level(level_id)
        alert = build_alert(
            test.name, result.observation, level.target_mean, level.target_sd, level_name=level.name
        )
        body = result.to_json()
        body["alert"] = (
            {"severity": alert.severity.value, "title": alert.title, "message": alert.message} if alert else None
        )
        return jsonify(body), 201

    @app.route("/qc/statistics", methods=["POST"])
    def statistics():
        payload = _json_body()
        stats = compute_statistics(
            parse_observations(payload),
            parse_number(payload, "targetMean"),
            parse_number(payload, "targetSD"),
            allowable_error=parse_number(payload, "allowableError", required=False),
        )
        return jsonify(stats.to_json())

    @app.route("/qc/levey-jennings", methods=["POST"])
    def levey_jennings():
        payload = _json_body()
        series = build_levey_jennings_series(
            parse_observations(payload),
            parse_number(payload, "targetMean"),
            parse_number(payload, "targetSD"),
        )
        return jsonify([point.to_json() for point in series])

    @app.route("/qc/tests/<qc_test_id>/levels/<level_id>/statistics")
    def stored_statistics(qc_test_id: str, level_id: str):
        period = request.args.get("period", "monthly")
        if period not in STATISTICS_PERIODS:
            raise BadRequest(f"Unknown period '{period}'")
        test = catalog.get_test(qc_test_id)
        level = test.level(level_id)
        stats = statistics_for_period(
            store.observations(qc_test_id, level_id),
            level.target_mean,
            level.target_sd,
            period,
            now=datetime.utcnow(),
            allowable_error=test.allowable_error,
        )
        return jsonify(stats.to_json())

    @app.route("/qc/tests/<qc_test_id>/levels/<level_id>/levey-jennings")
    def stored_levey_jennings(qc_test_id: str, level_id: str):
        level = catalog.fetch_level_config(qc_test_id, level_id)
        series = build_levey_jennings_series(store.observations(qc_test_id, level_id), level.target_mean, level.target_sd)
        return jsonify([point.to_json() for point in series])

    return app


if __name__ == "__main__":
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    create_app().run(debug=True)
