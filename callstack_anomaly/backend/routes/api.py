from __future__ import annotations

import os

from flask import Blueprint, abort, jsonify, request
from pydantic import ValidationError

from callstack_anomaly.backend.services.analysis_service import AnalysisService
from callstack_anomaly.common.errors import MissingExternalModelError

api_bp = Blueprint("api", __name__)
service = AnalysisService()


def _require_admin() -> None:
    expected = os.getenv("ADMIN_API_KEY")
    if not expected:
        return
    provided = request.headers.get("X-API-KEY")
    if not provided or provided != expected:
        abort(401, description="Invalid API key for administrative operations.")


@api_bp.get("/health")
def health_check():
    return jsonify({"status": "ok"})


@api_bp.post("/analysis")
def start_analysis():
    body = request.get_json(silent=True) or {}
    overrides = body.get("overrides") or {}
    if not isinstance(overrides, dict):
        abort(400, description="Field 'overrides' must be an object.")
    try:
        started = service.start_background_analysis(
            body.get("trace"),
            source=body.get("source") or request.args.get("source"),
            overrides=overrides,
        )
    except ValidationError as exc:
        details = [{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()]
        return jsonify({"error": "invalid trace", "details": details}), 400
    except MissingExternalModelError as exc:
        abort(400, description=f"Model unavailable: {exc}")
    except (TypeError, ValueError) as exc:
        abort(400, description=str(exc))
    if not started:
        abort(409, description="An analysis is already running.")
    return jsonify({"status": "started"}), 202


@api_bp.post("/analysis/cancel")
def cancel_analysis():
    return jsonify({"cancelled": service.cancel()})


@api_bp.get("/analysis/status")
def analysis_status():
    return jsonify(service.get_status())


@api_bp.get("/analysis/results")
def analysis_results():
    results = service.get_results()
    if results is None:
        abort(404, description="No analysis has finished yet.")
    return jsonify(results)


@api_bp.get("/analysis/arrays")
def arrays_info():
    return jsonify(service.describe_arrays(source=request.args.get("source")))


@api_bp.delete("/analysis/arrays")
def delete_arrays():
    _require_admin()
    try:
        deleted = service.clear_arrays(source=request.args.get("source"))
    except RuntimeError as exc:
        abort(409, description=str(exc))
    return jsonify({"deleted": deleted})

