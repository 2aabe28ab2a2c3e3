import json
import logging
from typing import Any, Dict, List, Optional

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from werkzeug.exceptions import HTTPException

api_bp = Blueprint("api", __name__, url_prefix="/api")

logger = logging.getLogger(__name__)


def _sse_event(event_type: str, data: Any) -> str:
    return f"event: {event_type}\ndata: {json.dumps(data)}\n\n"


def _payload() -> Dict[str, Any]:
    payload = request.get_json(force=True, silent=True) or {}
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


def _string_list(payload: Dict[str, Any], key: str) -> Optional[List[str]]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{key}' must be a list of strings")
    return [item.strip() for item in value if item.strip()]


@api_bp.errorhandler(ValueError)
def _bad_request(exc):
    return jsonify({"error": str(exc) or "Invalid request"}), 400


@api_bp.errorhandler(LookupError)
def _not_found(exc):
    return jsonify({"error": str(exc) or "Not found"}), 404


@api_bp.errorhandler(Exception)
def _server_error(exc):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("Unhandled error in %s %s", request.method, request.path)
    return jsonify({"error": str(exc) or "Internal error"}), 500


@api_bp.route("/health", methods=["GET"])
def api_health():
    return jsonify({"status": "ok", "demo": current_app.settings.demo_mode})


@api_bp.route("/updates", methods=["GET", "POST"])
def api_updates():
    cache = current_app.update_service.cache
    if request.method == "GET":
        return jsonify({"data": [info.to_dict() for info in cache.get_all()]})

    images = _string_list(_payload(), "images")
    if images is None:
        raise ValueError("'images' is required")
    return jsonify({"data": [info.to_dict() for info in cache.get_many(images)]})


@api_bp.route("/updates/check", methods=["POST"])
def api_updates_check():
    payload = _payload()
    images = _string_list(payload, "images")
    force = bool(payload.get("force", False))

    results, failures = current_app.update_service.check_images(images, force=force)
    return jsonify({"data": [info.to_dict() for info in results], "errors": failures})


@api_bp.route("/updates/cache", methods=["DELETE"])
def api_updates_cache_clear():
    images = _string_list(_payload(), "images")
    cleared = current_app.update_service.cache.invalidate(images)
    return jsonify({"cleared": cleared})


@api_bp.route("/updates/stats", methods=["GET"])
def api_updates_stats():
    return jsonify(current_app.update_service.cache.stats())


@api_bp.route("/updates/run", methods=["POST"])
def api_updates_run():
    """Stream an update run as server-sent events.

    An empty selection updates every compose project with a known update.
    The first event carries the run id used by the cancel endpoint.
    """
    payload = _payload()
    projects = _string_list(payload, "projects") or []
    containers = _string_list(payload, "containers") or []

    orchestrator = current_app.orchestrator
    runs = current_app.runs
    run_id, cancel = runs.start()

    if projects or containers:
        events = orchestrator.update_named(projects, containers, cancel)
    else:
        events = orchestrator.update_all(cancel)

    def generate():
        try:
            yield _sse_event("run", {"id": run_id})
            for event in events:
                yield _sse_event(event.type, event.to_dict())
        finally:
            runs.finish(run_id)

    headers = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
    return Response(
        stream_with_context(generate()),
        mimetype="text/event-stream",
        headers=headers,
    )


@api_bp.route("/updates/runs/<run_id>/cancel", methods=["POST"])
def api_updates_run_cancel(run_id):
    return jsonify({"cancelled": current_app.runs.cancel(run_id)})
