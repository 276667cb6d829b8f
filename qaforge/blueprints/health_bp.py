"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready   process is up (load balancer probe)
    GET /api/v1/health/live    database, generation client and prompt set
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from qaforge.ai import get_gateway, get_registry
from qaforge.models import db

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")

PIPELINE_PROMPTS = (
    "business_process_extraction",
    "process_matching",
    "scenario_generation",
    "test_case_generation",
    "test_code_generation",
)


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _database_check():
    started = time.perf_counter()
    try:
        db.session.execute(db.text("SELECT 1"))
    except Exception as exc:
        logger.error("Health check: database unreachable: %s", exc)
        return {"status": "error", "detail": str(exc)}, False
    return {"status": "ok", "latency_ms": round((time.perf_counter() - started) * 1000, 1)}, True


def _generation_check():
    gateway = get_gateway()
    providers = list(getattr(gateway, "available_providers", []))
    # Stub-only still serves requests, so it does not degrade the service
    return {
        "status": "ok" if any(p != "local" for p in providers) else "stub_only",
        "providers": providers,
        "default_model": getattr(gateway, "default_model", None),
    }


def _prompt_check():
    registry = get_registry()
    missing = [name for name in PIPELINE_PROMPTS if registry.get(name) is None]
    active = {name: registry.active_version(name) for name in PIPELINE_PROMPTS if name not in missing}
    return {"status": "ok" if not missing else "error", "active": active, "missing": missing}, not missing


@health_bp.route("/live", methods=["GET"])
def live():
    """Dependency status; 503 when the database or a pipeline prompt is missing."""
    database, db_ok = _database_check()
    prompts, prompts_ok = _prompt_check()
    healthy = db_ok and prompts_ok
    body = {
        "status": "healthy" if healthy else "degraded",
        "checks": {
            "database": database,
            "llm": _generation_check(),
            "prompts": prompts,
        },
        "testing": current_app.testing,
    }
    return jsonify(body), 200 if healthy else 503
