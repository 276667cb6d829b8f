"""
QAForge
Project Blueprint — document upload and artifact generation.

Endpoints (all under /api/v1/projects/<project_id>):
    FILES        /upload                          POST  (multipart "file")
                 /files                           GET
                 /files/<file_id>                 GET   (download), DELETE
                 /overview                        GET

    PROCESSES    /generate-bp                     POST  (multipart "file")
                 /regenerate                      POST  (multipart "file")
                 /business-processes              GET   (matched, by score)
                 /business-processes/selected     GET
                 /business-processes/<id>         PUT

    SCENARIOS    /generate-scenarios              POST  {bpIds, prompt?}
                 /scenarios                       GET
                 /scenarios/<id>                  PUT

    TESTS        /generate-tests                  POST  {framework, language, scenarios, mode?, prompt?}
                 /test-cases                      GET
                 /test-cases/<id>                 PUT

Services own all business logic and commits; views only parse requests
and shape the envelope.
"""

import io
import logging

from flask import Blueprint, jsonify, request, send_file
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from qaforge.blueprints import paginate_query
from qaforge.core.exceptions import (
    ArtifactParseError,
    GenerationError,
    NotFoundError,
    ValidationError,
)
from qaforge.models import db
from qaforge.models.business_process import BusinessProcess
from qaforge.models.project_file import ProjectFile
from qaforge.models.scenario import Scenario
from qaforge.models.testing import TestCase
from qaforge.services import generation_service as generation
from qaforge.services import hierarchy_service as hierarchy
from qaforge.utils.errors import E, api_error

logger = logging.getLogger(__name__)

project_bp = Blueprint("projects", __name__, url_prefix="/api/v1/projects")

# ── Rate limiting ─────────────────────────────────────────────────────────
from qaforge import limiter  # noqa: E402

_generate_limit = limiter.shared_limit("30/minute", scope="ai_generate")


# ── Error handlers ────────────────────────────────────────────────────────

_HTTP_CODES = {
    404: E.NOT_FOUND,
    405: E.METHOD_NOT_ALLOWED,
    413: E.PAYLOAD_TOO_LARGE,
    415: E.UNSUPPORTED_MEDIA,
    429: E.RATE_LIMITED,
}


@project_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    code = E.VALIDATION_INVALID if error.details else E.VALIDATION_REQUIRED
    return api_error(code, str(error), details=error.details)


@project_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, f"{error.resource} not found")


@project_bp.errorhandler(GenerationError)
def _handle_generation(error: GenerationError):
    extra = {}
    file_record = getattr(error, "file_record", None)
    if file_record is not None:
        extra["fileId"] = file_record.id
    return api_error(E.GENERATION_FAILED, str(error), error=error.cause, **extra)


@project_bp.errorhandler(ArtifactParseError)
def _handle_parse(error: ArtifactParseError):
    return api_error(E.PARSE_FAILED, str(error), raw=error.raw)


@project_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.exception("Database error in project_bp endpoint=%s", request.endpoint)
    return api_error(E.DATABASE, "Database error")


@project_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return api_error(
            _HTTP_CODES.get(error.code, E.INTERNAL), error.description or error.name,
            status=error.code,
        )
    db.session.rollback()
    logger.exception("Unexpected error in project_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ── Helpers ───────────────────────────────────────────────────────────────

def _uploaded_file():
    """Return (bytes, filename, mimetype) of the multipart ``file`` field."""
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        raise ValidationError("file is required")
    return upload.read(), upload.filename, upload.mimetype or ""


def _listing(query):
    items, total = paginate_query(query)
    return jsonify({"ok": True, "items": [i.to_dict() for i in items], "total": total})


# ═════════════════════════════════════════════════════════════════════════
# Files
# ═════════════════════════════════════════════════════════════════════════

@project_bp.route("/<project_id>/upload", methods=["POST"])
@_generate_limit
def upload_file(project_id):
    """Store a document and generate the project's business processes from it."""
    data, filename, mimetype = _uploaded_file()
    record, processes = generation.upload_document(project_id, data, filename, mimetype)
    return jsonify({
        "ok": True,
        "fileId": record.id,
        "filename": record.filename,
        "version": record.version,
        "matchedCount": len(processes),
    }), 201


@project_bp.route("/<project_id>/files", methods=["GET"])
def list_files(project_id):
    files = generation.list_files(project_id)
    return jsonify({"ok": True, "items": [f.to_dict() for f in files]})


@project_bp.route("/<project_id>/files/<int:file_id>", methods=["GET"])
def download_file(project_id, file_id):
    record = ProjectFile.query.filter_by(id=file_id, project_id=project_id).first()
    if record is None:
        raise NotFoundError("File", file_id, project_id)
    return send_file(
        io.BytesIO(record.data),
        mimetype=record.mimetype or "application/octet-stream",
        as_attachment=True,
        download_name=record.filename,
    )


@project_bp.route("/<project_id>/files/<int:file_id>", methods=["DELETE"])
def delete_file(project_id, file_id):
    record = ProjectFile.query.filter_by(id=file_id, project_id=project_id).first()
    if record is None:
        raise NotFoundError("File", file_id, project_id)
    db.session.delete(record)
    db.session.commit()
    return jsonify({"ok": True, "id": file_id})


@project_bp.route("/<project_id>/overview", methods=["GET"])
def overview(project_id):
    """Project-level artifact counts and uploaded files (newest first)."""
    tc_query = TestCase.query.filter_by(project_id=project_id)
    metrics = {
        "businessProcessCount": BusinessProcess.query.filter_by(project_id=project_id).count(),
        "scenarioCount": Scenario.query.filter_by(project_id=project_id).count(),
        "testCaseCount": tc_query.count(),
        "testCodeCount": tc_query.filter(
            db.or_(TestCase.code_generated.is_(True), TestCase.test_run_success.is_(True))
        ).count(),
    }
    files = (
        ProjectFile.query
        .filter_by(project_id=project_id)
        .order_by(ProjectFile.uploaded_at.desc(), ProjectFile.id.desc())
        .all()
    )
    return jsonify({"ok": True, "metrics": metrics, "files": [f.to_dict() for f in files]})


# ═════════════════════════════════════════════════════════════════════════
# Business processes
# ═════════════════════════════════════════════════════════════════════════

@project_bp.route("/<project_id>/generate-bp", methods=["POST"])
@_generate_limit
def generate_business_processes(project_id):
    data, filename, mimetype = _uploaded_file()
    processes = generation.generate_business_processes(
        project_id, data, mimetype, filename,
        additional_instructions=request.form.get("prompt"),
    )
    return jsonify({"ok": True, "count": len(processes), "items": [bp.to_dict() for bp in processes]})


@project_bp.route("/<project_id>/regenerate", methods=["POST"])
@_generate_limit
def regenerate(project_id):
    """Hybrid re-match of the project's processes against a new document."""
    data, filename, mimetype = _uploaded_file()
    result = generation.regenerate_matches(project_id, data, mimetype, filename)
    if "note" in result:
        return jsonify({"ok": True, "matchedCount": 0, "items": [], "note": result["note"]})
    return jsonify({"ok": True, "branch": result["branch"], "matchedCount": result["matchedCount"]})


@project_bp.route("/<project_id>/business-processes", methods=["GET"])
def list_matched_processes(project_id):
    query = (
        BusinessProcess.query
        .filter_by(project_id=project_id, matched=True)
        .order_by(BusinessProcess.score.desc(), BusinessProcess.id.asc())
    )
    return _listing(query)


@project_bp.route("/<project_id>/business-processes/selected", methods=["GET"])
def list_selected_processes(project_id):
    query = (
        BusinessProcess.query
        .filter_by(project_id=project_id, matched=True, selected=True)
        .order_by(BusinessProcess.id.asc())
    )
    return _listing(query)


@project_bp.route("/<project_id>/business-processes/<int:bp_id>", methods=["PUT"])
def update_business_process(project_id, bp_id):
    data = request.get_json(silent=True) or {}
    bp = hierarchy.update_business_process(project_id, bp_id, data)
    return jsonify({"ok": True, "item": bp.to_dict()})


# ═════════════════════════════════════════════════════════════════════════
# Scenarios
# ═════════════════════════════════════════════════════════════════════════

@project_bp.route("/<project_id>/generate-scenarios", methods=["POST"])
@_generate_limit
def generate_scenarios(project_id):
    """Select processes and generate their scenarios, one call per process.

    Body: {"bpIds": [int, ...], "prompt": str?}
    """
    data = request.get_json(silent=True) or {}
    result = generation.generate_scenarios(project_id, data.get("bpIds"), data.get("prompt"))
    return jsonify({
        "ok": True,
        "count": result["count"],
        "scenarioCount": result["scenarioCount"],
        "businessProcessCount": result["businessProcessCount"],
        "sourceFiles": result["sourceFiles"],
        "scenarios": [sc.to_dict() for sc in result["scenarios"]],
    })


@project_bp.route("/<project_id>/scenarios", methods=["GET"])
def list_scenarios(project_id):
    query = (
        Scenario.query
        .filter_by(project_id=project_id)
        .order_by(Scenario.created_at.desc(), Scenario.id.desc())
    )
    return _listing(query)


@project_bp.route("/<project_id>/scenarios/<int:scenario_id>", methods=["PUT"])
def update_scenario(project_id, scenario_id):
    data = request.get_json(silent=True) or {}
    sc = hierarchy.update_scenario(project_id, scenario_id, data)
    return jsonify({"ok": True, "item": sc.to_dict()})


# ═════════════════════════════════════════════════════════════════════════
# Test cases and test code
# ═════════════════════════════════════════════════════════════════════════

@project_bp.route("/<project_id>/generate-tests", methods=["POST"])
@_generate_limit
def generate_tests(project_id):
    """Generate test code per item; in scenario mode also regenerate test cases.

    Body: {"framework", "language", "scenarios": [...], "mode": "test-cases"?, "prompt"?}
    """
    data = request.get_json(silent=True) or {}
    result = generation.generate_tests(project_id, data)
    return jsonify({"ok": True, **result})


@project_bp.route("/<project_id>/test-cases", methods=["GET"])
def list_test_cases(project_id):
    query = (
        TestCase.query
        .filter_by(project_id=project_id)
        .order_by(TestCase.created_at.desc(), TestCase.id.desc())
    )
    return _listing(query)


@project_bp.route("/<project_id>/test-cases/<int:test_case_id>", methods=["PUT"])
def update_test_case(project_id, test_case_id):
    data = request.get_json(silent=True) or {}
    tc = hierarchy.update_test_case(project_id, test_case_id, data)
    return jsonify({"ok": True, "item": tc.to_dict()})
