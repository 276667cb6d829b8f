"""Standardised API error responses.

Every failure leaves the service as ``{"ok": false, "message", "code"}``,
plus ``error`` carrying the underlying message when one is available.
Stack traces never reach the client.

Usage
-----
    from qaforge.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Scenario not found")
    return api_error(E.VALIDATION_REQUIRED, "bpIds is required")
    return api_error(E.GENERATION_FAILED, "OpenAI call failed", error=str(exc))
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Request shape – HTTP 405 / 413 / 415 / 429
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    PAYLOAD_TOO_LARGE = "ERR_PAYLOAD_TOO_LARGE"
    UNSUPPORTED_MEDIA = "ERR_UNSUPPORTED_MEDIA"
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Server – HTTP 500
    PARSE_FAILED = "ERR_PARSE_FAILED"
    DATABASE = "ERR_DATABASE"
    INTERNAL = "ERR_INTERNAL"

    # Upstream generation service – HTTP 502
    GENERATION_FAILED = "ERR_GENERATION_FAILED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.NOT_FOUND: 404,
    E.METHOD_NOT_ALLOWED: 405,
    E.PAYLOAD_TOO_LARGE: 413,
    E.UNSUPPORTED_MEDIA: 415,
    E.RATE_LIMITED: 429,
    E.PARSE_FAILED: 500,
    E.DATABASE: 500,
    E.INTERNAL: 500,
    E.GENERATION_FAILED: 502,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    error: str | None = None,
    details: dict | None = None,
    **extra,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for the UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    error : str, optional
        Underlying error string (e.g. the provider's message).
    details : dict, optional
        Field-level validation breakdown.
    **extra
        Additional top-level keys, e.g. ``raw`` model output.

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "ok": False,
        "message": message,
        "code": code,
    }
    if error:
        body["error"] = error
    if details:
        body["details"] = details
    body.update(extra)

    return jsonify(body), http_status
