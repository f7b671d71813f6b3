"""Standardised API error responses.

Usage
-----
    from tracker.utils.errors import api_error, error_response, E

    return api_error(E.NOT_FOUND, "Entity not found")
    return api_error(E.VALIDATION_REQUIRED, "side is required")
    return error_response(err)      # err: WorkflowError returned by the core
"""

from __future__ import annotations

from flask import jsonify

from tracker.core.exceptions import WorkflowError


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Validation – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business rule – HTTP 422
    VALIDATION_RULE = "ERR_VALIDATION_RULE"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Workflow conflicts – HTTP 409
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    STALE_STATE = "ERR_STALE_STATE"

    # Permissions – HTTP 403
    FORBIDDEN = "ERR_FORBIDDEN"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.NOT_FOUND: 404,
    E.INVALID_TRANSITION: 409,
    E.STALE_STATE: 409,
    E.FORBIDDEN: 403,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Build the ``(jsonify(body), status)`` pair every error path returns.

    The body is ``{"error": message, "code": code}`` plus ``details`` when
    given.  ``status`` defaults to the code's entry in ``_DEFAULT_STATUS``,
    then 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _DEFAULT_STATUS.get(code, 400)


def error_response(err: WorkflowError):
    """Render a workflow error returned by the core.

    The entity id, when known, is echoed in ``details`` so a client holding
    several snapshots can tell which one to re-read.
    """
    details = dict(err.details)
    if err.entity_id is not None:
        details.setdefault("entity_id", err.entity_id)
    return api_error(err.code, err.message, status=err.status, details=details or None)
