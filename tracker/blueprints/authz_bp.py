"""
Authorization decision blueprint: the pure core over HTTP.

No state is read or written unless ``project_id`` is supplied, in which
case the project's stored matrix is used instead of inline ``settings``.

Endpoints:
    POST /api/v1/authz/effective-role
         Body: { "actor": {...}, "project_id"?: int, "org_id"?: str,
                 "impersonation"?: role }
    POST /api/v1/authz/can-approve
         Body: { "entity_type": str, "role": str, "context"?: {...},
                 "project_id"?: int, "settings"?: {...} }
    POST /api/v1/authz/sign-off-status
         Body: { "entity": {...}, "project_id"?: int, "settings"?: {...},
                 "role"?: str }
"""

import logging

from flask import Blueprint, jsonify

from tracker.models.auth import Actor
from tracker.models.project import Project
from tracker.models.workflow import EntityType, WorkflowEntity
from tracker.services.approval import can_approve, effective_mode
from tracker.services.authority_matrix import AuthorityMatrix, get_authority
from tracker.services.project_settings_service import get_matrix
from tracker.services.role_resolver import ProjectRef, resolve_effective_role
from tracker.services.signature_ledger import derive_status, get_approval_status, is_complete
from tracker.utils.errors import E, api_error
from tracker.utils.helpers import get_or_404, json_object, parse_int

logger = logging.getLogger(__name__)

authz_bp = Blueprint("authz", __name__, url_prefix="/api/v1/authz")


def _matrix_from(data: dict):
    """Returns (matrix, err_response)."""
    try:
        project_id = parse_int(data.get("project_id"))
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, "project_id must be an integer")
    if project_id is not None:
        project, err = get_or_404(Project, project_id, label="Project")
        if err:
            return None, err
        return get_matrix(project), None
    settings = data.get("settings") or {}
    if not isinstance(settings, dict):
        return None, api_error(E.VALIDATION_INVALID, "settings must be an object")
    return AuthorityMatrix.from_settings(settings), None


def _entity_type_or_error(value):
    entity_type = EntityType.parse(value)
    if entity_type is None:
        return None, api_error(
            E.VALIDATION_INVALID,
            f"Invalid entity_type '{value}'",
            details={"valid_types": [t.value for t in EntityType]},
        )
    return entity_type, None


@authz_bp.route("/effective-role", methods=["POST"])
def effective_role():
    data, err = json_object()
    if err:
        return err
    try:
        actor = Actor.from_dict(data.get("actor"))
    except (TypeError, ValueError) as exc:
        return api_error(E.VALIDATION_INVALID, f"Invalid actor: {exc}")

    try:
        project_id = parse_int(data.get("project_id"))
    except (TypeError, ValueError):
        return api_error(E.VALIDATION_INVALID, "project_id must be an integer")
    if project_id is not None:
        project, err = get_or_404(Project, project_id, label="Project")
        if err:
            return err
    else:
        project = ProjectRef(org_id=data.get("org_id"))

    result = resolve_effective_role(actor, project, data.get("impersonation"))
    return jsonify(result.to_dict()), 200


@authz_bp.route("/can-approve", methods=["POST"])
def check_can_approve():
    data, err = json_object()
    if err:
        return err
    entity_type, err = _entity_type_or_error(data.get("entity_type"))
    if err:
        return err
    matrix, err = _matrix_from(data)
    if err:
        return err

    context = data.get("context") or {}
    if not isinstance(context, dict):
        return api_error(E.VALIDATION_INVALID, "context must be an object")
    allowed = can_approve(matrix, entity_type, data.get("role"), context)
    return jsonify({
        "allowed": allowed,
        "authority": get_authority(matrix, entity_type).value,
        "resolved_authority": effective_mode(matrix, entity_type, context).value,
    }), 200


@authz_bp.route("/sign-off-status", methods=["POST"])
def sign_off_status():
    data, err = json_object()
    if err:
        return err
    raw = data.get("entity")
    if not isinstance(raw, dict):
        return api_error(E.VALIDATION_REQUIRED, "Field 'entity' is required.")
    _, err = _entity_type_or_error(raw.get("entity_type"))
    if err:
        return err
    matrix, err = _matrix_from(data)
    if err:
        return err

    try:
        entity = WorkflowEntity.from_dict(raw)
    except (TypeError, ValueError) as exc:
        return api_error(E.VALIDATION_INVALID, f"Invalid entity: {exc}")
    status = get_approval_status(entity, matrix, role=data.get("role"))
    return jsonify({
        "sign_off_status": derive_status(entity).value,
        "is_complete": is_complete(entity, matrix),
        "approval": status.to_dict(),
    }), 200
