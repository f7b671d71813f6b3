"""
Workflow entity blueprint.

All routes are scoped under /api/v1/projects/<project_id>/entities/...
and every mutating body carries the acting user as ``actor``
(authentication happens upstream).

Endpoints:
    POST /projects/<pid>/entities
         Body: { "actor", "entity_type", "title"?, "owner_id"?, "context_flags"? }
    GET  /projects/<pid>/entities/<eid>
    POST /projects/<pid>/entities/<eid>/capabilities
         Body: { "actor", "impersonation"? }
    POST /projects/<pid>/entities/<eid>/transition
         Body: { "actor", "from_status", "to_status", "expected_version"? }
    POST /projects/<pid>/entities/<eid>/sign
         Body: { "actor", "side"?, "expected_version"? }
    POST /projects/<pid>/entities/<eid>/reset-baseline
         Body: { "actor", "expected_version"?, "clear_signatures"? }
    GET  /projects/<pid>/entities/<eid>/history
    POST /projects/<pid>/entities/<eid>/approval-status
         Body: { "actor"? }

Layer contract:
    - Blueprint: parse + validate input, call service, render result.
    - NO db.session calls here: all writes owned by workflow_service.
    - NO inline role/permission checks: the core decides.
"""

import logging

from flask import Blueprint, jsonify

from tracker.models.auth import Actor
from tracker.models.project import Project
from tracker.services import workflow_service
from tracker.utils.errors import E, api_error, error_response
from tracker.utils.helpers import get_or_404, json_object, parse_int

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1")


# ── Helpers ────────────────────────────────────────────────────────────────────


def _load_project(project_id: int):
    return get_or_404(Project, project_id, label="Project")


def _body():
    """Returns (data, actor, expected_version, err_response)."""
    data, err = json_object()
    if err:
        return {}, None, None, err
    raw_actor = data.get("actor")
    if raw_actor is not None and not isinstance(raw_actor, dict):
        return data, None, None, api_error(E.VALIDATION_INVALID, "Field 'actor' must be an object.")
    try:
        actor = Actor.from_dict(raw_actor)
    except (TypeError, ValueError) as exc:
        return data, None, None, api_error(E.VALIDATION_INVALID, f"Invalid actor: {exc}")
    try:
        expected_version = parse_int(data.get("expected_version"))
    except (TypeError, ValueError):
        return data, None, None, api_error(E.VALIDATION_INVALID, "expected_version must be an integer")
    return data, actor, expected_version, None


def _render(result, err, status=200):
    if err:
        return error_response(err)
    return jsonify(result), status


# ── Routes ─────────────────────────────────────────────────────────────────────


@workflow_bp.route("/projects/<int:project_id>/entities", methods=["POST"])
def create_entity(project_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    data, actor, _, err = _body()
    if err:
        return err
    if not data.get("entity_type"):
        return api_error(E.VALIDATION_REQUIRED, "Field 'entity_type' is required.")

    result, err = workflow_service.create_entity(
        project,
        data["entity_type"],
        actor,
        owner_id=data.get("owner_id"),
        title=data.get("title"),
        context_flags=data.get("context_flags"),
    )
    return _render(result, err, 201)


@workflow_bp.route("/projects/<int:project_id>/entities/<int:entity_id>", methods=["GET"])
def get_entity(project_id: int, entity_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    return jsonify(workflow_service.get_record(project.id, entity_id).to_dict()), 200


@workflow_bp.route("/projects/<int:project_id>/entities/<int:entity_id>/capabilities", methods=["POST"])
def get_capabilities(project_id: int, entity_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    data, actor, _, err = _body()
    if err:
        return err
    result = workflow_service.get_capabilities(project, entity_id, actor, data.get("impersonation"))
    return jsonify(result), 200


@workflow_bp.route("/projects/<int:project_id>/entities/<int:entity_id>/transition", methods=["POST"])
def transition_entity(project_id: int, entity_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    data, actor, expected_version, err = _body()
    if err:
        return err
    for field in ("from_status", "to_status"):
        if not data.get(field):
            return api_error(E.VALIDATION_REQUIRED, f"Field '{field}' is required.")

    result, err = workflow_service.transition_entity(
        project, entity_id, data["from_status"], data["to_status"], actor,
        expected_version=expected_version,
    )
    return _render(result, err)


@workflow_bp.route("/projects/<int:project_id>/entities/<int:entity_id>/sign", methods=["POST"])
def sign_entity(project_id: int, entity_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    data, actor, expected_version, err = _body()
    if err:
        return err

    result, err = workflow_service.sign_entity(
        project, entity_id, data.get("side"), actor,
        expected_version=expected_version,
    )
    return _render(result, err)


@workflow_bp.route("/projects/<int:project_id>/entities/<int:entity_id>/reset-baseline", methods=["POST"])
def reset_baseline(project_id: int, entity_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    data, actor, expected_version, err = _body()
    if err:
        return err
    clear_signatures = data.get("clear_signatures", True)
    if not isinstance(clear_signatures, bool):
        return api_error(E.VALIDATION_INVALID, "clear_signatures must be true or false")

    result, err = workflow_service.reset_baseline(
        project, entity_id, actor,
        expected_version=expected_version,
        clear_signatures=clear_signatures,
    )
    return _render(result, err)


@workflow_bp.route("/projects/<int:project_id>/entities/<int:entity_id>/history", methods=["GET"])
def get_history(project_id: int, entity_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    events = workflow_service.get_history(project.id, entity_id)
    return jsonify({"items": events, "total": len(events)}), 200


@workflow_bp.route("/projects/<int:project_id>/entities/<int:entity_id>/approval-status", methods=["POST"])
def approval_status(project_id: int, entity_id: int):
    project, err = _load_project(project_id)
    if err:
        return err
    data, actor, _, err = _body()
    if err:
        return err
    if data.get("actor") is None:
        actor = None
    return jsonify(workflow_service.get_entity_approval_status(project, entity_id, actor)), 200
