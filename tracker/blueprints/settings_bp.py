"""
Project workflow-settings blueprint.

Endpoints:
    POST /api/v1/projects
         Body: { "name": str, "org_id"?: str, "settings"?: {...} }
    GET  /api/v1/projects/<pid>/workflow-settings
    PUT  /api/v1/projects/<pid>/workflow-settings
         Body: partial settings record; unknown keys ignored.

Validation of setting values lives in project_settings_service.
"""

import logging

from flask import Blueprint, jsonify, request

from tracker.models.project import Project
from tracker.services import project_settings_service
from tracker.utils.errors import E, api_error
from tracker.utils.helpers import get_or_404, json_object

logger = logging.getLogger(__name__)

settings_bp = Blueprint("settings", __name__, url_prefix="/api/v1")


def _settings_payload(project: Project) -> dict:
    return {
        "project_id": project.id,
        "settings": project_settings_service.get_settings(project),
        "matrix": project_settings_service.get_matrix(project).to_dict(),
    }


@settings_bp.route("/projects", methods=["POST"])
def create_project():
    data, err = json_object()
    if err:
        return err
    if not isinstance(data.get("name") or "", str):
        return api_error(E.VALIDATION_INVALID, "name must be a string")
    if not isinstance(data.get("settings") or {}, dict):
        return api_error(E.VALIDATION_INVALID, "settings must be an object")
    project = project_settings_service.create_project(data)
    body = project.to_dict()
    body.update(_settings_payload(project))
    return jsonify(body), 201


@settings_bp.route("/projects/<int:project_id>/workflow-settings", methods=["GET"])
def get_workflow_settings(project_id: int):
    project, err = get_or_404(Project, project_id, label="Project")
    if err:
        return err
    return jsonify(_settings_payload(project)), 200


@settings_bp.route("/projects/<int:project_id>/workflow-settings", methods=["PUT"])
def update_workflow_settings(project_id: int):
    project, err = get_or_404(Project, project_id, label="Project")
    if err:
        return err
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "Request body must be a settings object.")
    project_settings_service.update_settings(project, data)
    return jsonify(_settings_payload(project)), 200
