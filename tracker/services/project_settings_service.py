"""
Project settings store: persisted form of the authority matrix.

Settings are a flat record of nullable columns on ``projects``.  NULL
means "use the default" (``DEFAULT_WORKFLOW_SETTINGS``), so a project that
predates a setting behaves as if it had always been at its default.

Business rules enforced here (not in blueprint):
    - unknown keys in an update are ignored
    - boolean columns accept true / false / null only
    - authority columns accept a known mode (legacy customer_pm /
      supplier_pm included) or null; anything else is a ValidationError
    - a new matrix is only visible to evaluations that read it after commit
"""

from __future__ import annotations

import logging

from tracker.core.exceptions import NotFoundError, ValidationError
from tracker.models import db
from tracker.models.project import (
    SETTINGS_AUTHORITY_COLUMNS,
    SETTINGS_BOOLEAN_COLUMNS,
    SETTINGS_COLUMNS,
    Project,
)
from tracker.services.authority_matrix import (
    DEFAULT_WORKFLOW_SETTINGS,
    AuthorityMatrix,
    AuthorityMode,
)

logger = logging.getLogger(__name__)


def get_project(project_id: int) -> Project:
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def create_project(data: dict) -> Project:
    """Create a project; ``data`` may carry initial settings."""
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})

    org_id = data.get("org_id")
    project = Project(name=name, org_id=str(org_id) if org_id is not None else None)
    _apply_settings(project, data.get("settings") or {})
    db.session.add(project)
    db.session.commit()
    logger.info("Project created id=%s org_id=%s", project.id, project.org_id)
    return project


def get_settings(project: Project) -> dict:
    """Settings with defaults applied and legacy authority values normalised."""
    settings = {}
    for column in SETTINGS_COLUMNS:
        value = getattr(project, column)
        if value is None:
            value = DEFAULT_WORKFLOW_SETTINGS[column]
        if column in SETTINGS_AUTHORITY_COLUMNS:
            mode = AuthorityMode.parse(value)
            value = mode.value if mode else DEFAULT_WORKFLOW_SETTINGS[column]
        settings[column] = value
    return settings


def get_matrix(project: Project) -> AuthorityMatrix:
    return AuthorityMatrix.from_settings(get_settings(project))


def _validate(updates: dict) -> dict:
    clean, errors = {}, {}
    for key, value in updates.items():
        if key not in SETTINGS_COLUMNS:
            continue
        if value is None:
            clean[key] = None
        elif key in SETTINGS_BOOLEAN_COLUMNS:
            if isinstance(value, bool):
                clean[key] = value
            else:
                errors[key] = "must be true, false or null"
        else:
            mode = AuthorityMode.parse(value)
            if mode is None:
                errors[key] = f"must be one of: {', '.join(m.value for m in AuthorityMode)}"
            else:
                clean[key] = mode.value
    if errors:
        raise ValidationError("Invalid workflow settings", details=errors)
    return clean


def _apply_settings(project: Project, updates: dict) -> dict:
    clean = _validate(updates)
    for key, value in clean.items():
        setattr(project, key, value)
    return clean


def update_settings(project: Project, updates: dict) -> dict:
    """Validate and persist a partial settings update; returns the new settings."""
    clean = _apply_settings(project, updates or {})
    db.session.commit()
    logger.info(
        "Workflow settings updated: %s", ", ".join(sorted(clean)) or "no changes",
        extra={"project_id": project.id},
    )
    return get_settings(project)
