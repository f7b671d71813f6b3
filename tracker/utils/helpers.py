"""Shared utility functions for blueprints and services.

get_or_404:          tuple-return lookup (NOT abort), optionally project-scoped
parse_timestamp:     ISO-8601 → aware datetime, None on bad input
parse_int:           optional integer body fields (ValueError on bad input)
json_object:         request body as a dict, 400 for any other JSON value
"""
import logging
from datetime import datetime, timezone

from flask import request

from tracker.models import db
from tracker.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None, project_id=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

    When ``project_id`` is given, a row that belongs to another project is
    reported as missing so a 404 never confirms cross-project existence.

        obj, err = get_or_404(WorkflowRecord, eid, project_id=pid)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj or (project_id is not None and getattr(obj, "project_id", None) != project_id):
        return None, api_error(E.NOT_FOUND, f"{label} not found")
    return obj, None


def parse_timestamp(value):
    """Parse an ISO-8601 timestamp to a timezone-aware datetime.

    Returns None for empty/invalid input.  Naive values are taken as UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_int(value):
    """Coerce an optional integer field; raises ValueError on bad input."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    return int(value)


def utcnow():
    return datetime.now(timezone.utc)



def json_object():
    """Read the request body as a JSON object.

    - Success: (data, None); a missing or unparsable body is ``{}``
    - Failure: (None, (jsonify_response, 400)) for arrays, strings, numbers
    """
    data = request.get_json(silent=True)
    if data is None:
        return {}, None
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object.")
    return data, None
