"""
Platform-wide exception hierarchy.

Two families live here:

  * Service-layer exceptions (``NotFoundError``, ``ValidationError``) that
    services raise and blueprints translate once into HTTP responses.

  * The workflow error taxonomy (``InvalidTransition``, ``StaleState``,
    ``Unauthorized``).  These are Exception subclasses so they carry a
    message and can be logged with a traceback, but the authorization core
    never raises them: pure operations *return* them as the second element
    of an ``(entity, error)`` tuple so callers can render specific messages.

Usage:
    from tracker.core.exceptions import InvalidTransition, NotFoundError

    entity, err = state_machine.transition(...)
    if err:
        return error_response(err)

    raise NotFoundError(resource="Project", resource_id=42)
"""

from __future__ import annotations

from typing import Union


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used both for genuinely missing rows and for entities that exist under a
    different project, so a 404 never confirms cross-project existence.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        project_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.project_id = project_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if project_id is not None:
            msg += f" (project={project_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Workflow error taxonomy ──────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for caller-visible workflow failures.

    Attributes:
        code:      Machine-readable ``ERR_*`` code (see ``tracker.utils.errors.E``).
        status:    HTTP status the API layer should answer with.
        entity_id: Entity the failure refers to, when known.
        details:   Structured payload for API responses.
    """

    code = "ERR_WORKFLOW"
    status = 409

    def __init__(
        self,
        message: str,
        *,
        entity_id: int | str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message
        self.entity_id = entity_id
        self.details = details or {}
        super().__init__(message)


class InvalidTransition(WorkflowError):
    """Requested status change is not a legal edge from the current status.

    Also covers locked entities and entities that are not in a signable
    state for their type.
    """

    code = "ERR_INVALID_TRANSITION"
    status = 409


class StaleState(InvalidTransition):
    """Persisted state differs from the snapshot the caller evaluated.

    The caller must re-read the entity and retry.
    """

    code = "ERR_STALE_STATE"
    status = 409


class Unauthorized(WorkflowError):
    """The actor's effective role lacks authority for the requested action."""

    code = "ERR_FORBIDDEN"
    status = 403


TransitionError = Union[InvalidTransition, StaleState, Unauthorized]
SignatureError = Union[InvalidTransition, StaleState, Unauthorized]
