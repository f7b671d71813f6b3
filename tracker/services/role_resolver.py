"""
Role Resolver: one ordered priority function for an actor's roles.

Priority (highest wins):
    1. system admin                 → full-authority project role
    2. org admin of project's org   → full-authority project role
    3. recorded project role
    4. viewer

``actual_role`` records which rule matched (identity) and the role it
resolves to; ``effective_role`` is what authorization uses and may differ
only through "view as" impersonation, which is honoured for full admins
and only for roles on the impersonable allow-list.

Resolution never raises: an actor with no membership at all resolves to
viewer, so authorization defaults closed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from tracker.models.auth import (
    FULL_AUTHORITY_ROLE,
    IMPERSONABLE_ROLES,
    Actor,
    ActualRole,
    EffectiveRole,
    Identity,
    Role,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectRef:
    """Minimal project context when no persisted row is at hand."""

    org_id: str | None = None


def _actual_role(actor: Actor, org_id) -> ActualRole:
    if actor.is_system_admin:
        return ActualRole(Identity.SYSTEM_ADMIN, FULL_AUTHORITY_ROLE)
    if actor.is_org_admin(org_id):
        return ActualRole(Identity.ORG_ADMIN, FULL_AUTHORITY_ROLE)
    if actor.project_role is not None:
        return ActualRole(Identity.PROJECT_MEMBER, actor.project_role)
    return ActualRole(Identity.NO_MEMBERSHIP, Role.VIEWER)


def has_full_admin_capabilities(actor: Actor, project=None) -> bool:
    """True for system admins, org admins of the project's org, and the
    full-authority project role."""
    org_id = getattr(project, "org_id", None)
    return (
        actor.is_system_admin
        or actor.is_org_admin(org_id)
        or actor.project_role == FULL_AUTHORITY_ROLE
    )


def resolve_effective_role(
    actor: Actor,
    project=None,
    impersonation: Role | str | None = None,
) -> EffectiveRole:
    """Compute the actual and effective role of ``actor`` on ``project``.

    Args:
        actor:         Per-request actor value.
        project:       Anything with an ``org_id`` attribute (ORM row or
                       snapshot); None when there is no project context.
        impersonation: Explicit "view as" role; falls back to
                       ``actor.impersonated_role`` when omitted.
    """
    org_id = getattr(project, "org_id", None)
    actual = _actual_role(actor, org_id)
    full_admin = has_full_admin_capabilities(actor, project)

    requested = Role.parse(impersonation) if impersonation is not None else actor.impersonated_role
    if requested is not None and requested not in IMPERSONABLE_ROLES:
        requested = None

    if requested is not None and full_admin:
        effective = requested
    else:
        if requested is not None:
            logger.debug(
                "View-as ignored for actor without full admin capability",
                extra={"actor_id": actor.user_id, "decision": "ignore_impersonation"},
            )
        effective = actual.role

    return EffectiveRole(
        user_id=actor.user_id,
        actual_role=actual,
        effective_role=effective,
        has_full_admin_capabilities=full_admin,
        is_impersonating=requested is not None and requested != actual.role and full_admin,
    )
