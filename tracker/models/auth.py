"""
Project Tracker: role vocabulary and actor value types.

Role hierarchy:
    System level:        system admin (profile flag)
    Organisation level:  org admin of the project's organisation
    Project level:       supplier_pm > supplier_finance > customer_pm
                         > customer_finance > contributor > viewer

Nothing in this module touches the database: ``Actor`` is built per
request from the upstream identity store and threaded through every call,
``EffectiveRole`` is the output of the role resolver.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Project-scoped authorization roles."""

    SUPPLIER_PM = "supplier_pm"
    SUPPLIER_FINANCE = "supplier_finance"
    CUSTOMER_PM = "customer_pm"
    CUSTOMER_FINANCE = "customer_finance"
    CONTRIBUTOR = "contributor"
    VIEWER = "viewer"

    @classmethod
    def parse(cls, value) -> Role | None:
        """Return the matching Role, or None for empty/unknown input."""
        if isinstance(value, cls):
            return value
        if not value:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Identity(str, Enum):
    """Where an actor's authority comes from (display + audit only)."""

    SYSTEM_ADMIN = "system_admin"
    ORG_ADMIN = "org_admin"
    PROJECT_MEMBER = "project_member"
    NO_MEMBERSHIP = "no_membership"


# ── Role groupings (configuration data) ──────────────────────────────────

FULL_AUTHORITY_ROLE = Role.SUPPLIER_PM

SUPPLIER_SIDE_ROLES = frozenset({Role.SUPPLIER_PM, Role.SUPPLIER_FINANCE})
CUSTOMER_SIDE_ROLES = frozenset({Role.CUSTOMER_PM, Role.CUSTOMER_FINANCE})
MANAGER_ROLES = frozenset({Role.SUPPLIER_PM, Role.CUSTOMER_PM})
WORKER_ROLES = frozenset({
    Role.SUPPLIER_PM,
    Role.SUPPLIER_FINANCE,
    Role.CUSTOMER_FINANCE,
    Role.CONTRIBUTOR,
})

# Roles a full admin may preview through "view as".  Admin identities are
# not roles and can never be previewed.
IMPERSONABLE_ROLES = frozenset({
    Role.SUPPLIER_PM,
    Role.SUPPLIER_FINANCE,
    Role.CUSTOMER_PM,
    Role.CUSTOMER_FINANCE,
    Role.CONTRIBUTOR,
    Role.VIEWER,
})

ROLE_LABELS = {
    Role.SUPPLIER_PM: "Supplier PM",
    Role.SUPPLIER_FINANCE: "Supplier Finance",
    Role.CUSTOMER_PM: "Customer PM",
    Role.CUSTOMER_FINANCE: "Customer Finance",
    Role.CONTRIBUTOR: "Contributor",
    Role.VIEWER: "Viewer",
}

_IDENTITY_LABELS = {
    Identity.SYSTEM_ADMIN: "System Admin",
    Identity.ORG_ADMIN: "Org Admin",
}


# ── Value types ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Actor:
    """The caller of an authorization check, as known for this request.

    ``impersonated_role`` is the session's "view as" choice; it only takes
    effect for actors with full admin capability (see role_resolver).
    """

    user_id: str | None
    is_system_admin: bool = False
    org_admin_of: frozenset[str] = field(default_factory=frozenset)
    project_role: Role | None = None
    impersonated_role: Role | None = None

    def is_org_admin(self, org_id) -> bool:
        return org_id is not None and str(org_id) in self.org_admin_of

    @classmethod
    def from_dict(cls, data: dict | None) -> Actor:
        """Build an Actor from a JSON body; unknown roles are dropped.

        Raises TypeError when the body or ``org_admin_of`` has the wrong shape.
        """
        data = data or {}
        if not isinstance(data, dict):
            raise TypeError("actor must be an object")
        orgs = data.get("org_admin_of") or []
        if not isinstance(orgs, (list, tuple)):
            raise TypeError("org_admin_of must be a list")
        user_id = data.get("user_id")
        return cls(
            user_id=str(user_id) if user_id not in (None, "") else None,
            is_system_admin=data.get("is_system_admin") is True,
            org_admin_of=frozenset(str(o) for o in orgs),
            project_role=Role.parse(data.get("project_role")),
            impersonated_role=Role.parse(data.get("impersonated_role")),
        )


@dataclass(frozen=True)
class ActualRole:
    """True identity of the actor; never rewritten by impersonation."""

    identity: Identity
    role: Role

    @property
    def label(self) -> str:
        return _IDENTITY_LABELS.get(self.identity, ROLE_LABELS[self.role])

    def to_dict(self) -> dict:
        return {"identity": self.identity.value, "role": self.role.value, "label": self.label}


@dataclass(frozen=True)
class EffectiveRole:
    """Result of role resolution for one actor on one project."""

    user_id: str | None
    actual_role: ActualRole
    effective_role: Role
    has_full_admin_capabilities: bool
    is_impersonating: bool

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "actual_role": self.actual_role.to_dict(),
            "effective_role": self.effective_role.value,
            "has_full_admin_capabilities": self.has_full_admin_capabilities,
            "is_impersonating": self.is_impersonating,
        }
