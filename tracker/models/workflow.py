"""
Project Tracker
Workflow entity models: status vocabularies, transition tables, snapshot + ORM row.

Entity types:
    - baseline:     milestone baseline, locks once fully signed
    - variation:    change request against a baseline
    - certificate:  milestone acceptance certificate
    - deliverable:  work product with a review cycle and sign-off
    - timesheet:    hours submitted for validation
    - expense:      cost submitted for validation (chargeable or not)

Lifecycle states:
    Deliverable:  Not Started → In Progress → Submitted for Review
                  → Review Complete | Returned for More Work;
                  Returned → Submitted for Review | In Progress;
                  Review Complete → Delivered (sign-off)
    Baseline:     Unlocked → Locked (sign-off); Locked → Unlocked only via admin reset
    Certificate:  Draft → Pending Supplier/Customer Signature → Signed (ledger view)
    Timesheet:    Draft → Submitted → Validated | Rejected; Rejected → Draft
    Expense:      same as Timesheet
    Variation:    draft → submitted → awaiting_customer | awaiting_supplier → approved
                  → applied; submitted/awaiting_* → rejected → draft

``WorkflowEntity`` is the immutable snapshot every core operation works on;
``WorkflowRecord`` is the persisted row it is read from and written back to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping

from tracker.models import db
from tracker.models.auth import (
    MANAGER_ROLES,
    SUPPLIER_SIDE_ROLES,
    WORKER_ROLES,
    Role,
)
from tracker.utils.helpers import parse_int, parse_timestamp


class EntityType(str, Enum):
    BASELINE = "baseline"
    VARIATION = "variation"
    CERTIFICATE = "certificate"
    DELIVERABLE = "deliverable"
    TIMESHEET = "timesheet"
    EXPENSE = "expense"

    @classmethod
    def parse(cls, value) -> EntityType | None:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


# ── Status vocabularies ──────────────────────────────────────────────────


class DeliverableStatus:
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    SUBMITTED = "Submitted for Review"
    RETURNED = "Returned for More Work"
    REVIEW_COMPLETE = "Review Complete"
    DELIVERED = "Delivered"


class BaselineStatus:
    UNLOCKED = "Unlocked"
    LOCKED = "Locked"


class CertificateStatus:
    DRAFT = "Draft"
    PENDING_SUPPLIER = "Pending Supplier Signature"
    PENDING_CUSTOMER = "Pending Customer Signature"
    SIGNED = "Signed"


class SubmissionStatus:
    """Shared by timesheets and expenses."""

    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    VALIDATED = "Validated"
    REJECTED = "Rejected"


class VariationStatus:
    DRAFT = "draft"
    SUBMITTED = "submitted"
    AWAITING_CUSTOMER = "awaiting_customer"
    AWAITING_SUPPLIER = "awaiting_supplier"
    APPROVED = "approved"
    APPLIED = "applied"
    REJECTED = "rejected"


# ── Transition tables ────────────────────────────────────────────────────


class EdgeKind(str, Enum):
    """What authority a transition edge demands."""

    WORK = "work"            # edit rights; owner-or-elevated on owned types
    REVIEW = "review"        # deliverable review authority
    APPROVAL = "approval"    # approval authority for the entity type
    SUPPLIER = "supplier"    # any supplier-side role
    MANAGER = "manager"      # either party's project manager
    SIGN_OFF = "sign_off"    # target must match what the signature ledger implies


D, B, C, S, V = DeliverableStatus, BaselineStatus, CertificateStatus, SubmissionStatus, VariationStatus

DELIVERABLE_TRANSITIONS = {
    D.NOT_STARTED:     {D.IN_PROGRESS: EdgeKind.WORK},
    D.IN_PROGRESS:     {D.SUBMITTED: EdgeKind.WORK},
    D.SUBMITTED:       {D.REVIEW_COMPLETE: EdgeKind.REVIEW, D.RETURNED: EdgeKind.REVIEW},
    D.RETURNED:        {D.SUBMITTED: EdgeKind.WORK, D.IN_PROGRESS: EdgeKind.WORK},
    D.REVIEW_COMPLETE: {D.DELIVERED: EdgeKind.SIGN_OFF},
    D.DELIVERED:       {},
}

# Locked → Unlocked is the admin reset, deliberately absent here.
BASELINE_TRANSITIONS = {
    B.UNLOCKED: {B.LOCKED: EdgeKind.SIGN_OFF},
    B.LOCKED:   {},
}

CERTIFICATE_TRANSITIONS = {
    C.DRAFT: {
        C.PENDING_SUPPLIER: EdgeKind.SIGN_OFF,
        C.PENDING_CUSTOMER: EdgeKind.SIGN_OFF,
        C.SIGNED: EdgeKind.SIGN_OFF,
    },
    C.PENDING_SUPPLIER: {C.SIGNED: EdgeKind.SIGN_OFF},
    C.PENDING_CUSTOMER: {C.SIGNED: EdgeKind.SIGN_OFF},
    C.SIGNED:           {},
}

SUBMISSION_TRANSITIONS = {
    S.DRAFT:     {S.SUBMITTED: EdgeKind.WORK},
    S.SUBMITTED: {S.VALIDATED: EdgeKind.APPROVAL, S.REJECTED: EdgeKind.APPROVAL},
    S.REJECTED:  {S.DRAFT: EdgeKind.WORK},
    S.VALIDATED: {},
}

VARIATION_TRANSITIONS = {
    V.DRAFT: {V.SUBMITTED: EdgeKind.SUPPLIER},
    V.SUBMITTED: {
        V.AWAITING_CUSTOMER: EdgeKind.SIGN_OFF,
        V.AWAITING_SUPPLIER: EdgeKind.SIGN_OFF,
        V.APPROVED: EdgeKind.SIGN_OFF,
        V.REJECTED: EdgeKind.MANAGER,
    },
    V.AWAITING_CUSTOMER: {V.APPROVED: EdgeKind.SIGN_OFF, V.REJECTED: EdgeKind.MANAGER},
    V.AWAITING_SUPPLIER: {V.APPROVED: EdgeKind.SIGN_OFF, V.REJECTED: EdgeKind.MANAGER},
    V.APPROVED:          {V.APPLIED: EdgeKind.SUPPLIER},
    V.REJECTED:          {V.DRAFT: EdgeKind.SUPPLIER},
    V.APPLIED:           {},
}

TRANSITIONS: dict[EntityType, dict[str, dict[str, EdgeKind]]] = {
    EntityType.DELIVERABLE: DELIVERABLE_TRANSITIONS,
    EntityType.BASELINE: BASELINE_TRANSITIONS,
    EntityType.CERTIFICATE: CERTIFICATE_TRANSITIONS,
    EntityType.TIMESHEET: SUBMISSION_TRANSITIONS,
    EntityType.EXPENSE: SUBMISSION_TRANSITIONS,
    EntityType.VARIATION: VARIATION_TRANSITIONS,
}

INITIAL_STATUS = {
    EntityType.DELIVERABLE: D.NOT_STARTED,
    EntityType.BASELINE: B.UNLOCKED,
    EntityType.CERTIFICATE: C.DRAFT,
    EntityType.TIMESHEET: S.DRAFT,
    EntityType.EXPENSE: S.DRAFT,
    EntityType.VARIATION: V.DRAFT,
}

TERMINAL_STATUSES = {
    entity_type: frozenset(status for status, edges in table.items() if not edges)
    for entity_type, table in TRANSITIONS.items()
}

# Statuses in which a party may add its signature.
SIGNABLE_STATUSES = {
    EntityType.DELIVERABLE: frozenset({D.REVIEW_COMPLETE}),
    EntityType.BASELINE: frozenset({B.UNLOCKED}),
    EntityType.CERTIFICATE: frozenset({C.DRAFT, C.PENDING_SUPPLIER, C.PENDING_CUSTOMER}),
    EntityType.VARIATION: frozenset({V.SUBMITTED, V.AWAITING_CUSTOMER, V.AWAITING_SUPPLIER}),
    EntityType.TIMESHEET: frozenset(),
    EntityType.EXPENSE: frozenset(),
}

EDITABLE_STATUSES = {
    EntityType.DELIVERABLE: frozenset({D.NOT_STARTED, D.IN_PROGRESS, D.RETURNED}),
    EntityType.BASELINE: frozenset({B.UNLOCKED}),
    EntityType.CERTIFICATE: frozenset({C.DRAFT}),
    EntityType.VARIATION: frozenset({V.DRAFT}),
    EntityType.TIMESHEET: frozenset({S.DRAFT, S.REJECTED}),
    EntityType.EXPENSE: frozenset({S.DRAFT, S.REJECTED}),
}

DELETABLE_STATUSES = {
    EntityType.DELIVERABLE: frozenset({D.NOT_STARTED}),
    EntityType.BASELINE: frozenset(),
    EntityType.CERTIFICATE: frozenset({C.DRAFT}),
    EntityType.VARIATION: frozenset({V.DRAFT}),
    EntityType.TIMESHEET: frozenset({S.DRAFT, S.REJECTED}),
    EntityType.EXPENSE: frozenset({S.DRAFT, S.REJECTED}),
}

# ── Role tables ──────────────────────────────────────────────────────────

# Types whose work edges belong to the entity's owner.
OWNER_SCOPED_TYPES = frozenset({EntityType.DELIVERABLE, EntityType.TIMESHEET, EntityType.EXPENSE})

EDIT_ROLES = {
    EntityType.DELIVERABLE: frozenset({Role.SUPPLIER_PM, Role.CONTRIBUTOR}),
    EntityType.BASELINE: SUPPLIER_SIDE_ROLES,
    EntityType.VARIATION: SUPPLIER_SIDE_ROLES,
    EntityType.CERTIFICATE: MANAGER_ROLES,
    EntityType.TIMESHEET: WORKER_ROLES,
    EntityType.EXPENSE: WORKER_ROLES,
}

# Roles that may act on owned entities they do not own.
ELEVATED_ROLES = {
    EntityType.DELIVERABLE: frozenset({Role.SUPPLIER_PM}),
    EntityType.BASELINE: SUPPLIER_SIDE_ROLES,
    EntityType.VARIATION: SUPPLIER_SIDE_ROLES,
    EntityType.CERTIFICATE: MANAGER_ROLES,
    EntityType.TIMESHEET: SUPPLIER_SIDE_ROLES,
    EntityType.EXPENSE: SUPPLIER_SIDE_ROLES,
}

DELETE_ROLES = {
    EntityType.DELIVERABLE: frozenset({Role.SUPPLIER_PM}),
    EntityType.BASELINE: frozenset(),
    EntityType.VARIATION: SUPPLIER_SIDE_ROLES,
    EntityType.CERTIFICATE: MANAGER_ROLES,
    EntityType.TIMESHEET: SUPPLIER_SIDE_ROLES,
    EntityType.EXPENSE: SUPPLIER_SIDE_ROLES,
}


def allowed_targets(entity_type, status) -> list[str]:
    """Statuses reachable in one step from ``status``."""
    table = TRANSITIONS.get(EntityType.parse(entity_type), {})
    return list(table.get(status, {}))


def edge_kind(entity_type, from_status, to_status) -> EdgeKind | None:
    table = TRANSITIONS.get(EntityType.parse(entity_type), {})
    return table.get(from_status, {}).get(to_status)


# ── Snapshot ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WorkflowEntity:
    """Immutable view of one workflow entity, as read at the start of a check."""

    id: int | str | None
    entity_type: EntityType
    status: str
    supplier_signed_at: datetime | None = None
    supplier_signed_by: str | None = None
    customer_signed_at: datetime | None = None
    customer_signed_by: str | None = None
    locked: bool = False
    owner_id: str | None = None
    context_flags: Mapping = field(default_factory=dict)
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES.get(self.entity_type, ())

    def is_owned_by(self, user_id) -> bool:
        return user_id is not None and self.owner_id is not None and str(self.owner_id) == str(user_id)

    @classmethod
    def from_dict(cls, data: dict) -> WorkflowEntity:
        """Build a snapshot from a JSON body (inline evaluation endpoints).

        Raises TypeError or ValueError for a malformed ``status``,
        ``context_flags`` or ``version``.
        """
        entity_type = EntityType.parse(data.get("entity_type"))
        owner_id = data.get("owner_id")
        status = data.get("status") or INITIAL_STATUS.get(entity_type)
        if status is not None and not isinstance(status, str):
            raise TypeError("status must be a string")
        flags = data.get("context_flags") or {}
        if not isinstance(flags, dict):
            raise TypeError("context_flags must be an object")
        version = parse_int(data.get("version"))
        return cls(
            id=data.get("id"),
            entity_type=entity_type,
            status=status,
            supplier_signed_at=parse_timestamp(data.get("supplier_signed_at")),
            supplier_signed_by=data.get("supplier_signed_by"),
            customer_signed_at=parse_timestamp(data.get("customer_signed_at")),
            customer_signed_by=data.get("customer_signed_by"),
            locked=data.get("locked") is True,
            owner_id=str(owner_id) if owner_id is not None else None,
            context_flags=dict(flags),
            version=version or 1,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "status": self.status,
            "supplier_signed_at": _iso(self.supplier_signed_at),
            "supplier_signed_by": self.supplier_signed_by,
            "customer_signed_at": _iso(self.customer_signed_at),
            "customer_signed_by": self.customer_signed_by,
            "locked": self.locked,
            "owner_id": self.owner_id,
            "context_flags": dict(self.context_flags),
            "version": self.version,
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ── Persisted row ────────────────────────────────────────────────────────


class WorkflowRecord(db.Model):
    """One workflow entity of any type; ``version`` is the compare-and-set token."""

    __tablename__ = "workflow_entities"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    entity_type = db.Column(
        db.String(20),
        nullable=False,
        comment="baseline | variation | certificate | deliverable | timesheet | expense",
    )
    title = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(40), nullable=False)

    supplier_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    supplier_signed_by = db.Column(db.String(64), nullable=True)
    customer_signed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    customer_signed_by = db.Column(db.String(64), nullable=True)
    locked = db.Column(db.Boolean, nullable=False, default=False)

    owner_id = db.Column(db.String(64), nullable=True)
    context_flags = db.Column(db.JSON, nullable=False, default=dict)

    version = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        db.Index("ix_workflow_entity_project_type", "project_id", "entity_type"),
    )

    def to_entity(self) -> WorkflowEntity:
        return WorkflowEntity(
            id=self.id,
            entity_type=EntityType(self.entity_type),
            status=self.status,
            supplier_signed_at=self.supplier_signed_at,
            supplier_signed_by=self.supplier_signed_by,
            customer_signed_at=self.customer_signed_at,
            customer_signed_by=self.customer_signed_by,
            locked=bool(self.locked),
            owner_id=self.owner_id,
            context_flags=dict(self.context_flags or {}),
            version=self.version,
        )

    def to_dict(self) -> dict:
        data = self.to_entity().to_dict()
        data.update({
            "project_id": self.project_id,
            "title": self.title,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        })
        return data

    def __repr__(self) -> str:
        return f"<WorkflowRecord #{self.id} {self.entity_type} {self.status!r} v{self.version}>"
