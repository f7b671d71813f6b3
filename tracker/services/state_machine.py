"""
Entity State Machine: legal status transitions per entity type.

Every request names the status the caller believes the entity is in.
Checks run in this order and the first failure is returned:

    1. entity locked                         → InvalidTransition
    2. assumed status ≠ current status       → StaleState
    3. edge absent from the type's table     → InvalidTransition
    4. role lacks the edge's authority       → Unauthorized

Edge authority comes from ``EdgeKind`` in the transition tables:
    WORK      edit rights; on owned types the owner or an elevated role
    REVIEW    deliverable review authority from the matrix
    APPROVAL  approval authority for the entity type
    SUPPLIER  any supplier-side role
    MANAGER   either party's project manager
    SIGN_OFF  target must equal the status the signature ledger implies

Under authority NONE an approval-style edge is open to anyone with edit
rights on the entity type.

Nothing here raises or mutates: results are ``(entity', None)`` or
``(None, error)``.  Persisting the new snapshot is the caller's job
(see workflow_service, which writes it with a version compare-and-set).

The admin baseline reset (Locked → Unlocked) is a separate operation,
``unlock_baseline``, and is not reachable through ``transition``.
"""

from __future__ import annotations

import dataclasses
import logging

from tracker.core.exceptions import (
    InvalidTransition,
    StaleState,
    TransitionError,
    Unauthorized,
)
from tracker.models.auth import MANAGER_ROLES, EffectiveRole, Role
from tracker.models.workflow import (
    EDIT_ROLES,
    ELEVATED_ROLES,
    OWNER_SCOPED_TYPES,
    BaselineStatus,
    CertificateStatus,
    DeliverableStatus,
    EdgeKind,
    EntityType,
    VariationStatus,
    WorkflowEntity,
    allowed_targets,
    edge_kind,
)
from tracker.services.approval import effective_mode, is_supplier_side, resolve_mode, satisfies
from tracker.services.authority_matrix import AuthorityMatrix, AuthorityMode, get_review_authority
from tracker.services.signature_ledger import (
    SignOffStatus,
    derive_status,
    is_complete,
    reset_signatures,
)

logger = logging.getLogger(__name__)


_CERTIFICATE_VIEW = {
    SignOffStatus.NOT_SIGNED: CertificateStatus.DRAFT,
    SignOffStatus.AWAITING_SUPPLIER: CertificateStatus.PENDING_SUPPLIER,
    SignOffStatus.AWAITING_CUSTOMER: CertificateStatus.PENDING_CUSTOMER,
    SignOffStatus.SIGNED: CertificateStatus.SIGNED,
}

_VARIATION_VIEW = {
    SignOffStatus.NOT_SIGNED: VariationStatus.SUBMITTED,
    SignOffStatus.AWAITING_SUPPLIER: VariationStatus.AWAITING_SUPPLIER,
    SignOffStatus.AWAITING_CUSTOMER: VariationStatus.AWAITING_CUSTOMER,
    SignOffStatus.SIGNED: VariationStatus.APPROVED,
}


def signed_status(entity: WorkflowEntity, matrix: AuthorityMatrix | None) -> str:
    """The status the entity's signatures imply, given the configured authority.

    Returns the current status when signatures imply no move.
    """
    entity_type = entity.entity_type
    complete = is_complete(entity, matrix, entity_type)

    if entity_type == EntityType.BASELINE:
        return BaselineStatus.LOCKED if complete else entity.status
    if entity_type == EntityType.DELIVERABLE:
        if entity.status == DeliverableStatus.REVIEW_COMPLETE and complete:
            return DeliverableStatus.DELIVERED
        return entity.status
    if entity_type == EntityType.CERTIFICATE:
        if complete:
            return CertificateStatus.SIGNED
        return _CERTIFICATE_VIEW[derive_status(entity)]
    if entity_type == EntityType.VARIATION:
        if edge_kind(entity_type, entity.status, VariationStatus.APPROVED) is None:
            return entity.status
        if complete:
            return VariationStatus.APPROVED
        return _VARIATION_VIEW[derive_status(entity)]
    return entity.status


# ── Authority per edge kind ──────────────────────────────────────────────


def has_edit_rights(entity: WorkflowEntity, role: Role | None, actor_id=None) -> bool:
    """Edit-role membership plus, on owned types, owner-or-elevated.

    An owned type with no owner recorded is open to elevated roles only.
    """
    entity_type = entity.entity_type
    if role not in EDIT_ROLES.get(entity_type, ()):
        return False
    if entity_type in OWNER_SCOPED_TYPES:
        return entity.is_owned_by(actor_id) or role in ELEVATED_ROLES[entity_type]
    return True


def _gate(mode: AuthorityMode, entity: WorkflowEntity, role: Role | None, actor_id) -> bool:
    if mode == AuthorityMode.NONE:
        return has_edit_rights(entity, role, actor_id)
    return satisfies(mode, role)


def _authorized(
    kind: EdgeKind,
    entity: WorkflowEntity,
    role: Role | None,
    matrix: AuthorityMatrix | None,
    actor_id,
) -> bool:
    if kind == EdgeKind.WORK:
        return has_edit_rights(entity, role, actor_id)
    if kind == EdgeKind.REVIEW:
        mode = resolve_mode(get_review_authority(matrix), entity.entity_type, entity.context_flags)
        return _gate(mode, entity, role, actor_id)
    if kind in (EdgeKind.APPROVAL, EdgeKind.SIGN_OFF):
        mode = effective_mode(matrix, entity.entity_type, entity.context_flags)
        return _gate(mode, entity, role, actor_id)
    if kind == EdgeKind.SUPPLIER:
        return is_supplier_side(role)
    if kind == EdgeKind.MANAGER:
        return role in MANAGER_ROLES
    raise AssertionError(f"unhandled edge kind {kind!r}")


def _role_and_user(role, actor_id):
    if isinstance(role, EffectiveRole):
        return role.effective_role, actor_id if actor_id is not None else role.user_id
    return Role.parse(role), actor_id


# ── Transition ───────────────────────────────────────────────────────────


def check_transition(
    entity: WorkflowEntity,
    entity_type,
    from_status: str,
    to_status: str,
    role,
    *,
    matrix: AuthorityMatrix | None = None,
    actor_id=None,
    log_denial: bool = True,
) -> TransitionError | None:
    """Validate a transition request; None when it may proceed.

    Denials are logged unless ``log_denial`` is False (capability probes).
    """
    role, actor_id = _role_and_user(role, actor_id)
    entity_type = EntityType.parse(entity_type) if entity_type else entity.entity_type
    extra = {"entity_type": entity.entity_type.value, "entity_id": entity.id, "actor_id": actor_id}

    if entity_type != entity.entity_type:
        return InvalidTransition(
            f"Entity is a {entity.entity_type.value}, not a {entity_type}",
            entity_id=entity.id,
        )

    if entity.locked:
        return InvalidTransition(
            f"{entity_type.value} is locked",
            entity_id=entity.id,
            details={"status": entity.status, "locked": True},
        )

    if from_status != entity.status:
        logger.warning(
            "Stale transition request: assumed %r, current %r",
            from_status, entity.status,
            extra={**extra, "error_code": StaleState.code},
        )
        return StaleState(
            "This item was already updated by someone else; please refresh",
            entity_id=entity.id,
            details={"expected_status": from_status, "current_status": entity.status},
        )

    kind = edge_kind(entity_type, entity.status, to_status)
    if kind is None:
        return InvalidTransition(
            f"Cannot move {entity_type.value} from '{entity.status}' to '{to_status}'",
            entity_id=entity.id,
            details={
                "current_status": entity.status,
                "allowed": allowed_targets(entity_type, entity.status),
            },
        )

    if kind == EdgeKind.SIGN_OFF:
        implied = signed_status(entity, matrix)
        if implied != to_status:
            return InvalidTransition(
                f"Signatures do not support moving to '{to_status}'",
                entity_id=entity.id,
                details={"current_status": entity.status, "sign_off_status": derive_status(entity).value},
            )

    if not _authorized(kind, entity, role, matrix, actor_id):
        if log_denial:
            logger.info(
                "Transition denied: %s → %s for role %s",
                entity.status, to_status, role.value if role else None,
                extra={**extra, "decision": "deny", "error_code": Unauthorized.code},
            )
        return Unauthorized(
            "You do not have permission to perform this action",
            entity_id=entity.id,
            details={"edge": kind.value, "role": role.value if role else None},
        )

    return None


def transition(
    entity: WorkflowEntity,
    entity_type,
    from_status: str,
    to_status: str,
    role,
    *,
    matrix: AuthorityMatrix | None = None,
    actor_id=None,
) -> tuple[WorkflowEntity | None, TransitionError | None]:
    """Move ``entity`` to ``to_status``.

    Args:
        entity:      Snapshot being evaluated.
        entity_type: Type the caller believes the entity has.
        from_status: Status the caller evaluated against.
        to_status:   Requested status.
        role:        Effective role (Role, role string or EffectiveRole).
        matrix:      Project authority matrix; None means all defaults.
        actor_id:    Acting user, for owner-scoped edges.

    Returns:
        (entity', None) on success, (None, error) otherwise.
    """
    err = check_transition(
        entity, entity_type, from_status, to_status, role,
        matrix=matrix, actor_id=actor_id,
    )
    if err:
        return None, err
    return _moved(entity, to_status), None


def _moved(entity: WorkflowEntity, to_status: str) -> WorkflowEntity:
    locked = entity.locked or (
        entity.entity_type == EntityType.BASELINE and to_status == BaselineStatus.LOCKED
    )
    return dataclasses.replace(entity, status=to_status, locked=locked)


def settle_after_signature(entity: WorkflowEntity, matrix: AuthorityMatrix | None) -> WorkflowEntity:
    """Advance along the sign-off edge the new signatures imply, if any.

    Completing a baseline locks it; completing a deliverable delivers it;
    certificates and variations track the ledger.
    """
    target = signed_status(entity, matrix)
    if target != entity.status and edge_kind(entity.entity_type, entity.status, target) == EdgeKind.SIGN_OFF:
        return _moved(entity, target)
    return entity


def unlock_baseline(
    entity: WorkflowEntity,
    actor: EffectiveRole,
    *,
    from_status: str | None = None,
    clear_signatures: bool = True,
) -> tuple[WorkflowEntity | None, TransitionError | None]:
    """Admin-only Locked → Unlocked reset.

    Requires full admin capability without an active "view as".
    Signatures are cleared unless ``clear_signatures`` is False.
    """
    if entity.entity_type != EntityType.BASELINE:
        return None, InvalidTransition("Only baselines can be reset", entity_id=entity.id)
    if from_status is not None and from_status != entity.status:
        return None, StaleState(
            "This item was already updated by someone else; please refresh",
            entity_id=entity.id,
            details={"expected_status": from_status, "current_status": entity.status},
        )
    if not actor.has_full_admin_capabilities or actor.is_impersonating:
        logger.info(
            "Baseline reset denied",
            extra={"entity_type": "baseline", "entity_id": entity.id,
                   "actor_id": actor.user_id, "decision": "deny"},
        )
        return None, Unauthorized("Only an administrator can reset a baseline", entity_id=entity.id)
    if not entity.locked and entity.status != BaselineStatus.LOCKED:
        return None, InvalidTransition("Baseline is not locked", entity_id=entity.id)

    reset = dataclasses.replace(entity, status=BaselineStatus.UNLOCKED, locked=False)
    if clear_signatures:
        reset = reset_signatures(reset)
    return reset, None
