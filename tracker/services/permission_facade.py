"""
Permission Facade: named capability flags for calling code.

Each capability combines three questions:
    1. does the state machine allow the move from the entity's status?
    2. does the effective role hold the authority it needs?
    3. is the entity open (not locked, not terminal, module enabled)?

Every function takes ``(entity, actor, matrix)`` where ``actor`` is the
``EffectiveRole`` from role_resolver, and only returns decisions.  A
"view as" session sees the capabilities of the impersonated role.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from tracker.models.workflow import (
    DELETABLE_STATUSES,
    DELETE_ROLES,
    EDIT_ROLES,
    EDITABLE_STATUSES,
    OWNER_SCOPED_TYPES,
    SIGNABLE_STATUSES,
    BaselineStatus,
    DeliverableStatus,
    EntityType,
    SubmissionStatus,
    VariationStatus,
    WorkflowEntity,
)
from tracker.models.auth import EffectiveRole
from tracker.services.authority_matrix import AuthorityMatrix, is_entity_type_enabled
from tracker.services.signature_ledger import (
    Side,
    SignOffStatus,
    derive_status,
    get_approval_status,
    side_for_role,
)
from tracker.services.state_machine import check_transition, has_edit_rights

logger = logging.getLogger(__name__)


_SUBMIT_TARGETS = {
    EntityType.DELIVERABLE: DeliverableStatus.SUBMITTED,
    EntityType.TIMESHEET: SubmissionStatus.SUBMITTED,
    EntityType.EXPENSE: SubmissionStatus.SUBMITTED,
    EntityType.VARIATION: VariationStatus.SUBMITTED,
}


def _open(entity: WorkflowEntity, matrix: AuthorityMatrix | None) -> bool:
    return (
        not entity.locked
        and not entity.is_terminal
        and is_entity_type_enabled(matrix, entity.entity_type)
    )


def can_transition(entity, to_status, actor: EffectiveRole, matrix) -> bool:
    if not _open(entity, matrix):
        return False
    err = check_transition(
        entity, entity.entity_type, entity.status, to_status, actor.effective_role,
        matrix=matrix, actor_id=actor.user_id, log_denial=False,
    )
    return err is None


def can_edit(entity, actor: EffectiveRole, matrix) -> bool:
    return (
        _open(entity, matrix)
        and entity.status in EDITABLE_STATUSES[entity.entity_type]
        and has_edit_rights(entity, actor.effective_role, actor.user_id)
    )


def can_delete(entity, actor: EffectiveRole, matrix) -> bool:
    if not _open(entity, matrix) or entity.status not in DELETABLE_STATUSES[entity.entity_type]:
        return False
    role = actor.effective_role
    if role in DELETE_ROLES[entity.entity_type]:
        return True
    return (
        entity.entity_type in OWNER_SCOPED_TYPES
        and entity.is_owned_by(actor.user_id)
        and role in EDIT_ROLES[entity.entity_type]
    )


def can_submit(entity, actor: EffectiveRole, matrix) -> bool:
    target = _SUBMIT_TARGETS.get(entity.entity_type)
    return target is not None and can_transition(entity, target, actor, matrix)


def can_review(entity, actor: EffectiveRole, matrix) -> bool:
    """Accept or return a deliverable that is awaiting review."""
    if entity.entity_type != EntityType.DELIVERABLE:
        return False
    return can_transition(entity, DeliverableStatus.REVIEW_COMPLETE, actor, matrix)


def can_validate(entity, actor: EffectiveRole, matrix) -> bool:
    """Validate or reject a submitted timesheet/expense."""
    if entity.entity_type not in (EntityType.TIMESHEET, EntityType.EXPENSE):
        return False
    return can_transition(entity, SubmissionStatus.VALIDATED, actor, matrix)


def _can_sign(entity, actor: EffectiveRole, matrix, side: Side) -> bool:
    if not is_entity_type_enabled(matrix, entity.entity_type) or entity.locked:
        return False
    if entity.status not in SIGNABLE_STATUSES[entity.entity_type]:
        return False
    if side_for_role(actor.effective_role) != side:
        return False
    status = get_approval_status(entity, matrix)
    return status.needs_supplier if side == Side.SUPPLIER else status.needs_customer


def can_sign_as_supplier(entity, actor: EffectiveRole, matrix) -> bool:
    return _can_sign(entity, actor, matrix, Side.SUPPLIER)


def can_sign_as_customer(entity, actor: EffectiveRole, matrix) -> bool:
    return _can_sign(entity, actor, matrix, Side.CUSTOMER)


def can_initiate_sign_off(entity, actor: EffectiveRole, matrix) -> bool:
    """Give the first signature on an entity that is ready for sign-off."""
    if derive_status(entity) != SignOffStatus.NOT_SIGNED:
        return False
    return can_sign_as_supplier(entity, actor, matrix) or can_sign_as_customer(entity, actor, matrix)


def can_reset_baseline(entity, actor: EffectiveRole, matrix=None) -> bool:
    return (
        entity.entity_type == EntityType.BASELINE
        and (entity.locked or entity.status == BaselineStatus.LOCKED)
        and actor.has_full_admin_capabilities
        and not actor.is_impersonating
    )


@dataclass(frozen=True)
class Capabilities:
    can_edit: bool
    can_delete: bool
    can_submit: bool
    can_review: bool
    can_validate: bool
    can_sign_as_supplier: bool
    can_sign_as_customer: bool
    can_initiate_sign_off: bool
    can_reset_baseline: bool

    def to_dict(self) -> dict:
        return asdict(self)


def get_capabilities(
    entity: WorkflowEntity,
    actor: EffectiveRole,
    matrix: AuthorityMatrix | None,
) -> Capabilities:
    """Every named capability for one actor on one entity."""
    caps = Capabilities(
        can_edit=can_edit(entity, actor, matrix),
        can_delete=can_delete(entity, actor, matrix),
        can_submit=can_submit(entity, actor, matrix),
        can_review=can_review(entity, actor, matrix),
        can_validate=can_validate(entity, actor, matrix),
        can_sign_as_supplier=can_sign_as_supplier(entity, actor, matrix),
        can_sign_as_customer=can_sign_as_customer(entity, actor, matrix),
        can_initiate_sign_off=can_initiate_sign_off(entity, actor, matrix),
        can_reset_baseline=can_reset_baseline(entity, actor, matrix),
    )
    logger.debug(
        "Capabilities computed",
        extra={"entity_type": entity.entity_type.value, "entity_id": entity.id, "actor_id": actor.user_id},
    )
    return caps
