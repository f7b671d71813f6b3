"""
Workflow entity service: persists decisions made by the authorization core.

Every mutation follows the same steps:
    1. read the row and build an immutable snapshot
    2. resolve the actor's effective role for the project
    3. refuse "view as" sessions (read-only previews)
    4. refuse a caller-supplied ``expected_version`` that is already stale
    5. ask the core for the new snapshot (state_machine / signature_ledger)
    6. write it with ``UPDATE ... WHERE version = :expected`` and append a
       WorkflowEvent, committing both together

Step 6 is the compare-and-set: of two requests evaluated against the same
snapshot exactly one updates a row; the other gets ``StaleState`` and must
re-read and retry.

Return convention (business outcomes):
    (record_dict, None) on success
    (None, WorkflowError) on InvalidTransition / StaleState / Unauthorized
Missing rows raise NotFoundError; malformed input raises ValidationError.
"""

from __future__ import annotations

import logging

from sqlalchemy import select, update

from tracker.core.exceptions import (
    NotFoundError,
    StaleState,
    Unauthorized,
    ValidationError,
    WorkflowError,
)
from tracker.models import db
from tracker.models.audit import WorkflowEvent, write_event
from tracker.models.auth import Actor, EffectiveRole
from tracker.models.project import Project
from tracker.models.workflow import (
    EDIT_ROLES,
    ELEVATED_ROLES,
    INITIAL_STATUS,
    OWNER_SCOPED_TYPES,
    EntityType,
    WorkflowEntity,
    WorkflowRecord,
)
from tracker.services import permission_facade
from tracker.services.authority_matrix import is_entity_type_enabled
from tracker.services.project_settings_service import get_matrix
from tracker.services.role_resolver import resolve_effective_role
from tracker.services.signature_ledger import (
    Side,
    apply_signature,
    get_approval_status,
    side_for_role,
)
from tracker.services.state_machine import settle_after_signature, transition, unlock_baseline
from tracker.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _extra(project_id, entity: WorkflowEntity, actor: EffectiveRole | None = None, **more) -> dict:
    extra = {
        "project_id": project_id,
        "entity_type": entity.entity_type.value,
        "entity_id": entity.id,
    }
    if actor is not None:
        extra["actor_id"] = actor.user_id
    extra.update(more)
    return extra


def _stale(entity: WorkflowEntity, project_id, expected_version) -> StaleState:
    logger.warning(
        "Stale write rejected: expected v%s, stored v%s",
        expected_version, entity.version,
        extra=_extra(project_id, entity, error_code=StaleState.code),
    )
    return StaleState(
        "This item was already updated by someone else; please refresh",
        entity_id=entity.id,
        details={"expected_version": expected_version, "current_version": entity.version},
    )


def _guard(
    project: Project,
    entity: WorkflowEntity,
    actor: EffectiveRole,
    expected_version: int | None,
) -> WorkflowError | None:
    if actor.is_impersonating:
        logger.info(
            "Mutation refused during view-as session",
            extra=_extra(project.id, entity, actor, decision="deny"),
        )
        return Unauthorized(
            "View-as sessions are read-only; stop impersonating to make changes",
            entity_id=entity.id,
        )
    if expected_version is not None and expected_version != entity.version:
        return _stale(entity, project.id, expected_version)
    return None


def _compare_and_set(record: WorkflowRecord, expected_version: int, new: WorkflowEntity) -> bool:
    """Write ``new`` only if the row is still at ``expected_version``."""
    result = db.session.execute(
        update(WorkflowRecord)
        .where(
            WorkflowRecord.id == record.id,
            WorkflowRecord.version == expected_version,
        )
        .values(
            status=new.status,
            supplier_signed_at=new.supplier_signed_at,
            supplier_signed_by=new.supplier_signed_by,
            customer_signed_at=new.customer_signed_at,
            customer_signed_by=new.customer_signed_by,
            locked=new.locked,
            version=expected_version + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _persist(
    project: Project,
    record: WorkflowRecord,
    before: WorkflowEntity,
    after: WorkflowEntity,
    actor: EffectiveRole,
    *,
    action: str,
    side: str | None = None,
    details: dict | None = None,
) -> tuple[dict | None, WorkflowError | None]:
    if not _compare_and_set(record, before.version, after):
        db.session.rollback()
        stored = db.session.get(WorkflowRecord, record.id)
        return None, _stale(stored.to_entity() if stored else before, project.id, before.version)

    write_event(
        project_id=project.id,
        entity_id=record.id,
        entity_type=before.entity_type.value,
        action=action,
        actor=actor,
        from_status=before.status,
        to_status=after.status,
        side=side,
        details=details,
    )
    db.session.commit()
    db.session.refresh(record)

    logger.info(
        "Workflow %s: %s → %s", action, before.status, after.status,
        extra=_extra(project.id, before, actor),
    )
    return record.to_dict(), None


# ── Reads ──────────────────────────────────────────────────────────────────────


def get_record(project_id: int, entity_id: int) -> WorkflowRecord:
    """Fetch a row scoped to its project; other projects' rows are 'not found'."""
    record = db.session.get(WorkflowRecord, entity_id)
    if record is None or record.project_id != project_id:
        raise NotFoundError(resource="WorkflowEntity", resource_id=entity_id, project_id=project_id)
    return record


def get_entity(project_id: int, entity_id: int) -> WorkflowEntity:
    return get_record(project_id, entity_id).to_entity()


def get_history(project_id: int, entity_id: int) -> list[dict]:
    """Append-only event trail for one entity, oldest first."""
    get_record(project_id, entity_id)
    stmt = (
        select(WorkflowEvent)
        .where(WorkflowEvent.project_id == project_id, WorkflowEvent.entity_id == entity_id)
        .order_by(WorkflowEvent.id.asc())
    )
    return [event.to_dict() for event in db.session.execute(stmt).scalars()]


def get_capabilities(
    project: Project,
    entity_id: int,
    actor: Actor,
    impersonation=None,
) -> dict:
    entity = get_entity(project.id, entity_id)
    effective = resolve_effective_role(actor, project, impersonation)
    caps = permission_facade.get_capabilities(entity, effective, get_matrix(project))
    return {
        "entity": entity.to_dict(),
        "role": effective.to_dict(),
        "capabilities": caps.to_dict(),
    }


def get_entity_approval_status(project: Project, entity_id: int, actor: Actor | None = None) -> dict:
    entity = get_entity(project.id, entity_id)
    role = resolve_effective_role(actor, project).effective_role if actor else None
    return get_approval_status(entity, get_matrix(project), role=role).to_dict()


# ── Mutations ──────────────────────────────────────────────────────────────────


def create_entity(
    project: Project,
    entity_type,
    actor: Actor,
    *,
    owner_id=None,
    title: str | None = None,
    context_flags: dict | None = None,
) -> tuple[dict | None, WorkflowError | None]:
    """Create an entity at its type's initial status.

    Owned types default to the acting user as owner; creating on behalf of
    someone else needs an elevated role.
    """
    parsed = EntityType.parse(entity_type)
    if parsed is None:
        raise ValidationError(
            f"Invalid entity_type '{entity_type}'",
            details={"entity_type": f"must be one of: {', '.join(t.value for t in EntityType)}"},
        )
    if context_flags is not None and not isinstance(context_flags, dict):
        raise ValidationError("context_flags must be an object", details={"context_flags": "invalid"})

    effective = resolve_effective_role(actor, project)
    role = effective.effective_role
    if parsed in OWNER_SCOPED_TYPES and owner_id is None:
        owner_id = effective.user_id
    owner_id = str(owner_id) if owner_id is not None else None

    denial = None
    if effective.is_impersonating:
        denial = "View-as sessions are read-only; stop impersonating to make changes"
    elif not is_entity_type_enabled(get_matrix(project), parsed):
        denial = f"The {parsed.value} module is disabled for this project"
    elif role not in EDIT_ROLES[parsed]:
        denial = f"Your role cannot create a {parsed.value}"
    elif (
        parsed in OWNER_SCOPED_TYPES
        and (owner_id is None or owner_id != effective.user_id)
        and role not in ELEVATED_ROLES[parsed]
    ):
        denial = f"Your role cannot create a {parsed.value} for another user"
    if denial:
        logger.info(
            "Create denied: %s", denial,
            extra={"project_id": project.id, "entity_type": parsed.value,
                   "actor_id": effective.user_id, "decision": "deny"},
        )
        return None, Unauthorized(denial)

    record = WorkflowRecord(
        project_id=project.id,
        entity_type=parsed.value,
        title=(title or "").strip() or None,
        status=INITIAL_STATUS[parsed],
        owner_id=owner_id,
        context_flags=dict(context_flags or {}),
        locked=False,
        version=1,
    )
    db.session.add(record)
    db.session.flush()
    write_event(
        project_id=project.id,
        entity_id=record.id,
        entity_type=parsed.value,
        action="create",
        actor=effective,
        to_status=record.status,
    )
    db.session.commit()
    logger.info(
        "Workflow entity created id=%s", record.id,
        extra={"project_id": project.id, "entity_type": parsed.value,
               "entity_id": record.id, "actor_id": effective.user_id},
    )
    return record.to_dict(), None


def transition_entity(
    project: Project,
    entity_id: int,
    from_status: str,
    to_status: str,
    actor: Actor,
    *,
    expected_version: int | None = None,
) -> tuple[dict | None, WorkflowError | None]:
    """Move an entity along one edge of its transition table."""
    record = get_record(project.id, entity_id)
    entity = record.to_entity()
    effective = resolve_effective_role(actor, project)

    err = _guard(project, entity, effective, expected_version)
    if err:
        return None, err

    matrix = get_matrix(project)
    if not is_entity_type_enabled(matrix, entity.entity_type):
        return None, Unauthorized(
            f"The {entity.entity_type.value} module is disabled for this project",
            entity_id=entity.id,
        )

    moved, err = transition(
        entity, entity.entity_type, from_status, to_status, effective,
        matrix=matrix,
    )
    if err:
        return None, err
    return _persist(project, record, entity, moved, effective, action="transition")


def _sign_denied(project: Project, entity: WorkflowEntity, actor: EffectiveRole, side: Side) -> Unauthorized:
    logger.info(
        "Signature denied for %s side", side.value,
        extra=_extra(project.id, entity, actor, decision="deny", error_code=Unauthorized.code),
    )
    return Unauthorized(
        f"You cannot sign as {side.value} on this {entity.entity_type.value}",
        entity_id=entity.id,
    )


def sign_entity(
    project: Project,
    entity_id: int,
    side,
    actor: Actor,
    *,
    expected_version: int | None = None,
    now=None,
) -> tuple[dict | None, WorkflowError | None]:
    """Add the actor's party signature and settle any status it implies.

    ``side`` defaults to the party of the actor's effective role.  A side
    that is already signed is a no-op: the stored entity comes back and
    nothing is written.
    """
    record = get_record(project.id, entity_id)
    entity = record.to_entity()
    effective = resolve_effective_role(actor, project)

    err = _guard(project, entity, effective, expected_version)
    if err:
        return None, err

    if side is None:
        parsed_side = side_for_role(effective.effective_role)
        if parsed_side is None:
            return None, Unauthorized("Your role does not sign for either party", entity_id=entity.id)
    else:
        parsed_side = Side.parse(side)
        if parsed_side is None:
            raise ValidationError("side must be supplier or customer", details={"side": "invalid"})

    # Only the signing party may see a repeat signature as a no-op
    if side_for_role(effective.effective_role) != parsed_side:
        return None, _sign_denied(project, entity, effective, parsed_side)

    signed, err = apply_signature(entity, parsed_side, effective.user_id, now)
    if err:
        return None, err
    if signed is entity:
        return record.to_dict(), None

    matrix = get_matrix(project)
    allowed = (
        permission_facade.can_sign_as_supplier(entity, effective, matrix)
        if parsed_side == Side.SUPPLIER
        else permission_facade.can_sign_as_customer(entity, effective, matrix)
    )
    if not allowed:
        return None, _sign_denied(project, entity, effective, parsed_side)

    settled = settle_after_signature(signed, matrix)
    return _persist(
        project, record, entity, settled, effective,
        action="sign", side=parsed_side.value,
    )


def reset_baseline(
    project: Project,
    entity_id: int,
    actor: Actor,
    *,
    expected_version: int | None = None,
    clear_signatures: bool = True,
) -> tuple[dict | None, WorkflowError | None]:
    """Admin-only unlock of a locked baseline."""
    record = get_record(project.id, entity_id)
    entity = record.to_entity()
    effective = resolve_effective_role(actor, project)

    err = _guard(project, entity, effective, expected_version)
    if err:
        return None, err

    reset, err = unlock_baseline(entity, effective, clear_signatures=clear_signatures)
    if err:
        return None, err
    return _persist(
        project, record, entity, reset, effective,
        action="baseline.reset", details={"clear_signatures": clear_signatures},
    )
