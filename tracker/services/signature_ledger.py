"""
Signature Ledger: who has signed, and is that enough?

Each entity carries one signature slot per party (``*_signed_at`` /
``*_signed_by``).  Slots are monotonic: this module only ever fills an
empty slot.  The sole way to clear them is ``reset_signatures``, used by
the admin baseline reset in state_machine.

Derived status:
    both slots set      → Signed
    supplier only       → Awaiting Customer
    customer only       → Awaiting Supplier
    neither             → Not Signed

Completeness folds the derived status with the entity type's approval
authority (CONDITIONAL resolved from the entity's context flags).

Concurrency: ``apply_signature`` computes the new snapshot only.  The
persistence layer writes it with a version compare-and-set so that two
requests signing from the same snapshot cannot both succeed.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from tracker.core.exceptions import InvalidTransition, SignatureError
from tracker.models.auth import Role
from tracker.models.workflow import SIGNABLE_STATUSES, EntityType, WorkflowEntity
from tracker.services.approval import effective_mode, is_customer_side, is_supplier_side
from tracker.services.authority_matrix import AuthorityMatrix, AuthorityMode
from tracker.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class SignOffStatus(str, Enum):
    NOT_SIGNED = "Not Signed"
    AWAITING_SUPPLIER = "Awaiting Supplier"
    AWAITING_CUSTOMER = "Awaiting Customer"
    SIGNED = "Signed"


class Side(str, Enum):
    SUPPLIER = "supplier"
    CUSTOMER = "customer"

    @classmethod
    def parse(cls, value) -> Side | None:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


def side_for_role(role) -> Side | None:
    """The party a role signs for, or None for roles outside both parties."""
    if is_supplier_side(role):
        return Side.SUPPLIER
    if is_customer_side(role):
        return Side.CUSTOMER
    return None


def is_signed(entity: WorkflowEntity, side: Side) -> bool:
    if side == Side.SUPPLIER:
        return entity.supplier_signed_at is not None
    return entity.customer_signed_at is not None


def derive_status(entity: WorkflowEntity) -> SignOffStatus:
    supplier = is_signed(entity, Side.SUPPLIER)
    customer = is_signed(entity, Side.CUSTOMER)
    if supplier and customer:
        return SignOffStatus.SIGNED
    if supplier:
        return SignOffStatus.AWAITING_CUSTOMER
    if customer:
        return SignOffStatus.AWAITING_SUPPLIER
    return SignOffStatus.NOT_SIGNED


# (supplier_signed, customer_signed) → complete?
_COMPLETION: dict[AuthorityMode, Callable[[bool, bool], bool]] = {
    AuthorityMode.BOTH: lambda s, c: s and c,
    AuthorityMode.SUPPLIER_ONLY: lambda s, c: s,
    AuthorityMode.CUSTOMER_ONLY: lambda s, c: c,
    AuthorityMode.EITHER: lambda s, c: s or c,
    AuthorityMode.NONE: lambda s, c: True,
}


def is_complete(
    entity: WorkflowEntity,
    matrix: AuthorityMatrix | None,
    entity_type=None,
) -> bool:
    """True once the signatures present satisfy the configured authority."""
    entity_type = entity_type or entity.entity_type
    mode = effective_mode(matrix, entity_type, entity.context_flags)
    return _COMPLETION[mode](
        is_signed(entity, Side.SUPPLIER),
        is_signed(entity, Side.CUSTOMER),
    )


def apply_signature(
    entity: WorkflowEntity,
    side,
    signer_id,
    timestamp=None,
) -> tuple[WorkflowEntity | None, SignatureError | None]:
    """Fill one party's signature slot.

    Returns ``(entity', None)`` or ``(None, InvalidTransition)`` when the
    entity is locked or not in a signable status.  Signing a side that is
    already signed returns the unchanged entity and no error.
    """
    side = Side.parse(side)
    if side is None:
        return None, InvalidTransition("Signature side must be supplier or customer", entity_id=entity.id)

    if entity.locked:
        return None, InvalidTransition(
            f"{entity.entity_type.value} is locked and cannot be signed",
            entity_id=entity.id,
            details={"status": entity.status, "locked": True},
        )

    if is_signed(entity, side):
        logger.debug(
            "Signature already present; no-op",
            extra={"entity_type": entity.entity_type.value, "entity_id": entity.id},
        )
        return entity, None

    signable = SIGNABLE_STATUSES.get(entity.entity_type, frozenset())
    if entity.status not in signable:
        return None, InvalidTransition(
            f"Cannot sign {entity.entity_type.value} in status '{entity.status}'",
            entity_id=entity.id,
            details={"status": entity.status, "signable_statuses": sorted(signable)},
        )

    timestamp = timestamp or utcnow()
    signer_id = str(signer_id) if signer_id is not None else None
    if side == Side.SUPPLIER:
        signed = dataclasses.replace(entity, supplier_signed_at=timestamp, supplier_signed_by=signer_id)
    else:
        signed = dataclasses.replace(entity, customer_signed_at=timestamp, customer_signed_by=signer_id)
    return signed, None


def reset_signatures(entity: WorkflowEntity) -> WorkflowEntity:
    """Clear both slots.  Only the admin baseline reset may call this."""
    return dataclasses.replace(
        entity,
        supplier_signed_at=None,
        supplier_signed_by=None,
        customer_signed_at=None,
        customer_signed_by=None,
    )


# ── Approval status summary ──────────────────────────────────────────────


@dataclass(frozen=True)
class ApprovalStatus:
    authority: AuthorityMode
    sign_off_status: SignOffStatus
    needs_supplier: bool
    needs_customer: bool
    is_complete: bool
    can_sign: bool = False

    def to_dict(self) -> dict:
        return {
            "authority": self.authority.value,
            "sign_off_status": self.sign_off_status.value,
            "needs_supplier": self.needs_supplier,
            "needs_customer": self.needs_customer,
            "is_complete": self.is_complete,
            "can_sign": self.can_sign,
        }


def get_approval_status(
    entity: WorkflowEntity,
    matrix: AuthorityMatrix | None,
    entity_type: EntityType | str | None = None,
    role: Role | str | None = None,
) -> ApprovalStatus:
    """Which signatures are still needed, and whether ``role`` can give one."""
    entity_type = entity_type or entity.entity_type
    mode = effective_mode(matrix, entity_type, entity.context_flags)
    supplier = is_signed(entity, Side.SUPPLIER)
    customer = is_signed(entity, Side.CUSTOMER)

    if mode == AuthorityMode.NONE:
        needs_supplier = needs_customer = False
    elif mode == AuthorityMode.EITHER:
        needs_supplier = needs_customer = not (supplier or customer)
    else:
        needs_supplier = not supplier and mode in (AuthorityMode.BOTH, AuthorityMode.SUPPLIER_ONLY)
        needs_customer = not customer and mode in (AuthorityMode.BOTH, AuthorityMode.CUSTOMER_ONLY)

    return ApprovalStatus(
        authority=mode,
        sign_off_status=derive_status(entity),
        needs_supplier=needs_supplier,
        needs_customer=needs_customer,
        is_complete=_COMPLETION[mode](supplier, customer),
        can_sign=(needs_supplier and is_supplier_side(role)) or (needs_customer and is_customer_side(role)),
    )
