"""
Approval Evaluator: may this role approve this entity type?

``can_approve`` is pure and total: every (matrix, entity type, role,
context) combination yields a boolean and nothing here raises.  A False
result is a decision, not an error; callers that need a typed failure
wrap it in ``Unauthorized`` themselves (see state_machine).

Party membership is the fixed role-set data in ``tracker.models.auth``.

CONDITIONAL authority is resolved to a concrete mode first:
    expense      → chargeable ? CUSTOMER_ONLY : SUPPLIER_ONLY
    anything else → EITHER
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping

from tracker.models.auth import CUSTOMER_SIDE_ROLES, SUPPLIER_SIDE_ROLES, Role
from tracker.models.workflow import EntityType
from tracker.services.authority_matrix import AuthorityMatrix, AuthorityMode, get_authority

logger = logging.getLogger(__name__)


def is_supplier_side(role) -> bool:
    return Role.parse(role) in SUPPLIER_SIDE_ROLES


def is_customer_side(role) -> bool:
    return Role.parse(role) in CUSTOMER_SIDE_ROLES


def is_chargeable(context: Mapping | None) -> bool:
    """Read the chargeable flag; absent or non-boolean counts as not chargeable."""
    if not context or not isinstance(context, Mapping):
        return False
    for key in ("is_chargeable", "isChargeable", "chargeable"):
        if key in context:
            return context[key] is True
    return False


def resolve_mode(
    mode: AuthorityMode,
    entity_type,
    context: Mapping | None = None,
) -> AuthorityMode:
    """Turn CONDITIONAL into the concrete mode for this entity and context."""
    if mode != AuthorityMode.CONDITIONAL:
        return mode
    if EntityType.parse(entity_type) == EntityType.EXPENSE:
        return AuthorityMode.CUSTOMER_ONLY if is_chargeable(context) else AuthorityMode.SUPPLIER_ONLY
    logger.debug("Conditional authority on %s treated as either", entity_type)
    return AuthorityMode.EITHER


def _any_party(role) -> bool:
    return is_supplier_side(role) or is_customer_side(role)


# CONDITIONAL never reaches the rule table; resolve_mode removes it.
_RULES: dict[AuthorityMode, Callable[[Role | None], bool]] = {
    AuthorityMode.NONE: lambda role: True,
    AuthorityMode.BOTH: _any_party,
    AuthorityMode.SUPPLIER_ONLY: is_supplier_side,
    AuthorityMode.CUSTOMER_ONLY: is_customer_side,
    AuthorityMode.EITHER: _any_party,
}


def effective_mode(
    matrix: AuthorityMatrix | None,
    entity_type,
    context: Mapping | None = None,
) -> AuthorityMode:
    """Configured authority for ``entity_type`` with CONDITIONAL resolved."""
    return resolve_mode(get_authority(matrix, entity_type), entity_type, context)


def can_approve(
    matrix: AuthorityMatrix | None,
    entity_type,
    role,
    context: Mapping | None = None,
) -> bool:
    """True if ``role`` holds approval authority for ``entity_type``.

    Under BOTH each side may sign its own half; whether the entity is
    complete is the signature ledger's call, not this one.  Under NONE
    every role passes; edit rights are enforced by the caller.
    """
    mode = effective_mode(matrix, entity_type, context)
    return _RULES[mode](Role.parse(role))


def satisfies(mode: AuthorityMode, role) -> bool:
    """Whether ``role`` passes an already-resolved authority mode."""
    return _RULES[resolve_mode(mode, None)](Role.parse(role))
