"""
Approval evaluator tests.

can_approve must be total and deterministic; CONDITIONAL resolves from the
expense's chargeable flag and behaves like EITHER elsewhere.
"""

import itertools

import pytest

from tracker.models.auth import CUSTOMER_SIDE_ROLES, SUPPLIER_SIDE_ROLES, Role
from tracker.models.workflow import EntityType
from tracker.services import approval
from tracker.services.approval import (
    can_approve,
    is_chargeable,
    is_customer_side,
    is_supplier_side,
    resolve_mode,
)
from tracker.services.authority_matrix import AuthorityMatrix, AuthorityMode, EntityAuthority

PARTY_ROLES = SUPPLIER_SIDE_ROLES | CUSTOMER_SIDE_ROLES
NON_PARTY_ROLES = frozenset(Role) - PARTY_ROLES


def _matrix(entity_type, mode):
    return AuthorityMatrix(entities={EntityType(entity_type): EntityAuthority(authority=mode)})


class TestSides:
    def test_party_sets_are_disjoint(self):
        assert not SUPPLIER_SIDE_ROLES & CUSTOMER_SIDE_ROLES

    @pytest.mark.parametrize("role", list(Role))
    def test_at_most_one_side(self, role):
        assert not (is_supplier_side(role) and is_customer_side(role))

    def test_string_roles(self):
        assert is_supplier_side("supplier_finance") is True
        assert is_customer_side("customer_pm") is True
        assert is_supplier_side("admin") is False


class TestModes:
    @pytest.mark.parametrize("role", list(Role) + [None, "garbage"])
    def test_none_grants_everyone(self, role):
        assert can_approve(_matrix("certificate", AuthorityMode.NONE), "certificate", role) is True

    @pytest.mark.parametrize("role", list(Role))
    def test_both_grants_either_party(self, role):
        expected = role in PARTY_ROLES
        assert can_approve(_matrix("baseline", AuthorityMode.BOTH), "baseline", role) is expected

    @pytest.mark.parametrize("role", list(Role))
    def test_supplier_only(self, role):
        expected = role in SUPPLIER_SIDE_ROLES
        assert can_approve(_matrix("variation", AuthorityMode.SUPPLIER_ONLY), "variation", role) is expected

    @pytest.mark.parametrize("role", list(Role))
    def test_customer_only(self, role):
        expected = role in CUSTOMER_SIDE_ROLES
        assert can_approve(_matrix("timesheet", AuthorityMode.CUSTOMER_ONLY), "timesheet", role) is expected

    @pytest.mark.parametrize("role", list(Role))
    def test_either(self, role):
        expected = role in PARTY_ROLES
        assert can_approve(_matrix("certificate", AuthorityMode.EITHER), "certificate", role) is expected

    @pytest.mark.parametrize("role", sorted(NON_PARTY_ROLES))
    def test_non_party_roles_denied_under_party_modes(self, role):
        for mode in (AuthorityMode.BOTH, AuthorityMode.EITHER,
                     AuthorityMode.SUPPLIER_ONLY, AuthorityMode.CUSTOMER_ONLY):
            assert can_approve(_matrix("deliverable", mode), "deliverable", role) is False


class TestConditionalExpense:
    """Chargeable expenses are the customer's call; the rest the supplier's."""

    MATRIX = _matrix("expense", AuthorityMode.CONDITIONAL)

    @pytest.mark.parametrize("role", list(Role))
    def test_chargeable_needs_customer_side(self, role):
        result = can_approve(self.MATRIX, "expense", role, {"is_chargeable": True})
        assert result is (role in CUSTOMER_SIDE_ROLES)

    @pytest.mark.parametrize("role", list(Role))
    def test_non_chargeable_needs_supplier_side(self, role):
        result = can_approve(self.MATRIX, "expense", role, {"is_chargeable": False})
        assert result is (role in SUPPLIER_SIDE_ROLES)

    def test_missing_flag_counts_as_non_chargeable(self):
        assert can_approve(self.MATRIX, "expense", Role.SUPPLIER_PM) is True
        assert can_approve(self.MATRIX, "expense", Role.CUSTOMER_PM, {}) is False

    def test_camel_case_flag(self):
        assert can_approve(self.MATRIX, "expense", Role.CUSTOMER_FINANCE, {"isChargeable": True}) is True

    def test_truthy_non_boolean_is_not_chargeable(self):
        assert is_chargeable({"is_chargeable": "yes"}) is False


class TestConditionalElsewhere:
    @pytest.mark.parametrize("entity_type", ["baseline", "certificate", "variation", "deliverable", "timesheet"])
    def test_behaves_like_either(self, entity_type):
        assert resolve_mode(AuthorityMode.CONDITIONAL, entity_type) == AuthorityMode.EITHER
        matrix = _matrix(entity_type, AuthorityMode.CONDITIONAL)
        assert can_approve(matrix, entity_type, Role.SUPPLIER_PM) is True
        assert can_approve(matrix, entity_type, Role.CUSTOMER_FINANCE) is True
        assert can_approve(matrix, entity_type, Role.CONTRIBUTOR) is False


class TestTotality:
    def test_rule_table_covers_every_resolved_mode(self):
        assert set(approval._RULES) | {AuthorityMode.CONDITIONAL} == set(AuthorityMode)

    def test_every_combination_returns_a_stable_bool(self):
        contexts = [None, {}, {"is_chargeable": True}, {"is_chargeable": False}, {"is_chargeable": None}]
        roles = list(Role) + [None, "", "root"]
        for mode, entity_type, role, context in itertools.product(
            AuthorityMode, list(EntityType) + ["unknown"], roles, contexts,
        ):
            matrix = AuthorityMatrix(entities={
                et: EntityAuthority(authority=mode) for et in EntityType
            })
            first = can_approve(matrix, entity_type, role, context)
            assert isinstance(first, bool)
            assert can_approve(matrix, entity_type, role, context) is first
