"""
Authority Matrix: per-project approval configuration.

Maps each workflow entity type to an approval-authority mode and carries
the project's module/feature toggles.  The matrix is pure data read once
per evaluation; the persisted form is the flat settings record on the
``projects`` table (see project_settings_service).

Defaults when something is absent (recovered locally, never an error):
    - authority for an entity type → BOTH (require both parties)
    - a feature toggle             → enabled
    - deliverable review authority → CUSTOMER_ONLY

Usage:
    from tracker.services.authority_matrix import AuthorityMatrix, get_authority

    matrix = AuthorityMatrix.from_settings(project_settings)
    get_authority(matrix, "expense")   # AuthorityMode.CONDITIONAL
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from tracker.models.workflow import EntityType

logger = logging.getLogger(__name__)


class AuthorityMode(str, Enum):
    BOTH = "both"
    SUPPLIER_ONLY = "supplier_only"
    CUSTOMER_ONLY = "customer_only"
    EITHER = "either"
    NONE = "none"
    CONDITIONAL = "conditional"

    @classmethod
    def parse(cls, value) -> AuthorityMode | None:
        """Return the mode for a stored value; None for empty/unknown."""
        if isinstance(value, cls):
            return value
        if not value:
            return None
        raw = str(value).strip().lower()
        raw = _LEGACY_AUTHORITY_VALUES.get(raw, raw)
        try:
            return cls(raw)
        except ValueError:
            return None


# Older projects stored timesheet/expense authority as the approving role.
_LEGACY_AUTHORITY_VALUES = {
    "customer_pm": "customer_only",
    "supplier_pm": "supplier_only",
}


class Feature(str, Enum):
    BASELINES = "baselines"
    VARIATIONS = "variations"
    CERTIFICATES = "certificates"
    MILESTONE_BILLING = "milestone_billing"
    DELIVERABLE_APPROVAL = "deliverable_approval"
    DELIVERABLE_REVIEW = "deliverable_review"
    QUALITY_STANDARDS = "quality_standards"
    KPIS = "kpis"
    TIMESHEETS = "timesheets"
    TIMESHEET_APPROVAL = "timesheet_approval"
    EXPENSES = "expenses"
    EXPENSE_APPROVAL = "expense_approval"
    EXPENSE_RECEIPTS = "expense_receipts"
    RAID = "raid"


# ── Flat settings record layout ──────────────────────────────────────────

AUTHORITY_SETTING_KEYS: dict[EntityType, str] = {
    EntityType.BASELINE: "baseline_approval",
    EntityType.VARIATION: "variation_approval",
    EntityType.CERTIFICATE: "certificate_approval",
    EntityType.DELIVERABLE: "deliverable_approval_authority",
    EntityType.TIMESHEET: "timesheet_approval_authority",
    EntityType.EXPENSE: "expense_approval_authority",
}

REQUIRED_SETTING_KEYS: dict[EntityType, str] = {
    EntityType.BASELINE: "baselines_required",
    EntityType.VARIATION: "variations_required",
    EntityType.CERTIFICATE: "certificates_required",
    EntityType.DELIVERABLE: "deliverable_approval_required",
    EntityType.TIMESHEET: "timesheet_approval_required",
    EntityType.EXPENSE: "expense_approval_required",
}

FEATURE_SETTING_KEYS: dict[Feature, str] = {
    Feature.BASELINES: "baselines_required",
    Feature.VARIATIONS: "variations_enabled",
    Feature.CERTIFICATES: "certificates_required",
    Feature.MILESTONE_BILLING: "milestone_billing_enabled",
    Feature.DELIVERABLE_APPROVAL: "deliverable_approval_required",
    Feature.DELIVERABLE_REVIEW: "deliverable_review_required",
    Feature.QUALITY_STANDARDS: "quality_standards_enabled",
    Feature.KPIS: "kpis_enabled",
    Feature.TIMESHEETS: "timesheets_enabled",
    Feature.TIMESHEET_APPROVAL: "timesheet_approval_required",
    Feature.EXPENSES: "expenses_enabled",
    Feature.EXPENSE_APPROVAL: "expense_approval_required",
    Feature.EXPENSE_RECEIPTS: "expense_receipt_required",
    Feature.RAID: "raid_enabled",
}

REVIEW_AUTHORITY_KEY = "deliverable_review_authority"

# Module toggle that must be on for an entity type to be usable at all.
ENTITY_FEATURES: dict[EntityType, Feature] = {
    EntityType.BASELINE: Feature.BASELINES,
    EntityType.VARIATION: Feature.VARIATIONS,
    EntityType.CERTIFICATE: Feature.CERTIFICATES,
    EntityType.TIMESHEET: Feature.TIMESHEETS,
    EntityType.EXPENSE: Feature.EXPENSES,
}

# Values applied to NULL columns; full dual governance by default.
DEFAULT_WORKFLOW_SETTINGS: dict[str, object] = {
    "baselines_required": True,
    "baseline_approval": "both",
    "variations_required": True,
    "variation_approval": "both",
    "certificates_required": True,
    "certificate_approval": "both",
    "milestone_billing_enabled": True,
    "deliverable_approval_required": True,
    "deliverable_approval_authority": "both",
    "deliverable_review_required": True,
    "deliverable_review_authority": "customer_only",
    "quality_standards_enabled": True,
    "kpis_enabled": True,
    "timesheets_enabled": True,
    "timesheet_approval_required": True,
    "timesheet_approval_authority": "customer_only",
    "expenses_enabled": True,
    "expense_approval_required": True,
    "expense_approval_authority": "conditional",
    "expense_receipt_required": True,
    "variations_enabled": True,
    "raid_enabled": True,
}


# ── Matrix value types ───────────────────────────────────────────────────


@dataclass(frozen=True)
class EntityAuthority:
    """Approval configuration for one entity type."""

    required: bool = True
    authority: AuthorityMode | None = None

    @property
    def dual_signature(self) -> bool:
        return self.required and self.authority in (None, AuthorityMode.BOTH)

    def to_dict(self) -> dict:
        return {
            "required": self.required,
            "authority": self.authority.value if self.authority else None,
            "dual_signature": self.dual_signature,
        }


@dataclass(frozen=True)
class AuthorityMatrix:
    """Read-only approval matrix for one project."""

    entities: Mapping[EntityType, EntityAuthority] = field(default_factory=dict)
    features: Mapping[Feature, bool] = field(default_factory=dict)
    review_authority: AuthorityMode | None = None

    def __post_init__(self):
        object.__setattr__(self, "entities", MappingProxyType(dict(self.entities)))
        object.__setattr__(self, "features", MappingProxyType(dict(self.features)))

    @classmethod
    def from_settings(cls, settings: Mapping | None) -> AuthorityMatrix:
        """Build a matrix from a flat settings record.

        NULL/absent columns are left unset so the read helpers apply their
        defaults.  Unrecognised authority strings are treated as unset.
        """
        settings = settings or {}
        entities: dict[EntityType, EntityAuthority] = {}
        for entity_type in EntityType:
            raw_mode = settings.get(AUTHORITY_SETTING_KEYS[entity_type])
            mode = AuthorityMode.parse(raw_mode)
            if raw_mode and mode is None:
                logger.warning(
                    "Unknown approval authority %r for %s; defaulting to both",
                    raw_mode, entity_type.value,
                )
            raw_required = settings.get(REQUIRED_SETTING_KEYS[entity_type])
            entities[entity_type] = EntityAuthority(
                required=raw_required is not False,
                authority=mode,
            )

        features = {
            feature: bool(settings[key])
            for feature, key in FEATURE_SETTING_KEYS.items()
            if settings.get(key) is not None
        }
        return cls(
            entities=entities,
            features=features,
            review_authority=AuthorityMode.parse(settings.get(REVIEW_AUTHORITY_KEY)),
        )

    def to_dict(self) -> dict:
        return {
            "entities": {et.value: ea.to_dict() for et, ea in self.entities.items()},
            "features": {f.value: enabled for f, enabled in self.features.items()},
            "review_authority": get_review_authority(self).value,
        }


# ── Read helpers ─────────────────────────────────────────────────────────


def get_authority(matrix: AuthorityMatrix | None, entity_type) -> AuthorityMode:
    """Approval-authority mode for ``entity_type``.

    An entity type whose approval is explicitly not required has no
    approval gate (NONE).  A missing entry or unset mode falls back to
    BOTH.
    """
    entity_type = EntityType.parse(entity_type)
    entry = matrix.entities.get(entity_type) if matrix is not None and entity_type else None
    if entry is not None and not entry.required:
        return AuthorityMode.NONE
    if entry is None or entry.authority is None:
        logger.debug("Authority unset for %s; using both", entity_type)
        return AuthorityMode.BOTH
    return entry.authority


def is_feature_enabled(matrix: AuthorityMatrix | None, feature) -> bool:
    """True unless the feature is explicitly switched off."""
    if matrix is None:
        return True
    try:
        feature = Feature(feature)
    except ValueError:
        return True
    return matrix.features.get(feature) is not False


def requires_dual_signature(matrix: AuthorityMatrix | None, entity_type) -> bool:
    return get_authority(matrix, entity_type) == AuthorityMode.BOTH


def get_review_authority(matrix: AuthorityMatrix | None) -> AuthorityMode:
    """Who may accept/reject a submitted deliverable."""
    if matrix is None or matrix.review_authority is None:
        return AuthorityMode.CUSTOMER_ONLY
    return matrix.review_authority


def is_entity_type_enabled(matrix: AuthorityMatrix | None, entity_type) -> bool:
    """False when the module owning ``entity_type`` is switched off."""
    feature = ENTITY_FEATURES.get(EntityType.parse(entity_type))
    return feature is None or is_feature_enabled(matrix, feature)
