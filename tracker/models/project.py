"""Project domain model carrying the flat workflow-settings record."""

from datetime import datetime, timezone

from tracker.models import db

# Every column below is nullable: NULL means "use the default".
SETTINGS_BOOLEAN_COLUMNS = (
    "baselines_required",
    "variations_required",
    "certificates_required",
    "milestone_billing_enabled",
    "deliverable_approval_required",
    "deliverable_review_required",
    "quality_standards_enabled",
    "kpis_enabled",
    "timesheets_enabled",
    "timesheet_approval_required",
    "expenses_enabled",
    "expense_approval_required",
    "expense_receipt_required",
    "variations_enabled",
    "raid_enabled",
)

SETTINGS_AUTHORITY_COLUMNS = (
    "baseline_approval",
    "variation_approval",
    "certificate_approval",
    "deliverable_approval_authority",
    "deliverable_review_authority",
    "timesheet_approval_authority",
    "expense_approval_authority",
)

SETTINGS_COLUMNS = SETTINGS_BOOLEAN_COLUMNS + SETTINGS_AUTHORITY_COLUMNS


class Project(db.Model):
    """Tracked project; the unit an authority matrix is configured for."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.String(64), nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)

    # ── Workflow settings: module toggles + approval requirements ──
    baselines_required = db.Column(db.Boolean, nullable=True)
    baseline_approval = db.Column(db.String(20), nullable=True)
    variations_required = db.Column(db.Boolean, nullable=True)
    variation_approval = db.Column(db.String(20), nullable=True)
    certificates_required = db.Column(db.Boolean, nullable=True)
    certificate_approval = db.Column(db.String(20), nullable=True)
    milestone_billing_enabled = db.Column(db.Boolean, nullable=True)

    deliverable_approval_required = db.Column(db.Boolean, nullable=True)
    deliverable_approval_authority = db.Column(db.String(20), nullable=True)
    deliverable_review_required = db.Column(db.Boolean, nullable=True)
    deliverable_review_authority = db.Column(db.String(20), nullable=True)
    quality_standards_enabled = db.Column(db.Boolean, nullable=True)
    kpis_enabled = db.Column(db.Boolean, nullable=True)

    timesheets_enabled = db.Column(db.Boolean, nullable=True)
    timesheet_approval_required = db.Column(db.Boolean, nullable=True)
    timesheet_approval_authority = db.Column(
        db.String(20), nullable=True,
        comment="legacy rows may hold customer_pm | supplier_pm",
    )

    expenses_enabled = db.Column(db.Boolean, nullable=True)
    expense_approval_required = db.Column(db.Boolean, nullable=True)
    expense_approval_authority = db.Column(
        db.String(20), nullable=True,
        comment="legacy rows may hold customer_pm | supplier_pm",
    )
    expense_receipt_required = db.Column(db.Boolean, nullable=True)

    variations_enabled = db.Column(db.Boolean, nullable=True)
    raid_enabled = db.Column(db.Boolean, nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def raw_settings(self) -> dict:
        """Stored settings columns, NULLs included."""
        return {column: getattr(self, column) for column in SETTINGS_COLUMNS}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "org_id": self.org_id,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.name}>"
