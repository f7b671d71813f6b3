"""
Project Tracker
Workflow history model.

Models:
    - WorkflowEvent: immutable, append-only record of every persisted
      workflow mutation (create, transition, sign, baseline reset).
"""

import json
from datetime import UTC, datetime

from tracker.models import db

WORKFLOW_ACTIONS = {
    "create",
    "transition",
    "sign",
    "baseline.reset",
}


class WorkflowEvent(db.Model):
    """
    One row per persisted mutation.  ``actual_role`` and
    ``effective_role`` are stored separately so the trail shows who acted
    and under which authority.
    """

    __tablename__ = "workflow_events"
    __table_args__ = (
        db.Index("idx_workflow_event_entity", "entity_id"),
        db.Index("idx_workflow_event_project", "project_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer,
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_id = db.Column(
        db.Integer,
        db.ForeignKey("workflow_entities.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_type = db.Column(db.String(20), nullable=False)

    action = db.Column(
        db.String(30), nullable=False,
        comment="create | transition | sign | baseline.reset",
    )
    from_status = db.Column(db.String(40), nullable=True)
    to_status = db.Column(db.String(40), nullable=True)
    side = db.Column(db.String(10), nullable=True, comment="supplier | customer (sign only)")

    actor_id = db.Column(db.String(64), nullable=True)
    actual_role = db.Column(db.String(30), nullable=True)
    effective_role = db.Column(db.String(30), nullable=True)

    details_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def details(self) -> dict:
        try:
            return json.loads(self.details_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_id": self.entity_id,
            "entity_type": self.entity_type,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "side": self.side,
            "actor_id": self.actor_id,
            "actual_role": self.actual_role,
            "effective_role": self.effective_role,
            "details": self.details,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<WorkflowEvent {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


def write_event(
    *,
    project_id: int,
    entity_id: int,
    entity_type: str,
    action: str,
    actor=None,
    from_status: str | None = None,
    to_status: str | None = None,
    side: str | None = None,
    details: dict | None = None,
) -> WorkflowEvent:
    """
    Append a single history row.  Uses ``flush`` so callers keep
    transaction control.

    ``actor`` is an ``EffectiveRole``; None for system-driven events.
    """
    if action not in WORKFLOW_ACTIONS:
        raise ValueError(f"Unknown workflow action: {action!r}")
    event = WorkflowEvent(
        project_id=project_id,
        entity_id=entity_id,
        entity_type=entity_type,
        action=action,
        from_status=from_status,
        to_status=to_status,
        side=side,
        actor_id=actor.user_id if actor else None,
        actual_role=actor.actual_role.label if actor else None,
        effective_role=actor.effective_role.value if actor else None,
        details_json=json.dumps(details or {}, default=str),
    )
    db.session.add(event)
    db.session.flush()
    return event
