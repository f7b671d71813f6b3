"""
Workflow service tests: persisted transitions, signatures and resets.

Covers the compare-and-set write (two writers from one snapshot, exactly
one wins), the append-only history, project scoping, and the refusal of
mutations during a "view as" session.
"""

import pytest

from tracker.core.exceptions import (
    InvalidTransition,
    NotFoundError,
    StaleState,
    Unauthorized,
    ValidationError,
)
from tracker.models import db
from tracker.models.audit import WorkflowEvent, write_event
from tracker.models.auth import Actor, Role
from tracker.models.project import Project
from tracker.models.workflow import (
    BaselineStatus,
    DeliverableStatus,
    SubmissionStatus,
    WorkflowRecord,
)
from tracker.services import project_settings_service as settings_service
from tracker.services import workflow_service as svc
from tracker.services.role_resolver import resolve_effective_role
from tracker.services.signature_ledger import Side, apply_signature

SUPPLIER = Actor(user_id="u-sup", project_role=Role.SUPPLIER_PM)
CUSTOMER = Actor(user_id="u-cus", project_role=Role.CUSTOMER_PM)
WORKER = Actor(user_id="u-work", project_role=Role.CONTRIBUTOR)
VIEWER = Actor(user_id="u-view", project_role=Role.VIEWER)
ADMIN = Actor(user_id="u-admin", is_system_admin=True)


def _create(project, entity_type, actor=SUPPLIER, **kwargs):
    data, err = svc.create_entity(project, entity_type, actor, **kwargs)
    assert err is None, err
    return data


def _move(project, data, to_status, actor):
    moved, err = svc.transition_entity(project, data["id"], data["status"], to_status, actor)
    assert err is None, err
    return moved


def _sign(project, data, actor, side=None):
    signed, err = svc.sign_entity(project, data["id"], side, actor)
    assert err is None, err
    return signed


def _actions(project, entity_id):
    return [e["action"] for e in svc.get_history(project.id, entity_id)]


def _event_count():
    return db.session.query(WorkflowEvent).count()


# ═════════════════════════════════════════════════════════════════════════════
# Create
# ═════════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_deliverable_owned_by_creator(self, project):
        data = _create(project, "deliverable", WORKER, title="  Design pack  ")
        assert data["status"] == DeliverableStatus.NOT_STARTED
        assert data["owner_id"] == "u-work"
        assert data["title"] == "Design pack"
        assert data["version"] == 1
        assert data["project_id"] == project.id
        history = svc.get_history(project.id, data["id"])
        assert len(history) == 1
        assert history[0]["action"] == "create"
        assert history[0]["to_status"] == DeliverableStatus.NOT_STARTED
        assert history[0]["actual_role"] == "Contributor"

    def test_unknown_type(self, project):
        with pytest.raises(ValidationError) as exc:
            svc.create_entity(project, "invoice", SUPPLIER)
        assert "entity_type" in exc.value.details

    def test_context_flags_must_be_object(self, project):
        with pytest.raises(ValidationError):
            svc.create_entity(project, "expense", WORKER, context_flags=["chargeable"])

    def test_viewer_cannot_create(self, project):
        data, err = svc.create_entity(project, "deliverable", VIEWER)
        assert data is None
        assert isinstance(err, Unauthorized)
        assert db.session.query(WorkflowRecord).count() == 0

    def test_contributor_cannot_create_for_someone_else(self, project):
        _, err = svc.create_entity(project, "timesheet", WORKER, owner_id="u-other")
        assert isinstance(err, Unauthorized)

    def test_anonymous_worker_cannot_create_unowned_timesheet(self, project):
        anonymous = Actor(user_id=None, project_role=Role.CUSTOMER_FINANCE)
        _, err = svc.create_entity(project, "timesheet", anonymous)
        assert isinstance(err, Unauthorized)
        assert db.session.query(WorkflowRecord).count() == 0

    def test_supplier_may_create_for_someone_else(self, project):
        data = _create(project, "timesheet", Actor(user_id="u-fin", project_role=Role.SUPPLIER_FINANCE),
                       owner_id="u-work")
        assert data["owner_id"] == "u-work"
        assert data["status"] == SubmissionStatus.DRAFT

    def test_disabled_module(self, project):
        settings_service.update_settings(project, {"timesheets_enabled": False})
        _, err = svc.create_entity(project, "timesheet", WORKER)
        assert isinstance(err, Unauthorized)
        assert "disabled" in err.message

    def test_view_as_is_read_only(self, project):
        preview = Actor(user_id="u-admin", is_system_admin=True, impersonated_role=Role.CONTRIBUTOR)
        _, err = svc.create_entity(project, "deliverable", preview)
        assert isinstance(err, Unauthorized)

    def test_context_flags_stored(self, project):
        data = _create(project, "expense", WORKER, context_flags={"is_chargeable": True})
        assert data["context_flags"] == {"is_chargeable": True}


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


class TestTransition:
    def test_review_return_and_resubmit(self, project):
        data = _create(project, "deliverable", WORKER)
        data = _move(project, data, DeliverableStatus.IN_PROGRESS, WORKER)
        data = _move(project, data, DeliverableStatus.SUBMITTED, WORKER)
        data = _move(project, data, DeliverableStatus.RETURNED, CUSTOMER)
        data = _move(project, data, DeliverableStatus.SUBMITTED, WORKER)

        assert data["status"] == DeliverableStatus.SUBMITTED
        assert data["version"] == 5
        history = svc.get_history(project.id, data["id"])
        assert [e["action"] for e in history] == ["create"] + ["transition"] * 4
        assert history[3]["from_status"] == DeliverableStatus.SUBMITTED
        assert history[3]["to_status"] == DeliverableStatus.RETURNED
        assert history[3]["actor_id"] == "u-cus"
        assert history[3]["effective_role"] == "customer_pm"

    def test_review_before_submission_invalid(self, project):
        data = _create(project, "deliverable", WORKER)
        moved, err = svc.transition_entity(
            project, data["id"], DeliverableStatus.NOT_STARTED, DeliverableStatus.REVIEW_COMPLETE, CUSTOMER,
        )
        assert moved is None
        assert type(err) is InvalidTransition

    def test_stale_from_status_writes_nothing(self, project):
        data = _create(project, "deliverable", WORKER)
        _move(project, data, DeliverableStatus.IN_PROGRESS, WORKER)
        before = _event_count()

        _, err = svc.transition_entity(
            project, data["id"], DeliverableStatus.NOT_STARTED, DeliverableStatus.IN_PROGRESS, WORKER,
        )
        assert isinstance(err, StaleState)
        assert _event_count() == before
        assert svc.get_entity(project.id, data["id"]).version == 2

    def test_expected_version_mismatch(self, project):
        data = _create(project, "deliverable", WORKER)
        _, err = svc.transition_entity(
            project, data["id"], data["status"], DeliverableStatus.IN_PROGRESS, WORKER,
            expected_version=7,
        )
        assert isinstance(err, StaleState)
        assert err.details == {"expected_version": 7, "current_version": 1}

    def test_unauthorized(self, project):
        data = _create(project, "deliverable", WORKER)
        _, err = svc.transition_entity(
            project, data["id"], data["status"], DeliverableStatus.IN_PROGRESS, VIEWER,
        )
        assert isinstance(err, Unauthorized)
        assert svc.get_entity(project.id, data["id"]).status == DeliverableStatus.NOT_STARTED

    def test_other_project_is_not_found(self, project):
        other = Project(name="Other", org_id="org-2")
        db.session.add(other)
        db.session.commit()
        data = _create(project, "deliverable", WORKER)
        with pytest.raises(NotFoundError):
            svc.transition_entity(other, data["id"], data["status"], DeliverableStatus.IN_PROGRESS, WORKER)
        with pytest.raises(NotFoundError):
            svc.get_history(other.id, data["id"])

    def test_module_switched_off_after_creation(self, project):
        data = _create(project, "timesheet", WORKER)
        settings_service.update_settings(project, {"timesheets_enabled": False})
        _, err = svc.transition_entity(project, data["id"], data["status"], SubmissionStatus.SUBMITTED, WORKER)
        assert isinstance(err, Unauthorized)

    def test_chargeable_expense_validated_by_customer(self, project):
        data = _create(project, "expense", WORKER, context_flags={"is_chargeable": True})
        data = _move(project, data, SubmissionStatus.SUBMITTED, WORKER)
        _, err = svc.transition_entity(
            project, data["id"], data["status"], SubmissionStatus.VALIDATED,
            Actor(user_id="u-sf", project_role=Role.SUPPLIER_FINANCE),
        )
        assert isinstance(err, Unauthorized)
        data = _move(project, data, SubmissionStatus.VALIDATED,
                     Actor(user_id="u-cf", project_role=Role.CUSTOMER_FINANCE))
        assert data["status"] == SubmissionStatus.VALIDATED


# ═════════════════════════════════════════════════════════════════════════════
# Signatures
# ═════════════════════════════════════════════════════════════════════════════


class TestSign:
    def test_baseline_dual_sign_off(self, project):
        data = _create(project, "baseline")

        status = svc.get_entity_approval_status(project, data["id"])
        assert status["needs_supplier"] is True
        assert status["needs_customer"] is True
        assert status["is_complete"] is False

        data = _sign(project, data, SUPPLIER)
        assert data["status"] == BaselineStatus.UNLOCKED
        assert data["supplier_signed_by"] == "u-sup"
        assert svc.get_entity_approval_status(project, data["id"])["sign_off_status"] == "Awaiting Customer"

        data = _sign(project, data, CUSTOMER)
        assert data["status"] == BaselineStatus.LOCKED
        assert data["locked"] is True
        assert data["version"] == 3

        status = svc.get_entity_approval_status(project, data["id"])
        assert status["sign_off_status"] == "Signed"
        assert status["is_complete"] is True

        history = svc.get_history(project.id, data["id"])
        assert [(e["action"], e["side"]) for e in history] == [
            ("create", None), ("sign", "supplier"), ("sign", "customer"),
        ]
        assert history[-1]["to_status"] == BaselineStatus.LOCKED

    def test_signing_twice_writes_nothing(self, project):
        data = _create(project, "baseline")
        first = _sign(project, data, SUPPLIER)
        before = _event_count()

        again = _sign(project, first, Actor(user_id="u-sup2", project_role=Role.SUPPLIER_FINANCE), "supplier")
        assert again["version"] == first["version"]
        assert again["supplier_signed_by"] == "u-sup"
        assert _event_count() == before

    def test_two_writers_from_one_snapshot(self, project):
        data = _create(project, "baseline")
        record = svc.get_record(project.id, data["id"])
        snapshot = record.to_entity()
        actor = resolve_effective_role(SUPPLIER, project)

        first, err = apply_signature(snapshot, Side.SUPPLIER, "u-sup")
        assert err is None
        second, err = apply_signature(snapshot, Side.SUPPLIER, "u-sup-other")
        assert err is None

        ok, err = svc._persist(project, record, snapshot, first, actor, action="sign", side="supplier")
        assert err is None
        assert ok["version"] == 2

        lost, err = svc._persist(project, record, snapshot, second, actor, action="sign", side="supplier")
        assert lost is None
        assert isinstance(err, StaleState)
        assert err.details == {"expected_version": 1, "current_version": 2}

        stored = svc.get_entity(project.id, data["id"])
        assert stored.supplier_signed_by == "u-sup"
        assert _actions(project, data["id"]) == ["create", "sign"]

    def test_second_signer_with_old_version(self, project):
        data = _create(project, "baseline")
        _sign(project, data, SUPPLIER)
        _, err = svc.sign_entity(project, data["id"], "customer", CUSTOMER, expected_version=1)
        assert isinstance(err, StaleState)

    def test_compare_and_set_is_single_shot(self, project):
        data = _create(project, "baseline")
        record = svc.get_record(project.id, data["id"])
        snapshot = record.to_entity()
        signed, _ = apply_signature(snapshot, Side.CUSTOMER, "u-cus")
        assert svc._compare_and_set(record, 1, signed) is True
        assert svc._compare_and_set(record, 1, signed) is False
        db.session.rollback()

    def test_customer_cannot_sign_supplier_side(self, project):
        data = _create(project, "baseline")
        _, err = svc.sign_entity(project, data["id"], "supplier", CUSTOMER)
        assert isinstance(err, Unauthorized)
        assert svc.get_entity(project.id, data["id"]).supplier_signed_at is None

    def test_same_side_twice_from_one_version(self, project):
        data = _create(project, "baseline")
        other = Actor(user_id="u-sup2", project_role=Role.SUPPLIER_FINANCE)

        won, err = svc.sign_entity(project, data["id"], "supplier", SUPPLIER, expected_version=1)
        assert err is None
        assert won["version"] == 2

        lost, err = svc.sign_entity(project, data["id"], "supplier", other, expected_version=1)
        assert lost is None
        assert isinstance(err, StaleState)
        assert err.details == {"expected_version": 1, "current_version": 2}

        stored = svc.get_entity(project.id, data["id"])
        assert stored.supplier_signed_by == "u-sup"
        assert _actions(project, data["id"]) == ["create", "sign"]

    @pytest.mark.parametrize("actor,side", [
        (VIEWER, "supplier"),
        (CUSTOMER, "supplier"),
        (WORKER, "supplier"),
    ])
    def test_already_signed_side_still_checks_the_signer(self, project, actor, side):
        data = _create(project, "baseline")
        _sign(project, data, SUPPLIER)
        before = _event_count()

        result, err = svc.sign_entity(project, data["id"], side, actor)
        assert result is None
        assert isinstance(err, Unauthorized)
        assert _event_count() == before

    def test_viewer_without_side_is_refused(self, project):
        data = _create(project, "baseline")
        _sign(project, data, SUPPLIER)
        _, err = svc.sign_entity(project, data["id"], None, VIEWER)
        assert isinstance(err, Unauthorized)

    def test_role_without_party_needs_explicit_refusal(self, project):
        data = _create(project, "baseline")
        _, err = svc.sign_entity(project, data["id"], None, VIEWER)
        assert isinstance(err, Unauthorized)

    def test_bad_side(self, project):
        data = _create(project, "baseline")
        with pytest.raises(ValidationError):
            svc.sign_entity(project, data["id"], "auditor", SUPPLIER)

    def test_locked_baseline_cannot_be_signed(self, project):
        settings_service.update_settings(project, {"baseline_approval": "supplier_only"})
        data = _sign(project, _create(project, "baseline"), SUPPLIER)
        assert data["locked"] is True
        _, err = svc.sign_entity(project, data["id"], "customer", CUSTOMER)
        assert type(err) is InvalidTransition

    def test_deliverable_not_signable_before_review(self, project):
        data = _create(project, "deliverable", WORKER)
        _, err = svc.sign_entity(project, data["id"], None, CUSTOMER)
        assert type(err) is InvalidTransition


# ═════════════════════════════════════════════════════════════════════════════
# Baseline reset
# ═════════════════════════════════════════════════════════════════════════════


class TestResetBaseline:
    def _locked(self, project):
        data = _sign(project, _create(project, "baseline"), SUPPLIER)
        data = _sign(project, data, CUSTOMER)
        assert data["locked"] is True
        return data

    def test_admin_reset(self, project):
        data = self._locked(project)
        reset, err = svc.reset_baseline(project, data["id"], ADMIN)
        assert err is None
        assert reset["status"] == BaselineStatus.UNLOCKED
        assert reset["locked"] is False
        assert reset["supplier_signed_at"] is None
        assert reset["customer_signed_by"] is None
        last = svc.get_history(project.id, data["id"])[-1]
        assert last["action"] == "baseline.reset"
        assert last["details"] == {"clear_signatures": True}
        assert last["actual_role"] == "System Admin"

    def test_reset_keeping_signatures(self, project):
        data = self._locked(project)
        reset, err = svc.reset_baseline(project, data["id"], ADMIN, clear_signatures=False)
        assert err is None
        assert reset["locked"] is False
        assert reset["supplier_signed_by"] == "u-sup"

    def test_customer_denied(self, project):
        data = self._locked(project)
        _, err = svc.reset_baseline(project, data["id"], CUSTOMER)
        assert isinstance(err, Unauthorized)

    def test_impersonating_admin_denied(self, project):
        data = self._locked(project)
        preview = Actor(user_id="u-admin", is_system_admin=True, impersonated_role=Role.VIEWER)
        _, err = svc.reset_baseline(project, data["id"], preview)
        assert isinstance(err, Unauthorized)
        assert svc.get_entity(project.id, data["id"]).locked is True

    def test_org_admin_of_other_org_denied(self, project):
        data = self._locked(project)
        outsider = Actor(user_id="u-oa", org_admin_of=frozenset({"org-9"}), project_role=Role.CUSTOMER_PM)
        _, err = svc.reset_baseline(project, data["id"], outsider)
        assert isinstance(err, Unauthorized)


# ═════════════════════════════════════════════════════════════════════════════
# Reads
# ═════════════════════════════════════════════════════════════════════════════


class TestReads:
    def test_capabilities(self, project):
        data = _create(project, "deliverable", WORKER)
        result = svc.get_capabilities(project, data["id"], WORKER)
        assert result["role"]["effective_role"] == "contributor"
        assert result["capabilities"]["can_edit"] is True
        assert result["capabilities"]["can_delete"] is True
        assert result["entity"]["id"] == data["id"]

    def test_capabilities_view_as(self, project):
        data = _create(project, "deliverable", WORKER)
        result = svc.get_capabilities(project, data["id"], ADMIN, impersonation="viewer")
        assert result["role"]["is_impersonating"] is True
        assert result["role"]["actual_role"]["identity"] == "system_admin"
        assert not any(result["capabilities"].values())

    def test_approval_status_can_sign(self, project):
        data = _create(project, "baseline")
        assert svc.get_entity_approval_status(project, data["id"], CUSTOMER)["can_sign"] is True
        assert svc.get_entity_approval_status(project, data["id"], VIEWER)["can_sign"] is False

    def test_missing_entity(self, project):
        with pytest.raises(NotFoundError):
            svc.get_entity(project.id, 999)

    def test_history_rejects_unknown_action(self, project):
        data = _create(project, "baseline")
        with pytest.raises(ValueError):
            write_event(
                project_id=project.id, entity_id=data["id"],
                entity_type="baseline", action="delete",
            )
        assert _actions(project, data["id"]) == ["create"]


# ═════════════════════════════════════════════════════════════════════════════
# Settings store
# ═════════════════════════════════════════════════════════════════════════════


class TestSettingsStore:
    def test_defaults(self, project):
        settings = settings_service.get_settings(project)
        assert settings["baseline_approval"] == "both"
        assert settings["expense_approval_authority"] == "conditional"
        assert settings["timesheets_enabled"] is True

    def test_legacy_values_normalised(self, project):
        project.timesheet_approval_authority = "supplier_pm"
        db.session.commit()
        assert settings_service.get_settings(project)["timesheet_approval_authority"] == "supplier_only"

    def test_update_validates(self, project):
        with pytest.raises(ValidationError) as exc:
            settings_service.update_settings(project, {"baseline_approval": "maybe", "kpis_enabled": "yes"})
        assert set(exc.value.details) == {"baseline_approval", "kpis_enabled"}

    def test_update_ignores_unknown_keys(self, project):
        settings = settings_service.update_settings(project, {"certificate_approval": "either", "colour": "red"})
        assert settings["certificate_approval"] == "either"
        assert "colour" not in settings

    def test_null_restores_default(self, project):
        settings_service.update_settings(project, {"certificate_approval": "either"})
        settings = settings_service.update_settings(project, {"certificate_approval": None})
        assert settings["certificate_approval"] == "both"

    def test_create_project_requires_name(self):
        with pytest.raises(ValidationError):
            settings_service.create_project({"org_id": "org-1"})

    def test_missing_project(self):
        with pytest.raises(NotFoundError):
            settings_service.get_project(404)
