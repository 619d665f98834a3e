"""
Sequential multi-level approval chains.

Tests cover:
  - Chain preview and submit (first step, SLA clock, document status)
  - Level advance with a fresh SLA, final approval, rejection halting the chain
  - Duplicate submission, terminal chains, stale document status
  - Approver authorization: own role, admin, delegation scope
  - Pending queues per user
"""
from datetime import timedelta

import pytest

from wms_workflow.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from wms_workflow.models import db
from wms_workflow.models.approval import ApprovalChain, ApprovalStep
from wms_workflow.models.directory import DelegationRule
from wms_workflow.models.notification import Notification
from wms_workflow.services.approval_service import ApprovalService
from wms_workflow.utils.helpers import as_utc, utc_now


@pytest.fixture()
def two_levels(make_levels, make_employee):
    """MI approvals: supervisor up to any amount, manager from 10k up."""
    make_levels("mi", [(0, None, "warehouse_supervisor", 24), (10000, None, "warehouse_manager", 48)])
    make_employee("sup-1", "warehouse_supervisor")
    make_employee("mgr-1", "warehouse_manager")
    make_employee("clerk-1", "warehouse_clerk")


@pytest.fixture()
def approvals(engine):
    return engine.approvals


def steps_of(doc_id, doc_type="mi"):
    return ApprovalStep.query.filter_by(document_type=doc_type, document_id=doc_id) \
        .order_by(ApprovalStep.level).all()


def assert_due_in(step, hours):
    expected = utc_now() + timedelta(hours=hours)
    assert abs(as_utc(step.sla_due_date) - expected) < timedelta(minutes=1)


# ═════════════════════════════════════════════════════════════════════════
# CHAIN PREVIEW
# ═════════════════════════════════════════════════════════════════════════

class TestChainPreview:
    def test_small_amount_gets_one_level(self, approvals, two_levels):
        assert approvals.get_approval_chain("mi", 5000) == [
            {"level": 1, "approver_role": "warehouse_supervisor", "sla_hours": 24},
        ]

    def test_large_amount_gets_both_levels_in_order(self, approvals, two_levels):
        levels = approvals.get_approval_chain("mi", 25000)
        assert [(lv["level"], lv["approver_role"]) for lv in levels] == [
            (1, "warehouse_supervisor"), (2, "warehouse_manager"),
        ]

    def test_bracket_upper_bound_is_inclusive(self, approvals, make_levels):
        make_levels("jo", [(0, 1000, "supervisor", 8)])
        assert len(approvals.get_approval_chain("jo", 1000)) == 1
        assert approvals.get_approval_chain("jo", 1000.01) == []

    def test_unknown_type_has_no_levels(self, approvals, two_levels):
        assert approvals.get_approval_chain("grn", 100) == []


# ═════════════════════════════════════════════════════════════════════════
# SUBMIT
# ═════════════════════════════════════════════════════════════════════════

class TestSubmit:
    def test_submit_creates_first_step(self, engine, approvals, two_levels, captured_events):
        result = approvals.submit_for_approval("mi", "MI-1", 15000, "clerk-1")

        assert result["level"] == 1
        assert result["approver_role"] == "warehouse_supervisor"
        assert result["total_levels"] == 2
        assert result["sla_hours"] == 24

        steps = steps_of("MI-1")
        assert [(s.level, s.status) for s in steps] == [(1, "pending")]
        assert_due_in(steps[0], 24)

        chain = db.session.get(ApprovalChain, result["chain_id"])
        assert (chain.status, chain.current_level, chain.total_levels) == ("pending", 1, 2)
        assert engine.documents.get_current_status("mi", "MI-1") == "pending_approval"

        notif = Notification.query.filter_by(recipient_id="sup-1").one()
        assert notif.title == "MI Pending Approval"
        assert notif.notification_type == "approval"

        requested = [e for e in captured_events if e.type == "approval:requested"]
        assert len(requested) == 1
        assert requested[0].payload["approverRole"] == "warehouse_supervisor"
        assert requested[0].payload["totalLevels"] == 2
        assert requested[0].entity_id == "MI-1"

    def test_duplicate_submit_is_rejected(self, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)
        with pytest.raises(StateConflictError):
            approvals.submit_for_approval("mi", "MI-1", 15000)
        assert ApprovalChain.query.count() == 1

    def test_database_refuses_second_pending_chain(self, approvals, two_levels, monkeypatch):
        approvals.submit_for_approval("mi", "MI-1", 15000)
        # another worker process does not share the in-process lock or its read
        monkeypatch.setattr(ApprovalService, "_open_chain", staticmethod(lambda *args: None))

        with pytest.raises(StateConflictError):
            approvals.submit_for_approval("mi", "MI-1", 15000)

        assert ApprovalChain.query.filter_by(document_id="MI-1", status="pending").count() == 1
        assert len(steps_of("MI-1")) == 1

    def test_no_configured_level(self, approvals, two_levels):
        with pytest.raises(ValidationError):
            approvals.submit_for_approval("grn", "G-1", 100)

    def test_non_numeric_amount(self, approvals, two_levels):
        with pytest.raises(ValidationError) as exc:
            approvals.submit_for_approval("mi", "MI-1", "lots")
        assert "amount" in exc.value.details


# ═════════════════════════════════════════════════════════════════════════
# DECIDE
# ═════════════════════════════════════════════════════════════════════════

class TestProcessApproval:
    def test_approving_level_one_creates_level_two(self, approvals, two_levels, captured_events):
        approvals.submit_for_approval("mi", "MI-1", 15000, "clerk-1")

        result = approvals.process_approval("mi", "MI-1", "approve", "sup-1", "looks fine")

        assert result["status"] == "pending"
        assert result["next_level"] == 2
        assert result["next_approver_role"] == "warehouse_manager"
        first, second = steps_of("MI-1")
        assert (first.status, first.decided_by, first.comments) == ("approved", "sup-1", "looks fine")
        assert second.status == "pending"
        assert_due_in(second, 48)
        assert "approval:level_approved" in [e.type for e in captured_events]
        assert Notification.query.filter_by(recipient_id="mgr-1").count() == 1

    def test_final_level_approves_chain_and_document(self, engine, approvals, two_levels, captured_events):
        approvals.submit_for_approval("mi", "MI-1", 15000, "clerk-1")
        approvals.process_approval("mi", "MI-1", "approve", "sup-1")

        result = approvals.process_approval("mi", "MI-1", "approved", "mgr-1")

        assert result == {"status": "approved", "chain_id": result["chain_id"], "approved_level": 2}
        chain = db.session.get(ApprovalChain, result["chain_id"])
        assert chain.status == "approved"
        assert chain.completed_at is not None
        assert engine.documents.get_current_status("mi", "MI-1") == "approved"
        assert Notification.query.filter_by(recipient_id="clerk-1", title="MI Approved").count() == 1
        assert "approval:approved" in [e.type for e in captured_events]

    def test_single_level_chain_approves_directly(self, engine, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-2", 500)
        result = approvals.process_approval("mi", "MI-2", "approve", "sup-1")

        assert result["status"] == "approved"
        assert engine.documents.get_current_status("mi", "MI-2") == "approved"

    def test_rejection_halts_chain(self, engine, approvals, two_levels, captured_events):
        approvals.submit_for_approval("mi", "MI-1", 15000, "clerk-1")

        result = approvals.process_approval("mi", "MI-1", "reject", "sup-1", "wrong bin")

        assert result["status"] == "rejected"
        assert result["rejected_level"] == 1
        assert [(s.level, s.status) for s in steps_of("MI-1")] == [(1, "rejected"), (2, "skipped")]
        assert engine.documents.get_current_status("mi", "MI-1") == "rejected"

        rejected = [e for e in captured_events if e.type == "approval:rejected"]
        assert rejected[0].payload["rejectedAtLevel"] == 1
        assert rejected[0].payload["reason"] == "wrong bin"

        with pytest.raises(StateConflictError):
            approvals.process_approval("mi", "MI-1", "approve", "mgr-1")

    def test_rejected_document_can_be_resubmitted(self, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)
        approvals.process_approval("mi", "MI-1", "reject", "sup-1")

        result = approvals.submit_for_approval("mi", "MI-1", 9000)

        assert result["total_levels"] == 1
        assert ApprovalChain.query.count() == 2

    def test_invalid_action(self, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)
        with pytest.raises(ValidationError):
            approvals.process_approval("mi", "MI-1", "maybe", "sup-1")

    def test_never_submitted(self, approvals, two_levels):
        with pytest.raises(NotFoundError):
            approvals.process_approval("mi", "MI-404", "approve", "sup-1")

    def test_document_moved_out_of_pending_approval(self, engine, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)
        engine.documents.set_status("mi", "MI-1", "cancelled")

        with pytest.raises(StateConflictError) as exc:
            approvals.process_approval("mi", "MI-1", "approve", "sup-1")
        assert exc.value.current_status == "cancelled"

    def test_step_decided_elsewhere_is_a_conflict(self, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)
        ApprovalStep.query.filter_by(document_id="MI-1", level=1).update({"status": "approved"})
        db.session.commit()

        with pytest.raises(StateConflictError):
            approvals.process_approval("mi", "MI-1", "approve", "sup-1")


# ═════════════════════════════════════════════════════════════════════════
# AUTHORIZATION
# ═════════════════════════════════════════════════════════════════════════

class TestAuthorization:
    def test_wrong_role_is_refused(self, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)

        with pytest.raises(AuthorizationError) as exc:
            approvals.process_approval("mi", "MI-1", "approve", "mgr-1")
        assert exc.value.required_role == "warehouse_supervisor"
        assert steps_of("MI-1")[0].status == "pending"

    def test_unknown_and_inactive_users_are_refused(self, approvals, two_levels, make_employee):
        make_employee("sup-gone", "warehouse_supervisor", active=False)
        approvals.submit_for_approval("mi", "MI-1", 15000)

        for user in ("ghost", "sup-gone"):
            with pytest.raises(AuthorizationError):
                approvals.process_approval("mi", "MI-1", "approve", user)

    def test_admin_may_decide_any_level(self, approvals, two_levels, make_employee):
        make_employee("root", "admin")
        approvals.submit_for_approval("mi", "MI-1", 15000)

        assert approvals.process_approval("mi", "MI-1", "approve", "root")["status"] == "pending"

    @pytest.mark.parametrize("scope,allowed", [("all", True), ("mi", True), ("jo", False)])
    def test_delegation_scope(self, approvals, two_levels, scope, allowed):
        now = utc_now()
        db.session.add(DelegationRule(delegator_id="sup-1", delegate_id="clerk-1", scope=scope,
                                      start_date=now - timedelta(days=1), end_date=now + timedelta(days=1)))
        db.session.commit()

        assert approvals.is_authorized_approver("clerk-1", "warehouse_supervisor", "mi") is allowed

    def test_expired_delegation(self, approvals, two_levels):
        now = utc_now()
        db.session.add(DelegationRule(delegator_id="sup-1", delegate_id="clerk-1", scope="all",
                                      start_date=now - timedelta(days=5), end_date=now - timedelta(days=1)))
        db.session.commit()

        assert approvals.is_authorized_approver("clerk-1", "warehouse_supervisor", "mi") is False


# ═════════════════════════════════════════════════════════════════════════
# PENDING QUEUES
# ═════════════════════════════════════════════════════════════════════════

class TestPendingForUser:
    def test_role_holders_see_their_level(self, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)

        sup = approvals.get_pending_approvals_for_user("sup-1")
        mgr = approvals.get_pending_approvals_for_user("mgr-1")

        assert [s["document_id"] for s in sup["steps"]] == ["MI-1"]
        assert mgr["steps"] == []

    def test_admin_sees_everything(self, approvals, two_levels, make_employee):
        make_employee("root", "admin")
        approvals.submit_for_approval("mi", "MI-1", 15000)
        approvals.submit_for_approval("mi", "MI-2", 200)

        assert len(approvals.get_pending_approvals_for_user("root")["steps"]) == 2

    def test_delegate_sees_delegated_steps(self, approvals, two_levels):
        now = utc_now()
        db.session.add(DelegationRule(delegator_id="mgr-1", delegate_id="clerk-1", scope="mi",
                                      start_date=now - timedelta(hours=1), end_date=now + timedelta(hours=1)))
        db.session.commit()
        approvals.submit_for_approval("mi", "MI-1", 15000)
        approvals.process_approval("mi", "MI-1", "approve", "sup-1")

        steps = approvals.get_pending_approvals_for_user("clerk-1")["steps"]

        assert [(s["document_id"], s["level"]) for s in steps] == [("MI-1", 2)]

    def test_unknown_user_sees_nothing(self, approvals, two_levels):
        approvals.submit_for_approval("mi", "MI-1", 15000)
        assert approvals.get_pending_approvals_for_user("ghost") == {"steps": [], "parallel_groups": []}
