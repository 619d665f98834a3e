"""
Parallel (consensus) approval groups.

Tests cover:
  - resolve_status truth table for both modes
  - mode=all and mode=any end to end
  - Double response, non-nominated approver, response after resolution
  - Group creation validation and exclusivity with sequential chains
  - Racing responses and the database guard on pending groups
"""
import threading

import pytest

from wms_workflow.core.exceptions import NotFoundError, StateConflictError, ValidationError
from wms_workflow.models import db
from wms_workflow.models.approval import ParallelApprovalGroup, ParallelApprovalResponse
from wms_workflow.models.notification import Notification
from wms_workflow.services.parallel_approval_service import ParallelApprovalService, resolve_status
from wms_workflow.utils.helpers import as_utc, utc_now


@pytest.fixture()
def approvers(make_employee):
    for emp_id in ("qc-1", "qc-2", "qc-3"):
        make_employee(emp_id, "qc_inspector")
    make_employee("planner", "planner")
    return ["qc-1", "qc-2", "qc-3"]


@pytest.fixture()
def parallel(engine):
    return engine.parallel_approvals


@pytest.mark.parametrize("mode,expected,approved,rejected,status", [
    ("all", 3, 0, 0, "pending"),
    ("all", 3, 2, 0, "pending"),
    ("all", 3, 3, 0, "approved"),
    ("all", 3, 2, 1, "rejected"),
    ("all", 3, 0, 1, "rejected"),
    ("any", 3, 1, 0, "approved"),
    ("any", 3, 0, 2, "pending"),
    ("any", 3, 0, 3, "rejected"),
    ("any", 3, 1, 2, "approved"),
])
def test_resolve_status(mode, expected, approved, rejected, status):
    assert resolve_status(mode, expected, approved, rejected) == status


class TestModeAll:
    def test_pending_until_everyone_approved(self, parallel, approvers, captured_events):
        group = parallel.create_group("jo", "JO-9", 1, "all", approvers, created_by_id="planner")

        parallel.respond(group.id, "qc-1", "approved")
        group = parallel.respond(group.id, "qc-2", "approved")
        assert group.status == "pending"
        assert group.completed_at is None

        group = parallel.respond(group.id, "qc-3", "approved")
        assert group.status == "approved"
        assert as_utc(group.completed_at) <= utc_now()

        completed = [e for e in captured_events if e.type == "approval:parallel_completed"]
        assert len(completed) == 1
        assert completed[0].payload == {"groupId": group.id, "documentType": "jo", "documentId": "JO-9",
                                        "level": 1, "status": "approved"}
        assert Notification.query.filter_by(recipient_id="planner").count() == 1

    def test_single_rejection_rejects(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "all", approvers)

        parallel.respond(group.id, "qc-1", "approved")
        group = parallel.respond(group.id, "qc-2", "reject", comments="seal broken")

        assert group.status == "rejected"
        with pytest.raises(StateConflictError, match="already resolved"):
            parallel.respond(group.id, "qc-3", "approved")


class TestModeAny:
    def test_first_approval_wins(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "any", approvers)

        group = parallel.respond(group.id, "qc-2", "approve")

        assert group.status == "approved"
        assert group.completed_at is not None
        with pytest.raises(StateConflictError, match="already resolved"):
            parallel.respond(group.id, "qc-1", "approved")
        assert ParallelApprovalResponse.query.count() == 1

    def test_all_rejections_reject(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "any", approvers[:2])

        group = parallel.respond(group.id, "qc-1", "rejected")
        assert group.status == "pending"
        group = parallel.respond(group.id, "qc-2", "rejected")
        assert group.status == "rejected"


class TestResponses:
    def test_double_response_is_refused(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "all", approvers)
        parallel.respond(group.id, "qc-1", "approved")

        with pytest.raises(StateConflictError, match="already responded"):
            parallel.respond(group.id, "qc-1", "rejected")
        assert ParallelApprovalResponse.query.count() == 1

    def test_non_nominated_approver(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "all", approvers[:2])
        with pytest.raises(StateConflictError, match="not nominated"):
            parallel.respond(group.id, "qc-3", "approved")

    def test_invalid_decision(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "all", approvers)
        with pytest.raises(ValidationError):
            parallel.respond(group.id, "qc-1", "abstain")

    def test_unknown_group(self, parallel, approvers):
        with pytest.raises(NotFoundError):
            parallel.respond(4242, "qc-1", "approved")

    def test_pending_for_approver_excludes_answered(self, parallel, approvers):
        first = parallel.create_group("jo", "JO-1", 1, "all", approvers)
        second = parallel.create_group("jo", "JO-2", 1, "all", approvers[:2])
        parallel.respond(first.id, "qc-1", "approved")

        assert [g.id for g in parallel.get_pending_for_approver("qc-1")] == [second.id]
        assert [g.id for g in parallel.get_pending_for_approver("qc-3")] == [first.id]

    def test_evaluate_completion_on_resolved_group_is_a_no_op(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "any", approvers)
        parallel.respond(group.id, "qc-1", "approved")

        again = parallel.evaluate_group_completion(group.id)

        assert again.status == "approved"

    def test_status_lists_groups_of_document(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 2, "any", approvers)
        parallel.respond(group.id, "qc-1", "rejected")

        groups = parallel.get_group_status("jo", "JO-9")

        assert [g.approval_level for g in groups] == [2]
        assert groups[0].to_dict()["responses"][0]["decision"] == "rejected"


class TestCreateGroup:
    def test_notifies_each_approver_and_emits(self, parallel, approvers, captured_events):
        group = parallel.create_group("jo", "JO-9", 1, "all", approvers, sla_hours=4)

        assert sorted(n.recipient_id for n in Notification.query.all()) == approvers
        assert group.sla_due_date is not None
        requested = [e for e in captured_events if e.type == "approval:parallel_requested"]
        assert requested[0].payload["approverIds"] == approvers
        assert requested[0].payload["mode"] == "all"

    def test_duplicate_approver_ids_collapse(self, parallel, approvers):
        group = parallel.create_group("jo", "JO-9", 1, "all", ["qc-1", "qc-1", "qc-2"])
        assert group.approver_ids == ["qc-1", "qc-2"]

    @pytest.mark.parametrize("kwargs,field", [
        ({"mode": "majority"}, "mode"),
        ({"level": 0}, "level"),
        ({"approver_ids": []}, "approver_ids"),
        ({"approver_ids": ["qc-1", "nobody"]}, "approver_ids"),
    ])
    def test_validation(self, parallel, approvers, kwargs, field):
        args = {"level": 1, "mode": "all", "approver_ids": approvers, **kwargs}
        with pytest.raises(ValidationError) as exc:
            parallel.create_group("jo", "JO-9", args["level"], args["mode"], args["approver_ids"])
        assert field in exc.value.details

    def test_inactive_approver_is_refused(self, parallel, approvers, make_employee):
        make_employee("qc-old", "qc_inspector", active=False)
        with pytest.raises(ValidationError, match="qc-old"):
            parallel.create_group("jo", "JO-9", 1, "all", ["qc-1", "qc-old"])

    def test_second_pending_group_is_refused(self, parallel, approvers):
        parallel.create_group("jo", "JO-9", 1, "all", approvers)
        with pytest.raises(StateConflictError):
            parallel.create_group("jo", "JO-9", 2, "any", approvers)

    def test_database_refuses_second_pending_group(self, parallel, approvers, monkeypatch):
        parallel.create_group("jo", "JO-9", 1, "all", approvers)
        monkeypatch.setattr(ParallelApprovalService, "_pending_group", staticmethod(lambda *args: None))

        with pytest.raises(StateConflictError):
            parallel.create_group("jo", "JO-9", 2, "any", approvers)

        assert ParallelApprovalGroup.query.filter_by(document_id="JO-9", status="pending").count() == 1

    def test_new_group_allowed_after_resolution(self, parallel, approvers):
        first = parallel.create_group("jo", "JO-9", 1, "any", approvers)
        parallel.respond(first.id, "qc-1", "approved")

        second = parallel.create_group("jo", "JO-9", 2, "all", approvers)

        assert second.status == "pending"

    def test_pending_chain_blocks_group_and_vice_versa(self, engine, parallel, approvers, make_levels):
        make_levels("jo", [(0, None, "planner", 24)])
        engine.approvals.submit_for_approval("jo", "JO-1", 100)
        with pytest.raises(StateConflictError):
            parallel.create_group("jo", "JO-1", 1, "all", approvers)

        parallel.create_group("jo", "JO-2", 1, "all", approvers)
        with pytest.raises(StateConflictError):
            engine.approvals.submit_for_approval("jo", "JO-2", 100)


class TestConcurrentResponses:
    def test_simultaneous_deciding_responses_resolve_once(self, app, engine, parallel, approvers,
                                                          captured_events):
        group_id = parallel.create_group("jo", "JO-9", 1, "any", approvers[:2]).id
        engine.cache.get_active_rules("approval:parallel_completed")
        barrier = threading.Barrier(2)
        outcomes = {}

        def respond(approver_id):
            with app.app_context():
                barrier.wait()
                try:
                    parallel.respond(group_id, approver_id, "approved")
                    outcomes[approver_id] = "resolved"
                except StateConflictError:
                    outcomes[approver_id] = "conflict"

        threads = [threading.Thread(target=respond, args=(a,)) for a in approvers[:2]]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert sorted(outcomes.values()) == ["conflict", "resolved"]
        completed = [e for e in captured_events if e.type == "approval:parallel_completed"]
        assert len(completed) == 1
        assert ParallelApprovalResponse.query.filter_by(group_id=group_id).count() == 1
        assert db.session.get(ParallelApprovalGroup, group_id, populate_existing=True).status == "approved"
