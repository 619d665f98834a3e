"""
Approval endpoints: sequential chains and parallel groups over HTTP.
"""
import pytest

BASE = "/api/v1"


@pytest.fixture()
def setup_mi(make_levels, make_employee):
    make_levels("mi", [(0, None, "warehouse_supervisor", 24), (10000, None, "warehouse_manager", 48)])
    make_employee("sup-1", "warehouse_supervisor")
    make_employee("mgr-1", "warehouse_manager")


def _submit(client, doc_id="MI-1", amount=15000, user="clerk-1"):
    return client.post(f"{BASE}/approvals/submit", headers={"X-User": user},
                       json={"document_type": "mi", "document_id": doc_id, "amount": amount})


def _decide(client, user, action, doc_id="MI-1", **extra):
    return client.post(f"{BASE}/approvals/mi/{doc_id}/decide", headers={"X-User": user},
                       json={"action": action, **extra})


class TestSequentialApi:
    def test_chain_preview(self, client, setup_mi):
        res = client.get(f"{BASE}/approvals/chain-preview?document_type=mi&amount=20000")
        body = res.get_json()
        assert res.status_code == 200
        assert [lv["approver_role"] for lv in body["levels"]] == ["warehouse_supervisor", "warehouse_manager"]

    def test_chain_preview_bad_amount(self, client, setup_mi):
        res = client.get(f"{BASE}/approvals/chain-preview?document_type=mi&amount=abc")
        assert res.status_code == 422

    def test_submit_approve_approve(self, client, setup_mi):
        res = _submit(client)
        assert res.status_code == 201
        assert res.get_json()["approver_role"] == "warehouse_supervisor"

        first = _decide(client, "sup-1", "approve")
        assert first.status_code == 200
        assert first.get_json()["next_level"] == 2

        final = _decide(client, "mgr-1", "approve", comments="ok")
        assert final.get_json()["status"] == "approved"

        steps = client.get(f"{BASE}/approvals/mi/MI-1/steps").get_json()
        assert [(s["level"], s["status"]) for s in steps] == [(1, "approved"), (2, "approved")]

    def test_submit_validation(self, client, setup_mi):
        res = client.post(f"{BASE}/approvals/submit", json={"document_type": "mi"})
        assert res.status_code == 422
        assert set(res.get_json()["details"]) == {"document_id", "amount"}

    def test_duplicate_submit_conflicts(self, client, setup_mi):
        _submit(client)
        res = _submit(client)
        assert res.status_code == 409
        assert res.get_json()["current_status"] == "pending"

    def test_wrong_role_is_forbidden(self, client, setup_mi):
        _submit(client)
        res = _decide(client, "mgr-1", "approve")
        assert res.status_code == 403
        assert res.get_json()["required_role"] == "warehouse_supervisor"

    def test_decide_without_user(self, client, setup_mi):
        _submit(client)
        res = client.post(f"{BASE}/approvals/mi/MI-1/decide", json={"action": "approve"})
        assert res.status_code == 422

    def test_decide_unknown_document(self, client, setup_mi):
        assert _decide(client, "sup-1", "approve", doc_id="MI-404").status_code == 404

    def test_reject_then_decide_again_conflicts(self, client, setup_mi):
        _submit(client)
        assert _decide(client, "sup-1", "reject", comments="no").get_json()["status"] == "rejected"
        assert _decide(client, "sup-1", "approve").status_code == 409

    def test_pending_for_user(self, client, setup_mi):
        _submit(client)
        body = client.get(f"{BASE}/approvals/pending", headers={"X-User": "sup-1"}).get_json()
        assert [s["document_id"] for s in body["steps"]] == ["MI-1"]
        assert body["parallel_groups"] == []


class TestParallelApi:
    @pytest.fixture()
    def inspectors(self, make_employee):
        make_employee("qc-1", "qc_inspector")
        make_employee("qc-2", "qc_inspector")

    def _create(self, client, mode="all"):
        return client.post(f"{BASE}/parallel-approvals", headers={"X-User": "planner"}, json={
            "document_type": "jo", "document_id": "JO-1", "mode": mode,
            "approver_ids": ["qc-1", "qc-2"], "sla_hours": 8,
        })

    def test_create_respond_resolve(self, client, inspectors):
        res = self._create(client)
        assert res.status_code == 201
        gid = res.get_json()["id"]

        waiting = client.get(f"{BASE}/parallel-approvals/pending", headers={"X-User": "qc-2"}).get_json()
        assert [g["id"] for g in waiting] == [gid]

        first = client.post(f"{BASE}/parallel-approvals/{gid}/respond", headers={"X-User": "qc-1"},
                            json={"decision": "approved"})
        assert first.get_json()["status"] == "pending"

        second = client.post(f"{BASE}/parallel-approvals/{gid}/respond", headers={"X-User": "qc-2"},
                             json={"decision": "approved"})
        assert second.get_json()["status"] == "approved"
        assert len(second.get_json()["responses"]) == 2

        groups = client.get(f"{BASE}/parallel-approvals/jo/JO-1").get_json()
        assert [g["status"] for g in groups] == ["approved"]

    def test_respond_after_resolution_conflicts(self, client, inspectors):
        gid = self._create(client, mode="any").get_json()["id"]
        client.post(f"{BASE}/parallel-approvals/{gid}/respond", headers={"X-User": "qc-1"},
                    json={"decision": "approved"})

        res = client.post(f"{BASE}/parallel-approvals/{gid}/respond", headers={"X-User": "qc-2"},
                          json={"decision": "rejected"})

        assert res.status_code == 409
        assert res.get_json()["current_status"] == "approved"

    def test_create_with_unknown_approver(self, client, inspectors):
        res = client.post(f"{BASE}/parallel-approvals", json={
            "document_type": "jo", "document_id": "JO-1", "approver_ids": ["qc-1", "ghost"],
        })
        assert res.status_code == 422
        assert res.get_json()["details"]["approver_ids"] == ["ghost"]

    def test_respond_unknown_group(self, client, inspectors):
        res = client.post(f"{BASE}/parallel-approvals/999/respond", headers={"X-User": "qc-1"},
                          json={"decision": "approved"})
        assert res.status_code == 404

    def test_create_with_non_numeric_sla_hours(self, client, inspectors):
        res = client.post(f"{BASE}/parallel-approvals", json={
            "document_type": "jo", "document_id": "JO-1", "mode": "all",
            "approver_ids": ["qc-1", "qc-2"], "sla_hours": "soon",
        })
        assert res.status_code == 422
        assert "sla_hours" in res.get_json()["details"]
