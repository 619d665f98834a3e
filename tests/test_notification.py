"""
Notification service and API.
"""
import pytest

from wms_workflow.services.notification import NotificationService

BASE = "/api/v1"


class TestNotificationService:
    def test_direct_recipient(self):
        created = NotificationService.create(title="Hello", recipient_id="emp-1")
        assert [(n.recipient_id, n.notification_type) for n in created] == [("emp-1", "info")]

    def test_requires_a_recipient(self):
        with pytest.raises(ValueError):
            NotificationService.create(title="Nobody")

    def test_same_fingerprint_is_written_once(self):
        kwargs = dict(title="GRN stored", recipient_role="manager", reference_table="mrrv",
                      reference_id=42, dedupe_key="rule:1:event:abc")
        assert len(NotificationService.create(**kwargs)) == 1
        assert NotificationService.create(**kwargs) == []

    def test_role_rows_are_visible_to_role_holders(self, make_employee):
        make_employee("mgr-1", "manager")
        NotificationService.create(title="Direct", recipient_id="mgr-1")
        NotificationService.create(title="Role", recipient_role="auditor")

        items, total = NotificationService.list_for_recipient("mgr-1")

        assert total == 1
        assert items[0].title == "Direct"

    def test_unassigned_role_row_reaches_later_holder(self, make_employee):
        NotificationService.create(title="For managers", recipient_role="manager")
        make_employee("mgr-1", "manager")

        items, _ = NotificationService.list_for_recipient("mgr-1")

        assert [n.title for n in items] == ["For managers"]


class TestNotificationApi:
    def test_list_and_read_flow(self, client):
        NotificationService.create(title="One", recipient_id="emp-1")
        NotificationService.create(title="Two", recipient_id="emp-1")
        NotificationService.create(title="Other", recipient_id="emp-2")
        headers = {"X-User": "emp-1"}

        listing = client.get(f"{BASE}/notifications", headers=headers).get_json()
        assert listing["total"] == 2
        assert client.get(f"{BASE}/notifications/unread-count", headers=headers).get_json() == {"unread_count": 2}

        nid = listing["items"][0]["id"]
        res = client.patch(f"{BASE}/notifications/{nid}/read", headers=headers)
        assert res.get_json()["is_read"] is True
        assert client.get(f"{BASE}/notifications?unread=true", headers=headers).get_json()["total"] == 1

        assert client.post(f"{BASE}/notifications/mark-all-read", headers=headers).get_json() == {"marked": 1}
        assert client.get(f"{BASE}/notifications/unread-count", headers=headers).get_json() == {"unread_count": 0}

    def test_recipient_required(self, client):
        assert client.get(f"{BASE}/notifications").status_code == 422

    def test_mark_missing_notification(self, client):
        assert client.patch(f"{BASE}/notifications/999/read").status_code == 404
