"""
Action registry, executor modes and the built-in action handlers.
"""
import threading
import smtplib
from unittest.mock import MagicMock, patch

import pytest
import requests

from wms_workflow.core.exceptions import ConfigurationError
from wms_workflow.integrations.webhook_gateway import WebhookGateway
from wms_workflow.models.notification import Notification
from wms_workflow.models.scheduling import EmailLog
from wms_workflow.services.action_executor import ActionContext, ActionExecutor, ActionRegistry
from wms_workflow.services.email_service import TEMPLATES
from wms_workflow.services.event_bus import SystemEvent


@pytest.fixture()
def event():
    return SystemEvent(type="grn:created", entity_type="mrrv", entity_id="7", action="create",
                       payload={"to": "received", "amount": 2500})


# ═════════════════════════════════════════════════════════════════════════
# REGISTRY
# ═════════════════════════════════════════════════════════════════════════

class TestRegistry:
    def test_decorator_registers(self):
        registry = ActionRegistry()

        @registry.action_handler("echo")
        def echo(params, ctx):
            return params

        assert registry.types() == ["echo"]
        assert registry.get("echo") is echo

    def test_collect_errors(self):
        registry = ActionRegistry()
        registry.register("needs_x", lambda p, c: None,
                          validator=lambda p: {} if "x" in p else {"x": "x is required"})

        assert registry.collect_errors({"type": "needs_x", "params": {"x": 1}}) == {}
        assert registry.collect_errors({"type": "needs_x", "params": {}}, "actions[2]") == {
            "actions[2].params.x": "x is required",
        }
        assert "actions[0].type" in registry.collect_errors({"type": "nope"})
        assert registry.collect_errors({"type": "needs_x", "params": [1]}) == {
            "actions[0].params": "params must be an object",
        }
        assert registry.collect_errors("needs_x") == {"actions[0]": "action must be an object with type and params"}

    def test_collect_errors_non_string_type(self):
        registry = ActionRegistry()
        registry.register("create_notification", lambda p, c: None)

        errors = registry.collect_errors({"type": ["create_notification"]}, "actions[1]")

        assert list(errors) == ["actions[1].type"]

    def test_validate_raises(self):
        with pytest.raises(ConfigurationError):
            ActionRegistry().validate({"type": "anything"})

    def test_copy_is_independent(self):
        registry = ActionRegistry()
        registry.register("a", lambda p, c: None)
        clone = registry.copy()
        clone.register("b", lambda p, c: None)

        assert registry.types() == ["a"]
        assert clone.types() == ["a", "b"]


# ═════════════════════════════════════════════════════════════════════════
# EXECUTOR
# ═════════════════════════════════════════════════════════════════════════

class TestExecutor:
    def test_inline_success(self, event):
        registry = ActionRegistry()
        registry.register("echo", lambda params, ctx: {"entity": ctx.event.entity_id, **params})
        executor = ActionExecutor(registry, mode="inline")

        result = executor.run({"type": "echo", "params": {"x": 1}}, ActionContext(event=event, engine=None))

        assert result.ok is True
        assert result.output == {"entity": "7", "x": 1}
        assert result.to_dict()["status"] == "success"

    def test_unknown_type_is_a_failed_result(self, event):
        result = ActionExecutor(ActionRegistry(), mode="inline").run(
            {"type": "ghost"}, ActionContext(event=event, engine=None))

        assert result.ok is False
        assert "ghost" in result.error

    def test_handler_exception_is_captured(self, event):
        registry = ActionRegistry()

        def boom(params, ctx):
            raise RuntimeError("disk on fire")

        registry.register("boom", boom)
        result = ActionExecutor(registry, mode="inline").run({"type": "boom"}, ActionContext(event, None))

        assert result.ok is False
        assert result.error == "disk on fire"
        assert result.to_dict()["status"] == "failed"

    def test_pool_mode_runs_handler(self, event):
        registry = ActionRegistry()
        registry.register("thread", lambda p, c: {"thread": threading.current_thread().name})
        executor = ActionExecutor(registry, mode="pool", timeout=5)
        try:
            result = executor.run({"type": "thread"}, ActionContext(event, None))
        finally:
            executor.shutdown()

        assert result.ok is True
        assert result.output["thread"].startswith("wms-action")

    def test_pool_mode_times_out_hung_handler(self, event):
        release = threading.Event()
        registry = ActionRegistry()
        registry.register("hang", lambda p, c: release.wait(5))
        executor = ActionExecutor(registry, mode="pool", timeout=0.05)
        try:
            result = executor.run({"type": "hang"}, ActionContext(event, None))
        finally:
            release.set()
            executor.shutdown()

        assert result.ok is False
        assert result.error.startswith("timeout")

    def test_action_chained_from_pool_thread_runs_inline(self, event):
        registry = ActionRegistry()
        executor = ActionExecutor(registry, mode="pool", timeout=2, max_workers=1)

        def outer(params, ctx):
            inner = executor.run({"type": "inner"}, ActionContext(ctx.event, None))
            return {"inner_ok": inner.ok, "inner_thread": inner.output.get("thread"),
                    "thread": threading.current_thread().name}

        registry.register("outer", outer)
        registry.register("inner", lambda p, c: {"thread": threading.current_thread().name})
        try:
            result = executor.run({"type": "outer"}, ActionContext(event, None))
        finally:
            executor.shutdown()

        assert result.ok is True
        assert result.output["inner_ok"] is True
        assert result.output["inner_thread"] == result.output["thread"]
        assert ActionExecutor.on_worker_thread() is False


# ═════════════════════════════════════════════════════════════════════════
# BUILT-IN HANDLERS
# ═════════════════════════════════════════════════════════════════════════

class TestBuiltinActions:
    def run(self, engine, event, descriptor, rule_id=1):
        return engine.executor.run(descriptor, ActionContext(event=event, engine=engine, rule_id=rule_id))

    def test_registered_types(self, engine):
        assert set(engine.registry.types()) >= {
            "create_notification", "change_status", "send_email", "webhook",
            "submit_for_approval", "create_parallel_approval", "conditional_branch",
        }

    def test_create_notification_direct_recipient(self, engine, event):
        result = self.run(engine, event, {"type": "create_notification", "params": {
            "recipientId": "emp-1", "title": "Check GRN"}})

        assert result.ok is True
        notif = Notification.query.one()
        assert (notif.recipient_id, notif.title, notif.reference_table) == ("emp-1", "Check GRN", "mrrv")

    def test_create_notification_dedupes_same_rule_and_event(self, engine, event):
        descriptor = {"type": "create_notification", "params": {"recipientRole": "manager"}}
        self.run(engine, event, descriptor)
        second = self.run(engine, event, descriptor)

        assert second.output == {"created": 0}
        assert Notification.query.count() == 1

    def test_conditional_branch_true(self, engine, event):
        result = self.run(engine, event, {"type": "conditional_branch", "params": {
            "condition": {"field": "payload.amount", "op": "gt", "value": 1000},
            "trueActions": [{"type": "create_notification", "params": {"recipientRole": "finance"}}],
            "falseActions": [{"type": "create_notification", "params": {"recipientRole": "clerk"}}],
        }})

        assert result.ok is True
        assert result.output["branch"] == "true"
        assert [n.recipient_role for n in Notification.query.all()] == ["finance"]

    def test_conditional_branch_false_with_no_actions(self, engine, event):
        result = self.run(engine, event, {"type": "conditional_branch", "params": {
            "condition": {"field": "payload.amount", "op": "gt", "value": 100000},
            "trueActions": [{"type": "create_notification", "params": {"recipientRole": "finance"}}],
        }})

        assert result.ok is True
        assert result.output == {"branch": "false", "actions": []}
        assert Notification.query.count() == 0

    def test_conditional_branch_depth_limit(self, engine, event):
        ctx = ActionContext(event=event, engine=engine, depth=5)
        result = engine.executor.run({"type": "conditional_branch", "params": {
            "condition": {"field": "type", "op": "eq", "value": "grn:created"}}}, ctx)

        assert result.ok is False
        assert "nested deeper" in result.error

    def test_submit_for_approval_reads_amount_from_payload(self, engine, event, make_levels):
        make_levels("mrrv", [(0, 10000, "warehouse_supervisor", 24)])
        engine.documents.register("mrrv", "7", "submitted")

        result = self.run(engine, event, {"type": "submit_for_approval", "params": {}})

        assert result.ok is True
        assert result.output["approver_role"] == "warehouse_supervisor"
        assert engine.documents.get_current_status("mrrv", "7") == "pending_approval"

    def test_submit_for_approval_twice_is_skipped(self, engine, event, make_levels):
        make_levels("mrrv", [(0, 10000, "warehouse_supervisor", 24)])
        self.run(engine, event, {"type": "submit_for_approval", "params": {"amount": 10}})

        again = self.run(engine, event, {"type": "submit_for_approval", "params": {"amount": 10}})

        assert again.ok is True
        assert "skipped" in again.output

    def test_submit_for_approval_without_amount_fails(self, engine):
        bare = SystemEvent(type="grn:created", entity_type="mrrv", entity_id="8")
        result = self.run(engine, bare, {"type": "submit_for_approval", "params": {}})

        assert result.ok is False
        assert "numeric amount" in result.error


class TestWebhookAction:
    @pytest.fixture()
    def http_session(self, engine):
        mock_session = MagicMock(spec=requests.Session)
        original = engine.webhooks
        engine.webhooks = WebhookGateway(session=mock_session, timeout=3)
        yield mock_session
        engine.webhooks = original

    def test_posts_event_with_event_id_header(self, engine, event, http_session):
        http_session.post.return_value = MagicMock(ok=True, status_code=204)

        result = engine.executor.run({"type": "webhook", "params": {"url": "https://hooks.local/grn"}},
                                     ActionContext(event=event, engine=engine))

        assert result.ok is True
        args, kwargs = http_session.post.call_args
        assert args == ("https://hooks.local/grn",)
        assert kwargs["headers"]["X-Event-Id"] == event.id
        assert kwargs["json"]["entityId"] == "7"
        assert kwargs["timeout"] == 3
        assert result.output["status_code"] == 204

    def test_non_2xx_fails_the_action(self, engine, event, http_session):
        http_session.post.return_value = MagicMock(ok=False, status_code=500, text="upstream down")

        result = engine.executor.run({"type": "webhook", "params": {"url": "https://hooks.local/grn"}},
                                     ActionContext(event=event, engine=engine))

        assert result.ok is False
        assert "HTTP 500" in result.error

    def test_network_error_fails_the_action(self, engine, event, http_session):
        http_session.post.side_effect = requests.ConnectionError("refused")

        result = engine.executor.run({"type": "webhook", "params": {"url": "https://hooks.local/grn",
                                                                    "body": {"k": "v"}}},
                                     ActionContext(event=event, engine=engine))

        assert result.ok is False
        assert "refused" in result.error


class TestSendEmailAction:
    descriptor = {"type": "send_email", "params": {"templateCode": "document_status_changed",
                                                   "to": "role:warehouse_manager"}}

    def test_role_recipients_are_logged_without_smtp(self, engine, event, make_employee):
        make_employee("mgr-1", "warehouse_manager", email="mgr1@wms.local")
        make_employee("mgr-2", "warehouse_manager", email="mgr2@wms.local")
        make_employee("mgr-3", "warehouse_manager", email="mgr3@wms.local", active=False)

        result = engine.executor.run(self.descriptor, ActionContext(event=event, engine=engine, rule_id=9))

        assert result.ok is True
        assert result.output == {"sent": 2}
        logs = EmailLog.query.order_by(EmailLog.id).all()
        assert [log.recipient_email for log in logs] == ["mgr1@wms.local", "mgr2@wms.local"]
        assert {(log.status, log.rule_id, log.event_id) for log in logs} == {("sent", 9, event.id)}
        assert logs[0].subject == "[WMS] mrrv 7 is now received"

    def test_smtp_failure_fails_the_action(self, app, engine, event, make_employee, monkeypatch):
        make_employee("mgr-1", "warehouse_manager", email="mgr1@wms.local")
        monkeypatch.setitem(app.config, "MAIL_SERVER", "smtp.wms.local")

        with patch("wms_workflow.services.email_service.smtplib.SMTP",
                   side_effect=smtplib.SMTPConnectError(421, "busy")):
            result = engine.executor.run(self.descriptor, ActionContext(event=event, engine=engine))

        assert result.ok is False
        assert "1 of 1 email(s) failed" in result.error
        assert EmailLog.query.one().status == "failed"

    def test_unknown_template_is_a_configuration_error(self, engine):
        errors = engine.registry.collect_errors(
            {"type": "send_email", "params": {"templateCode": "nope", "to": "a@b.c"}}, "actions[0]")
        assert "actions[0].params.templateCode" in errors

    def test_template_escapes_html_and_keeps_unknown_placeholders(self):
        subject, text, markup = TEMPLATES["approval_decided"].render(
            {"entityType": "mi", "entityId": "<MI-1>", "status": "approved"})

        assert subject == "[WMS] mi <MI-1> approved"
        assert "&lt;MI-1&gt;" in markup
        assert "<MI-1>" in text

        _, text, _ = TEMPLATES["sla_breached"].render({"documentType": "mi"})
        assert "{documentId}" in text
