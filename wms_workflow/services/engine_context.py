"""
Automation Engine: one object that wires the event bus, rule engine,
action executor and approval state machines for a Flask app.

Stored in ``app.extensions["automation"]``; blueprints and scheduled jobs
reach every collaborator through it.

Usage:
    engine = AutomationEngine(app)
    engine.publish(SystemEvent(type="grn:created", entity_type="mrrv", entity_id="42"))

    # a deployment that owns real document tables
    engine = AutomationEngine(app, document_gateway=MyGateway())
"""

from __future__ import annotations

import logging

from flask import Flask, current_app

from wms_workflow.integrations.document_gateway import DocumentGateway, SqlDocumentGateway
from wms_workflow.integrations.webhook_gateway import WebhookGateway
from wms_workflow.services.action_executor import ActionExecutor, ActionRegistry
from wms_workflow.services.action_handlers import register_builtin_actions
from wms_workflow.services.approval_service import ApprovalService
from wms_workflow.services.event_bus import WILDCARD, EventBus, SystemEvent
from wms_workflow.services.parallel_approval_service import ParallelApprovalService
from wms_workflow.services.rule_cache import RuleCache
from wms_workflow.services.rule_engine import RuleEngine
from wms_workflow.services.rule_store import RuleStore
from wms_workflow.services.scheduled_rule_runner import ScheduledRuleRunner
from wms_workflow.services.sla_monitor import SlaMonitor
from wms_workflow.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class AutomationEngine:
    def __init__(self, app: Flask, document_gateway: DocumentGateway | None = None,
                 registry: ActionRegistry | None = None):
        cfg = app.config
        max_depth = cfg.get("RULE_MAX_CONDITION_DEPTH", 5)
        max_nodes = cfg.get("RULE_MAX_CONDITION_NODES", 200)

        self.app = app
        self.documents = document_gateway or SqlDocumentGateway()
        self.webhooks = WebhookGateway(timeout=cfg.get("WEBHOOK_TIMEOUT_SECONDS", 10))
        self.locks = KeyedLock()

        self.registry = register_builtin_actions(
            registry.copy() if registry is not None else ActionRegistry(),
            max_depth=max_depth, max_nodes=max_nodes,
        )
        self.executor = ActionExecutor(
            self.registry, app,
            mode=cfg.get("ACTION_EXECUTION_MODE", "pool"),
            timeout=cfg.get("ACTION_TIMEOUT_SECONDS", 10.0),
            max_workers=cfg.get("ACTION_WORKER_COUNT", 8),
        )

        self.cache = RuleCache(RuleStore.load_active_rules, max_depth=max_depth, max_nodes=max_nodes)
        self.store = RuleStore(self.cache, self.registry, max_depth=max_depth, max_nodes=max_nodes)
        self.rules = RuleEngine(
            self.cache, self.store, self.executor, self,
            stop_scope=cfg.get("RULE_STOP_ON_MATCH_SCOPE", "workflow"),
            log_non_matches=cfg.get("RULE_LOG_NON_MATCHES", False),
            event_timeout=cfg.get("EVENT_TIMEOUT_SECONDS", 60.0),
        )

        self.bus = EventBus(app, mode=cfg.get("EVENT_DISPATCH_MODE", "async"),
                            worker_count=cfg.get("EVENT_WORKER_COUNT", 4))
        self.bus.subscribe(WILDCARD, self.rules.on_event, name="rule-engine")

        self.parallel_approvals = ParallelApprovalService(self.publish, self.locks)
        self.approvals = ApprovalService(self.documents, self.publish, self.locks,
                                         parallel=self.parallel_approvals)
        self.sla_monitor = SlaMonitor(
            self.publish,
            dedupe_minutes=cfg.get("SLA_BREACH_DEDUPE_MINUTES", 60),
            escalation_role=cfg.get("SLA_ESCALATION_ROLE"),
        )
        self.scheduled_rules = ScheduledRuleRunner(self.store, self.executor, self)

        app.extensions["automation"] = self
        logger.info(
            "Automation engine ready: dispatch=%s actions=%s (%d types)",
            self.bus.mode, self.executor.mode, len(self.registry.types()),
        )

    def publish(self, event: SystemEvent | dict) -> SystemEvent | None:
        """Entry point for document services.  Never raises."""
        return self.bus.publish(event)

    def shutdown(self) -> None:
        self.bus.shutdown()
        self.executor.shutdown()


def get_engine() -> AutomationEngine:
    return current_app.extensions["automation"]
