"""
Workflow automation models: rule configuration and execution audit trail.

Models:
    - Workflow: groups automation rules for one entity type
    - WorkflowRule: trigger event + condition tree + ordered action list
    - WorkflowTemplate: installable workflow + rules bundle
    - WorkflowExecutionLog: append-only outcome row per (rule, event)

Condition trees and action lists are stored as JSON documents on the rule row.
They are validated by ``RuleStore`` before they are written and parsed into
typed structures by the rule cache, never evaluated from raw JSON at runtime.
"""

from datetime import datetime, timezone

from wms_workflow.models import db
from wms_workflow.utils.helpers import isoformat

# ── Constants ────────────────────────────────────────────────────────────────

STOP_ON_MATCH_SCOPES = {"workflow", "global"}


class Workflow(db.Model):
    """
    Container for rules that target one entity type (mrrv, mirv, jo, ...).

    Never hard-deleted while rules reference it; ``is_active=False`` is the
    soft-disable switch.  ``priority`` orders workflows that share a trigger
    event (higher first).
    """

    __tablename__ = "workflows"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    entity_type = db.Column(db.String(50), nullable=False, index=True,
                            comment="Document type this workflow automates: mrrv, mirv, jo, ...")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=0,
                         comment="Tie-break across workflows sharing a trigger; higher runs first")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    rules = db.relationship(
        "WorkflowRule", back_populates="workflow", lazy="dynamic",
        order_by="WorkflowRule.sort_order",
    )

    def to_dict(self, include_rules=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "entity_type": self.entity_type,
            "is_active": self.is_active,
            "priority": self.priority,
            "rule_count": self.rules.count(),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }
        if include_rules:
            d["rules"] = [r.to_dict() for r in self.rules.order_by(
                WorkflowRule.sort_order, WorkflowRule.id)]
        return d

    def __repr__(self):
        return f"<Workflow {self.id}: {self.name} ({self.entity_type})>"


class WorkflowRule(db.Model):
    """
    One automation rule.

    Evaluated read-only at runtime.  Deletion is a soft delete
    (``is_active=False``) so an in-flight event never loses its rule.
    ``sort_order`` need not be contiguous; ties are broken by ``id``.
    """

    __tablename__ = "workflow_rules"

    id = db.Column(db.Integer, primary_key=True)
    workflow_id = db.Column(
        db.Integer, db.ForeignKey("workflows.id"), nullable=False, index=True,
    )
    name = db.Column(db.String(200), nullable=False)
    trigger_event = db.Column(db.String(100), nullable=False, index=True,
                              comment="Event type key, e.g. document:status_changed")
    conditions = db.Column(db.JSON, default=dict,
                           comment="Condition tree: leaf {field, op, value} or group {operator, conditions}")
    actions = db.Column(db.JSON, default=list,
                        comment="Ordered list of {type, params} action descriptors")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    stop_on_match = db.Column(db.Boolean, nullable=False, default=False)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    # Scheduled (cron) rules
    cron_expression = db.Column(db.String(100), nullable=True,
                                comment="5-field cron; when set the rule also runs on schedule")
    next_run_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    workflow = db.relationship("Workflow", back_populates="rules")

    def to_dict(self):
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "name": self.name,
            "trigger_event": self.trigger_event,
            "conditions": self.conditions or {},
            "actions": self.actions or [],
            "is_active": self.is_active,
            "stop_on_match": self.stop_on_match,
            "sort_order": self.sort_order,
            "cron_expression": self.cron_expression,
            "next_run_at": isoformat(self.next_run_at),
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<WorkflowRule {self.id}: {self.name} on {self.trigger_event}>"


class WorkflowTemplate(db.Model):
    """
    Pre-built workflow that can be installed as a new Workflow with its rules.

    ``template`` holds ``{"workflow": {name, entityType}, "rules": [...]}``
    where each rule is ``{name, triggerEvent, conditions, actions,
    cronExpression?}``.  Installing never changes the template beyond
    ``install_count``.
    """

    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(50), nullable=False, default="general", index=True)
    source = db.Column(db.String(20), nullable=False, default="system",
                       comment="system (seeded) | custom")
    template = db.Column(db.JSON, nullable=False, default=dict)
    install_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "source": self.source,
            "template": self.template or {},
            "install_count": self.install_count,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name}>"


class WorkflowExecutionLog(db.Model):
    """
    Append-only audit row: one per (rule, event) evaluation outcome.

    Also the idempotency ledger: a matched row for (rule_id, event_id)
    means the rule already fired for that event.
    """

    __tablename__ = "workflow_execution_logs"

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("workflow_rules.id"), nullable=False, index=True)
    event_id = db.Column(db.String(64), nullable=True, index=True)
    event_type = db.Column(db.String(100), nullable=False)
    entity_type = db.Column(db.String(50), default="")
    entity_id = db.Column(db.String(64), default="")

    matched = db.Column(db.Boolean, nullable=False, default=False)
    success = db.Column(db.Boolean, nullable=False, default=True)
    actions_run = db.Column(db.JSON, default=list,
                            comment="Per-action results: [{type, status, error?, duration_ms}]")
    actions_failed = db.Column(db.Integer, nullable=False, default=0)
    error = db.Column(db.Text, nullable=True)
    event_data = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           index=True)

    __table_args__ = (
        db.Index("ix_wf_exec_rule_event", "rule_id", "event_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "matched": self.matched,
            "success": self.success,
            "actions_run": self.actions_run or [],
            "actions_failed": self.actions_failed,
            "error": self.error,
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<WorkflowExecutionLog rule={self.rule_id} event={self.event_id} matched={self.matched}>"
