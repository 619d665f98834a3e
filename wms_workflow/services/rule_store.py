"""
Rule Store: persisted Workflow / WorkflowRule / WorkflowTemplate / WorkflowExecutionLog access.

Centralises all ORM queries and mutations for the automation configuration
so that blueprints remain HTTP-only.  Every write:
    - validates the condition tree and action list (ConfigurationError with
      field-level details, so a malformed rule never reaches runtime), and
    - invalidates the affected rule cache bucket(s).

Input dicts accept snake_case keys; the camelCase spellings used by the rule
builder UI (``triggerEvent``, ``stopOnMatch``, ``sortOrder``, ...) are
accepted too.
"""

from __future__ import annotations

import logging

from wms_workflow.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from wms_workflow.models import db
from wms_workflow.models.workflow import Workflow, WorkflowExecutionLog, WorkflowRule, WorkflowTemplate
from wms_workflow.services.action_executor import ActionRegistry
from wms_workflow.services.condition_evaluator import parse_condition
from wms_workflow.services.rule_cache import RuleCache
from wms_workflow.utils.cron import CronSchedule, validate_cron
from wms_workflow.utils.helpers import utc_now

logger = logging.getLogger(__name__)

_ALIASES = {
    "entity_type": "entityType",
    "is_active": "isActive",
    "trigger_event": "triggerEvent",
    "stop_on_match": "stopOnMatch",
    "sort_order": "sortOrder",
    "cron_expression": "cronExpression",
}


def _pick(data: dict, key: str, default=None):
    if key in data:
        return data[key]
    alias = _ALIASES.get(key)
    if alias and alias in data:
        return data[alias]
    return default


def _has(data: dict, key: str) -> bool:
    return key in data or _ALIASES.get(key, "") in data


def _int_field(data: dict, key: str, errors: dict, default: int = 0) -> int:
    """Read an integer field; a non-integer value is reported under ``key``."""
    value = _pick(data, key)
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        errors[key] = f"{key} must be an integer"
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        errors[key] = f"{key} must be an integer"
        return default


class RuleStore:
    def __init__(self, cache: RuleCache, registry: ActionRegistry, *,
                 max_depth: int = 5, max_nodes: int = 200):
        self.cache = cache
        self.registry = registry
        self.max_depth = max_depth
        self.max_nodes = max_nodes

    # ── validation ────────────────────────────────────────────────────────

    def validate_rule_config(self, conditions, actions, cron_expression=None) -> None:
        """Raise ConfigurationError listing every invalid part of a rule."""
        errors: dict[str, str] = {}
        try:
            parse_condition(conditions, max_depth=self.max_depth, max_nodes=self.max_nodes)
        except ConfigurationError as exc:
            errors.update(exc.details)

        if actions is None:
            actions = []
        if not isinstance(actions, list):
            errors["actions"] = "actions must be a list"
        else:
            for i, descriptor in enumerate(actions):
                errors.update(self.registry.collect_errors(descriptor, f"actions[{i}]"))

        if cron_expression:
            cron_error = validate_cron(cron_expression)
            if cron_error:
                errors["cron_expression"] = cron_error

        if errors:
            raise ConfigurationError("Invalid rule configuration", details=errors)

    # ── workflows ─────────────────────────────────────────────────────────

    @staticmethod
    def list_workflows(entity_type: str | None = None, include_inactive: bool = True) -> list[Workflow]:
        q = Workflow.query
        if entity_type:
            q = q.filter_by(entity_type=entity_type)
        if not include_inactive:
            q = q.filter_by(is_active=True)
        return q.order_by(Workflow.priority.desc(), Workflow.id).all()

    @staticmethod
    def get_workflow(workflow_id: int) -> Workflow:
        workflow = db.session.get(Workflow, workflow_id)
        if not workflow:
            raise NotFoundError(resource="Workflow", resource_id=workflow_id)
        return workflow

    def create_workflow(self, data: dict) -> Workflow:
        name = (data.get("name") or "").strip()
        entity_type = (_pick(data, "entity_type") or "").strip()
        errors = {}
        if not name:
            errors["name"] = "name is required"
        if not entity_type:
            errors["entity_type"] = "entity_type is required"
        priority = _int_field(data, "priority", errors)
        if errors:
            raise ValidationError("Invalid workflow", details=errors)

        workflow = Workflow(
            name=name,
            description=data.get("description", ""),
            entity_type=entity_type,
            is_active=bool(_pick(data, "is_active", True)),
            priority=priority,
        )
        db.session.add(workflow)
        db.session.commit()
        self.cache.invalidate()
        logger.info("Workflow created id=%s entity_type=%s", workflow.id, entity_type,
                    extra={"workflow_id": workflow.id})
        return workflow

    def update_workflow(self, workflow_id: int, data: dict) -> Workflow:
        workflow = self.get_workflow(workflow_id)
        errors = {}
        priority = _int_field(data, "priority", errors)
        if "name" in data and not (data.get("name") or "").strip():
            errors["name"] = "name is required"
        if errors:
            raise ValidationError("Invalid workflow", details=errors)

        if "name" in data:
            workflow.name = data["name"].strip()
        if "description" in data:
            workflow.description = data.get("description") or ""
        if _has(data, "entity_type"):
            workflow.entity_type = (_pick(data, "entity_type") or "").strip() or workflow.entity_type
        if _has(data, "is_active"):
            workflow.is_active = bool(_pick(data, "is_active"))
        if "priority" in data:
            workflow.priority = priority
        db.session.commit()
        self.cache.invalidate()
        logger.info("Workflow updated id=%s", workflow.id, extra={"workflow_id": workflow.id})
        return workflow

    def delete_workflow(self, workflow_id: int) -> dict:
        """Hard-delete an empty workflow; soft-disable one that still has rules."""
        workflow = self.get_workflow(workflow_id)
        if workflow.rules.count():
            workflow.is_active = False
            db.session.commit()
            outcome = "deactivated"
        else:
            db.session.delete(workflow)
            db.session.commit()
            outcome = "deleted"
        self.cache.invalidate()
        logger.info("Workflow %s id=%s", outcome, workflow_id, extra={"workflow_id": workflow_id})
        return {"id": workflow_id, "result": outcome}

    # ── rules ─────────────────────────────────────────────────────────────

    def list_rules(self, workflow_id: int, include_inactive: bool = True) -> list[WorkflowRule]:
        self.get_workflow(workflow_id)
        q = WorkflowRule.query.filter_by(workflow_id=workflow_id)
        if not include_inactive:
            q = q.filter_by(is_active=True)
        return q.order_by(WorkflowRule.sort_order, WorkflowRule.id).all()

    @staticmethod
    def get_rule(rule_id: int, workflow_id: int | None = None) -> WorkflowRule:
        rule = db.session.get(WorkflowRule, rule_id)
        if not rule or (workflow_id is not None and rule.workflow_id != workflow_id):
            raise NotFoundError(resource="WorkflowRule", resource_id=rule_id)
        return rule

    def create_rule(self, workflow_id: int, data: dict) -> WorkflowRule:
        self.get_workflow(workflow_id)
        name = (data.get("name") or "").strip()
        trigger_event = (_pick(data, "trigger_event") or "").strip()
        errors = {}
        if not name:
            errors["name"] = "name is required"
        if not trigger_event:
            errors["trigger_event"] = "trigger_event is required"
        sort_order = _int_field(data, "sort_order", errors)
        if errors:
            raise ValidationError("Invalid rule", details=errors)

        conditions = data.get("conditions") or {}
        actions = data.get("actions") or []
        cron_expression = (_pick(data, "cron_expression") or "").strip() or None
        self.validate_rule_config(conditions, actions, cron_expression)

        rule = WorkflowRule(
            workflow_id=workflow_id,
            name=name,
            trigger_event=trigger_event,
            conditions=conditions,
            actions=actions,
            is_active=bool(_pick(data, "is_active", True)),
            stop_on_match=bool(_pick(data, "stop_on_match", False)),
            sort_order=sort_order,
            cron_expression=cron_expression,
            next_run_at=CronSchedule(cron_expression).next_run(utc_now()) if cron_expression else None,
        )
        db.session.add(rule)
        db.session.commit()
        self.cache.invalidate(trigger_event)
        logger.info("WorkflowRule created id=%s trigger=%s", rule.id, trigger_event,
                    extra={"rule_id": rule.id, "workflow_id": workflow_id})
        return rule

    def update_rule(self, workflow_id: int, rule_id: int, data: dict) -> WorkflowRule:
        rule = self.get_rule(rule_id, workflow_id)
        old_trigger = rule.trigger_event

        conditions = data["conditions"] if "conditions" in data else rule.conditions
        actions = data["actions"] if "actions" in data else rule.actions
        cron_expression = rule.cron_expression
        if _has(data, "cron_expression"):
            cron_expression = (_pick(data, "cron_expression") or "").strip() or None
        self.validate_rule_config(conditions or {}, actions or [], cron_expression)
        errors = {}
        sort_order = _int_field(data, "sort_order", errors)
        if errors:
            raise ValidationError("Invalid rule", details=errors)

        if "name" in data:
            name = (data.get("name") or "").strip()
            if not name:
                raise ValidationError("Invalid rule", details={"name": "name is required"})
            rule.name = name
        if _has(data, "trigger_event"):
            trigger_event = (_pick(data, "trigger_event") or "").strip()
            if not trigger_event:
                raise ValidationError("Invalid rule", details={"trigger_event": "trigger_event is required"})
            rule.trigger_event = trigger_event
        rule.conditions = conditions or {}
        rule.actions = actions or []
        if _has(data, "is_active"):
            rule.is_active = bool(_pick(data, "is_active"))
        if _has(data, "stop_on_match"):
            rule.stop_on_match = bool(_pick(data, "stop_on_match"))
        if _has(data, "sort_order"):
            rule.sort_order = sort_order
        if cron_expression != rule.cron_expression:
            rule.cron_expression = cron_expression
            rule.next_run_at = CronSchedule(cron_expression).next_run(utc_now()) if cron_expression else None
        db.session.commit()

        self.cache.invalidate(old_trigger)
        if rule.trigger_event != old_trigger:
            self.cache.invalidate(rule.trigger_event)
        logger.info("WorkflowRule updated id=%s", rule.id, extra={"rule_id": rule.id})
        return rule

    def delete_rule(self, workflow_id: int, rule_id: int) -> WorkflowRule:
        """Soft delete: the row stays so in-flight events and logs keep their rule."""
        rule = self.get_rule(rule_id, workflow_id)
        rule.is_active = False
        db.session.commit()
        self.cache.invalidate(rule.trigger_event)
        logger.info("WorkflowRule deactivated id=%s", rule.id, extra={"rule_id": rule.id})
        return rule

    # ── templates ─────────────────────────────────────────────────────────

    @staticmethod
    def list_templates(category: str | None = None) -> list[WorkflowTemplate]:
        q = WorkflowTemplate.query
        if category:
            q = q.filter_by(category=category)
        return q.order_by(WorkflowTemplate.category, WorkflowTemplate.name).all()

    @staticmethod
    def get_template(template_id: int) -> WorkflowTemplate:
        template = db.session.get(WorkflowTemplate, template_id)
        if not template:
            raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
        return template

    def install_template(self, template_id: int) -> Workflow:
        """Create a Workflow plus every template rule in one commit.

        The new workflow is active with priority 10 and is named
        ``"<template workflow name> (from template)"``.  Rules keep the
        template order as ``sort_order``.  A template rule that no longer
        validates (unknown action type, bad condition) aborts the install
        with ConfigurationError and nothing is written.
        """
        template = self.get_template(template_id)
        body = template.template or {}
        target = body.get("workflow") or {}
        rules = body.get("rules") or []

        errors = {}
        for i, raw in enumerate(rules):
            if not isinstance(raw, dict) or not (raw.get("name") or "").strip() \
                    or not (_pick(raw, "trigger_event") or "").strip():
                errors[f"rules[{i}]"] = "name and triggerEvent are required"
                continue
            try:
                self.validate_rule_config(raw.get("conditions") or {}, raw.get("actions") or [],
                                          _pick(raw, "cron_expression"))
            except ConfigurationError as exc:
                errors.update({f"rules[{i}].{path}": msg for path, msg in exc.details.items()})
        if errors:
            raise ConfigurationError(f"Template {template.name!r} cannot be installed", details=errors)

        workflow = Workflow(
            name=f"{target.get('name') or template.name} (from template)",
            description=template.description or "",
            entity_type=_pick(target, "entity_type") or "*",
            is_active=True,
            priority=10,
        )
        db.session.add(workflow)
        db.session.flush()

        now = utc_now()
        for idx, raw in enumerate(rules):
            cron_expression = _pick(raw, "cron_expression") or None
            db.session.add(WorkflowRule(
                workflow_id=workflow.id,
                name=raw["name"].strip(),
                trigger_event=_pick(raw, "trigger_event").strip(),
                conditions=raw.get("conditions") or {},
                actions=raw.get("actions") or [],
                is_active=True,
                stop_on_match=False,
                sort_order=idx,
                cron_expression=cron_expression,
                next_run_at=CronSchedule(cron_expression).next_run(now) if cron_expression else None,
            ))
        template.install_count = (template.install_count or 0) + 1
        db.session.commit()

        self.cache.invalidate()
        logger.info("Template %r installed as workflow id=%s (%d rules)", template.name, workflow.id,
                    len(rules), extra={"workflow_id": workflow.id})
        return workflow

    # ── runtime reads ─────────────────────────────────────────────────────

    @staticmethod
    def load_active_rules(trigger_event: str) -> list[tuple[Workflow, WorkflowRule]]:
        """Cache loader: active rules of active workflows for one trigger."""
        rows = (
            db.session.query(Workflow, WorkflowRule)
            .join(WorkflowRule, WorkflowRule.workflow_id == Workflow.id)
            .filter(
                WorkflowRule.trigger_event == trigger_event,
                WorkflowRule.is_active.is_(True),
                Workflow.is_active.is_(True),
            )
            .all()
        )
        return [(wf, rule) for wf, rule in rows]

    # ── execution logs ────────────────────────────────────────────────────

    def list_rule_logs(self, rule_id: int, page: int = 1, per_page: int = 50,
                       workflow_id: int | None = None) -> dict:
        self.get_rule(rule_id, workflow_id)
        q = WorkflowExecutionLog.query.filter_by(rule_id=rule_id)
        total = q.count()
        items = (
            q.order_by(WorkflowExecutionLog.created_at.desc(), WorkflowExecutionLog.id.desc())
            .offset((page - 1) * per_page).limit(per_page).all()
        )
        return {
            "items": [log.to_dict() for log in items],
            "total": total,
            "page": page,
            "per_page": per_page,
            "pages": (total + per_page - 1) // per_page if per_page else 0,
        }

    @staticmethod
    def already_fired(rule_id: int, event_id: str | None) -> bool:
        """Idempotency ledger lookup: did this rule already match this event?"""
        if not event_id:
            return False
        return db.session.query(
            WorkflowExecutionLog.query.filter_by(
                rule_id=rule_id, event_id=event_id, matched=True,
            ).exists()
        ).scalar()

    @staticmethod
    def write_log(**fields) -> WorkflowExecutionLog:
        log = WorkflowExecutionLog(**fields)
        db.session.add(log)
        db.session.commit()
        return log
