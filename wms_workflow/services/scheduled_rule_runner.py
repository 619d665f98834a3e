"""
Scheduled Rule Runner: time-triggered rules.

A WorkflowRule with ``cron_expression`` set runs on the clock instead of on
an event.  Each due rule gets a synthetic ``scheduled:rule_triggered``
event, runs its actions through the shared executor, writes one execution
log row and has ``next_run_at`` advanced to its next cron slot.
"""

from __future__ import annotations

import logging
from datetime import datetime

from wms_workflow.models import db
from wms_workflow.models.workflow import Workflow, WorkflowRule
from wms_workflow.services.action_executor import ActionContext
from wms_workflow.services.event_bus import SystemEvent
from wms_workflow.utils.cron import CronSchedule
from wms_workflow.utils.helpers import as_utc, utc_now

logger = logging.getLogger(__name__)

SCHEDULED_EVENT_TYPE = "scheduled:rule_triggered"


class ScheduledRuleRunner:
    def __init__(self, store, executor, engine=None):
        self.store = store
        self.executor = executor
        self.engine = engine

    def initialize(self, now: datetime | None = None) -> int:
        """Fill ``next_run_at`` on scheduled rules that have none."""
        now = as_utc(now) or utc_now()
        rules = WorkflowRule.query.filter(
            WorkflowRule.is_active.is_(True),
            WorkflowRule.cron_expression.isnot(None),
            WorkflowRule.next_run_at.is_(None),
        ).all()
        for rule in rules:
            rule.next_run_at = CronSchedule(rule.cron_expression).next_run(now)
        if rules:
            db.session.commit()
            logger.info("Initialised next_run_at for %d scheduled rule(s)", len(rules))
        return len(rules)

    def process_due_rules(self, now: datetime | None = None) -> dict:
        now = as_utc(now) or utc_now()
        due = (
            db.session.query(WorkflowRule, Workflow)
            .join(Workflow, WorkflowRule.workflow_id == Workflow.id)
            .filter(
                WorkflowRule.is_active.is_(True),
                WorkflowRule.cron_expression.isnot(None),
                WorkflowRule.next_run_at.isnot(None),
                WorkflowRule.next_run_at <= now,
                Workflow.is_active.is_(True),
            )
            .order_by(WorkflowRule.next_run_at, WorkflowRule.id)
            .all()
        )
        summary = {"due": len(due), "succeeded": 0, "failed": 0, "rule_ids": []}
        if not due:
            return summary
        logger.debug("%d scheduled rule(s) due", len(due), extra={"job_name": "scheduled_rules"})

        for rule, workflow in due:
            rule_id = rule.id
            try:
                failed, results, event = self._run(rule, workflow, now)
            except Exception:
                db.session.rollback()
                logger.exception("Scheduled rule %s failed", rule_id,
                                 extra={"rule_id": rule_id, "job_name": "scheduled_rules"})
                summary["failed"] += 1
                continue

            summary["rule_ids"].append(rule_id)
            summary["failed" if failed else "succeeded"] += 1
            logger.info("Scheduled rule %s ran: %d action(s), %d failed", rule_id, len(results), len(failed),
                        extra={"rule_id": rule_id, "event_id": event.id, "job_name": "scheduled_rules"})
        return summary

    def _run(self, rule: WorkflowRule, workflow: Workflow, now: datetime):
        rule_id, cron_expression = rule.id, rule.cron_expression
        event = SystemEvent(
            type=SCHEDULED_EVENT_TYPE,
            entity_type=workflow.entity_type,
            entity_id=str(rule_id),
            action="scheduled_execution",
            timestamp=now.isoformat(),
            payload={"ruleName": rule.name, "cronExpression": cron_expression},
        )
        actions = list(rule.actions or [])
        ctx = ActionContext(event=event, engine=self.engine, rule_id=rule_id, workflow_id=workflow.id)
        results = [self.executor.run(descriptor, ctx) for descriptor in actions]
        failed = [r for r in results if not r.ok]

        self.store.write_log(
            rule_id=rule_id,
            event_id=event.id,
            event_type=event.type,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            matched=True,
            success=not failed,
            actions_run=[r.to_dict() for r in results],
            actions_failed=len(failed),
            error="; ".join(f"{r.type}: {r.error}" for r in failed) or None,
            event_data=event.to_dict(),
        )

        rule = db.session.get(WorkflowRule, rule_id)
        rule.next_run_at = CronSchedule(cron_expression).next_run(now)
        db.session.commit()
        return failed, results, event
