"""
Rule Engine: event in → cached candidates → ordered evaluation → actions → log.

Algorithm per event:
    1. Candidates for ``event.type`` from the rule cache, already ordered by
       (workflow priority desc, sort_order asc, rule id asc).
    2. Each candidate's condition tree is evaluated against
       ``event.to_context()`` (so both ``payload.to`` and ``entityType``
       resolve).  Workflows bound to an entity type skip other types' events.
    3. A match runs every action independently and writes exactly one
       WorkflowExecutionLog row with the per-action results.
    4. ``stop_on_match`` halts the rule's own workflow
       (``RULE_STOP_ON_MATCH_SCOPE="workflow"``) or every remaining candidate
       (``"global"``).
    5. A matched log row for (rule, event id) means the rule already fired for
       this event; a re-delivered event does not fire it again.
    6. ``EVENT_TIMEOUT_SECONDS`` caps the wall-clock time per event; rules left
       when the budget runs out are logged as failed and skipped.

``on_event`` never raises: the bus subscriber must stay fire-and-forget.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import SQLAlchemyError

from wms_workflow.core.exceptions import EvaluationError
from wms_workflow.models import db
from wms_workflow.services.action_executor import ActionContext, ActionExecutor
from wms_workflow.services.condition_evaluator import evaluate, parse_condition
from wms_workflow.services.event_bus import SystemEvent
from wms_workflow.services.rule_cache import CachedRule, RuleCache
from wms_workflow.services.rule_store import RuleStore

logger = logging.getLogger(__name__)

STOP_SCOPE_WORKFLOW = "workflow"
STOP_SCOPE_GLOBAL = "global"


class RuleEngine:
    def __init__(self, cache: RuleCache, store: RuleStore, executor: ActionExecutor, engine=None, *,
                 stop_scope: str = STOP_SCOPE_WORKFLOW, log_non_matches: bool = False,
                 event_timeout: float = 60.0):
        if stop_scope not in (STOP_SCOPE_WORKFLOW, STOP_SCOPE_GLOBAL):
            raise ValueError(f"unknown stop-on-match scope {stop_scope!r}")
        self.cache = cache
        self.store = store
        self.executor = executor
        self.engine = engine
        self.stop_scope = stop_scope
        self.log_non_matches = log_non_matches
        self.event_timeout = event_timeout

    # ── event handling ────────────────────────────────────────────────────

    def on_event(self, event: SystemEvent) -> dict:
        """Bus subscriber.  Returns a summary; never raises."""
        summary = {"event_id": event.id, "event_type": event.type,
                   "evaluated": 0, "matched": [], "skipped": []}
        try:
            self._process(event, summary)
        except Exception:
            db.session.rollback()
            logger.exception("Rule engine failed on %s", event.type,
                             extra={"event_type": event.type, "event_id": event.id})
            summary["error"] = "rule engine failure"
        return summary

    def _process(self, event: SystemEvent, summary: dict) -> None:
        candidates = self.cache.get_active_rules(event.type)
        if not candidates:
            return
        context = event.to_context()
        deadline = time.monotonic() + self.event_timeout
        halted_workflows: set[int] = set()

        for cached in candidates:
            if cached.workflow_id in halted_workflows:
                continue
            if not cached.applies_to(event.entity_type):
                continue
            if time.monotonic() > deadline:
                summary["skipped"].append(cached.rule_id)
                self._write_log(cached, event, matched=False, success=False,
                                error=f"skipped: event budget of {self.event_timeout:g}s exhausted")
                continue

            summary["evaluated"] += 1
            if not self._matches(cached, context, event):
                if self.log_non_matches:
                    self._write_log(cached, event, matched=False, success=True)
                continue

            summary["matched"].append(cached.rule_id)
            if self.store.already_fired(cached.rule_id, event.id):
                logger.info("Rule %s already fired for event %s; not re-running", cached.rule_id, event.id,
                            extra={"rule_id": cached.rule_id, "event_id": event.id})
            else:
                self._run_rule(cached, event)

            if cached.stop_on_match:
                if self.stop_scope == STOP_SCOPE_GLOBAL:
                    break
                halted_workflows.add(cached.workflow_id)

    def _matches(self, cached: CachedRule, context: dict, event: SystemEvent) -> bool:
        try:
            return evaluate(cached.condition, context)
        except EvaluationError as exc:
            logger.warning("Rule %s evaluation error: %s", cached.rule_id, exc,
                           extra={"rule_id": cached.rule_id, "event_id": event.id})
        except Exception:
            logger.exception("Rule %s evaluation crashed", cached.rule_id,
                             extra={"rule_id": cached.rule_id, "event_id": event.id})
        return False

    def _run_rule(self, cached: CachedRule, event: SystemEvent) -> None:
        ctx = ActionContext(event=event, engine=self.engine, rule_id=cached.rule_id,
                            workflow_id=cached.workflow_id)
        results = [self.executor.run(descriptor, ctx) for descriptor in cached.actions]
        failed = [r for r in results if not r.ok]
        self._write_log(
            cached, event, matched=True, success=not failed,
            actions_run=[r.to_dict() for r in results],
            actions_failed=len(failed),
            error="; ".join(f"{r.type}: {r.error}" for r in failed) or None,
        )
        logger.info("Rule %s (%s) fired: %d action(s), %d failed", cached.rule_id, cached.rule_name,
                    len(results), len(failed),
                    extra={"rule_id": cached.rule_id, "workflow_id": cached.workflow_id,
                           "event_id": event.id, "event_type": event.type})

    def _write_log(self, cached: CachedRule, event: SystemEvent, *, matched: bool, success: bool,
                   actions_run=None, actions_failed: int = 0, error: str | None = None) -> None:
        try:
            self.store.write_log(
                rule_id=cached.rule_id,
                event_id=event.id,
                event_type=event.type,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                matched=matched,
                success=success,
                actions_run=actions_run or [],
                actions_failed=actions_failed,
                error=error,
                event_data=event.to_dict(),
            )
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to write execution log for rule %s", cached.rule_id,
                             extra={"rule_id": cached.rule_id, "event_id": event.id})

    # ── dry run ───────────────────────────────────────────────────────────

    def test_rule(self, rule_id: int, sample_event: dict) -> dict:
        """Evaluate one rule against a sample event without running actions.

        Works on inactive rules too, so a rule can be checked before enabling.
        """
        rule = self.store.get_rule(rule_id)
        event = SystemEvent.from_dict({"type": rule.trigger_event, **(sample_event or {})})
        tree = parse_condition(rule.conditions, max_depth=self.store.max_depth,
                               max_nodes=self.store.max_nodes)
        context = event.to_context()
        try:
            matched = evaluate(tree, context)
            error = None
        except EvaluationError as exc:
            matched, error = False, str(exc)
        return {
            "rule_id": rule.id,
            "trigger_event": rule.trigger_event,
            "event_type_matches": event.type == rule.trigger_event,
            "matched": matched,
            "error": error,
            "would_run": list(rule.actions or []) if matched else [],
            "context": context,
        }
