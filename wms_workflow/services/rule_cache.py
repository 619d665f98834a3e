"""
Rule Cache: per-trigger-event index over active rules.

Snapshot model:
    ``_snapshot`` is an immutable ``{trigger_event: tuple[CachedRule, ...]}``
    replaced wholesale on every change (copy-on-write).  Readers grab the
    current reference without locking and always see either the fully-old or
    the fully-new rule list for a trigger.

    A miss loads the bucket from the store under ``_load_lock`` (double
    checked) and publishes a new snapshot.  ``invalidate`` bumps a generation
    counter, so a load that started before an invalidation never publishes
    its now-stale result.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Iterable

from wms_workflow.core.exceptions import ConfigurationError
from wms_workflow.services.condition_evaluator import Condition, parse_condition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedRule:
    workflow_id: int
    workflow_name: str
    workflow_priority: int
    entity_type: str
    rule_id: int
    rule_name: str
    trigger_event: str
    condition: Condition | None
    actions: tuple
    stop_on_match: bool
    sort_order: int

    @property
    def sort_key(self) -> tuple:
        return (-self.workflow_priority, self.sort_order, self.rule_id)

    def applies_to(self, entity_type: str) -> bool:
        """A workflow bound to an entity type only sees that type's events."""
        return self.entity_type in ("", "*") or not entity_type or self.entity_type == entity_type


def build_cached_rule(workflow, rule, *, max_depth: int, max_nodes: int) -> CachedRule:
    """Parse a (Workflow, WorkflowRule) row pair into its cached form."""
    return CachedRule(
        workflow_id=workflow.id,
        workflow_name=workflow.name,
        workflow_priority=workflow.priority or 0,
        entity_type=workflow.entity_type or "",
        rule_id=rule.id,
        rule_name=rule.name,
        trigger_event=rule.trigger_event,
        condition=parse_condition(rule.conditions, max_depth=max_depth, max_nodes=max_nodes),
        actions=tuple(dict(a) for a in (rule.actions or [])),
        stop_on_match=bool(rule.stop_on_match),
        sort_order=rule.sort_order or 0,
    )


class RuleCache:
    """
    Args:
        loader: ``loader(trigger_event) -> iterable of (workflow, rule)`` rows,
            already filtered to active workflow + active rule.
        max_depth / max_nodes: condition tree limits applied at parse time.
    """

    def __init__(self, loader: Callable[[str], Iterable], *, max_depth: int = 5, max_nodes: int = 200):
        self._loader = loader
        self._max_depth = max_depth
        self._max_nodes = max_nodes
        self._snapshot: MappingProxyType = MappingProxyType({})
        self._generation = 0
        self._swap_lock = threading.Lock()
        self._load_lock = threading.Lock()

    @property
    def generation(self) -> int:
        return self._generation

    def get_active_rules(self, trigger_event: str) -> tuple[CachedRule, ...]:
        """Ordered ``(priority desc, sort_order asc, id asc)`` candidates."""
        hit = self._snapshot.get(trigger_event)
        if hit is not None:
            return hit

        with self._load_lock:
            hit = self._snapshot.get(trigger_event)
            if hit is not None:
                return hit
            generation = self._generation
            rules = self._load(trigger_event)
            with self._swap_lock:
                if generation == self._generation:
                    updated = dict(self._snapshot)
                    updated[trigger_event] = rules
                    self._snapshot = MappingProxyType(updated)
                else:
                    logger.debug("Discarding stale rule load for %s", trigger_event)
            return rules

    def _load(self, trigger_event: str) -> tuple[CachedRule, ...]:
        loaded = []
        for workflow, rule in self._loader(trigger_event):
            try:
                loaded.append(build_cached_rule(workflow, rule, max_depth=self._max_depth,
                                                max_nodes=self._max_nodes))
            except ConfigurationError as exc:
                logger.error("Skipping rule %s: stored conditions invalid: %s", rule.id, exc.details,
                             extra={"rule_id": rule.id, "workflow_id": workflow.id})
        loaded.sort(key=lambda r: r.sort_key)
        logger.debug("Rule cache loaded %d rules for %s", len(loaded), trigger_event,
                     extra={"event_type": trigger_event})
        return tuple(loaded)

    def invalidate(self, trigger_event: str | None = None) -> None:
        """Drop one bucket, or everything when ``trigger_event`` is None."""
        with self._swap_lock:
            self._generation += 1
            if trigger_event is None:
                self._snapshot = MappingProxyType({})
            elif trigger_event in self._snapshot:
                updated = dict(self._snapshot)
                updated.pop(trigger_event, None)
                self._snapshot = MappingProxyType(updated)
        logger.debug("Rule cache invalidated: %s", trigger_event or "<all>")

    def cached_triggers(self) -> list[str]:
        return sorted(self._snapshot)
