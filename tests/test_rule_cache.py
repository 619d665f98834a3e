"""
Rule cache: per-trigger buckets, ordering, invalidation and stale loads.
"""
import threading
import time
from types import SimpleNamespace

from wms_workflow.services.rule_cache import RuleCache


def wf(id, priority=0, entity_type="mrrv"):
    return SimpleNamespace(id=id, name=f"wf-{id}", priority=priority, entity_type=entity_type)


def rule(id, sort_order=0, trigger="grn:created", conditions=None, stop=False):
    return SimpleNamespace(id=id, name=f"rule-{id}", trigger_event=trigger, conditions=conditions or {},
                           actions=[{"type": "create_notification", "params": {"recipientRole": "x"}}],
                           stop_on_match=stop, sort_order=sort_order)


class CountingLoader:
    def __init__(self, rows_by_trigger):
        self.rows_by_trigger = rows_by_trigger
        self.calls = []

    def __call__(self, trigger):
        self.calls.append(trigger)
        return list(self.rows_by_trigger.get(trigger, []))


class TestRuleCache:
    def test_candidates_are_ordered(self):
        low, high = wf(1, priority=0), wf(2, priority=10)
        loader = CountingLoader({"grn:created": [
            (low, rule(5, sort_order=1)),
            (low, rule(3, sort_order=1)),
            (low, rule(4, sort_order=0)),
            (high, rule(9, sort_order=50)),
        ]})
        cache = RuleCache(loader)

        ids = [r.rule_id for r in cache.get_active_rules("grn:created")]

        assert ids == [9, 4, 3, 5]

    def test_second_lookup_is_a_hit(self):
        loader = CountingLoader({"grn:created": [(wf(1), rule(1))]})
        cache = RuleCache(loader)

        first = cache.get_active_rules("grn:created")
        second = cache.get_active_rules("grn:created")

        assert first is second
        assert loader.calls == ["grn:created"]
        assert cache.cached_triggers() == ["grn:created"]

    def test_empty_bucket_is_cached_too(self):
        loader = CountingLoader({})
        cache = RuleCache(loader)

        assert cache.get_active_rules("nothing") == ()
        assert cache.get_active_rules("nothing") == ()
        assert loader.calls == ["nothing"]

    def test_invalidate_one_trigger(self):
        loader = CountingLoader({"a": [(wf(1), rule(1, trigger="a"))], "b": [(wf(1), rule(2, trigger="b"))]})
        cache = RuleCache(loader)
        cache.get_active_rules("a")
        cache.get_active_rules("b")

        cache.invalidate("a")
        cache.get_active_rules("a")
        cache.get_active_rules("b")

        assert loader.calls == ["a", "b", "a"]

    def test_invalidate_all(self):
        loader = CountingLoader({"a": [(wf(1), rule(1, trigger="a"))]})
        cache = RuleCache(loader)
        cache.get_active_rules("a")
        generation = cache.generation

        cache.invalidate()

        assert cache.cached_triggers() == []
        assert cache.generation == generation + 1
        cache.get_active_rules("a")
        assert loader.calls == ["a", "a"]

    def test_reload_reflects_new_rows(self):
        rows = {"a": [(wf(1), rule(1, trigger="a"))]}
        cache = RuleCache(CountingLoader(rows))
        assert [r.rule_id for r in cache.get_active_rules("a")] == [1]

        rows["a"] = []
        assert [r.rule_id for r in cache.get_active_rules("a")] == [1]
        cache.invalidate("a")
        assert cache.get_active_rules("a") == ()

    def test_load_racing_an_invalidation_is_not_published(self):
        cache = None
        calls = []

        def loader(trigger):
            calls.append(trigger)
            if len(calls) == 1:
                cache.invalidate()
            return [(wf(1), rule(len(calls), trigger=trigger))]

        cache = RuleCache(loader)

        stale = cache.get_active_rules("a")
        fresh = cache.get_active_rules("a")

        assert [r.rule_id for r in stale] == [1]
        assert [r.rule_id for r in fresh] == [2]
        assert cache.get_active_rules("a") is fresh
        assert len(calls) == 2

    def test_rule_with_corrupt_conditions_is_skipped(self):
        loader = CountingLoader({"a": [
            (wf(1), rule(1, trigger="a", conditions={"field": "x", "op": "like", "value": 1})),
            (wf(1), rule(2, trigger="a")),
        ]})
        cache = RuleCache(loader)

        assert [r.rule_id for r in cache.get_active_rules("a")] == [2]

    def test_conditions_parsed_once_into_cached_rule(self):
        loader = CountingLoader({"a": [(wf(1), rule(1, trigger="a",
                                                   conditions={"field": "payload.to", "op": "eq", "value": "x"}))]})
        cached = RuleCache(loader).get_active_rules("a")[0]

        assert cached.condition.field == "payload.to"
        assert cached.actions[0]["type"] == "create_notification"

    def test_entity_type_binding(self):
        loader = CountingLoader({"a": [(wf(1, entity_type="mrrv"), rule(1, trigger="a")),
                                       (wf(2, entity_type="*"), rule(2, trigger="a"))]})
        bound, wildcard = sorted(RuleCache(loader).get_active_rules("a"), key=lambda r: r.rule_id)

        assert bound.applies_to("mrrv") is True
        assert bound.applies_to("mirv") is False
        assert wildcard.applies_to("mirv") is True


class TestRuleCacheWithStore:
    def test_store_writes_keep_cache_consistent(self, engine, make_workflow, make_rule):
        workflow = make_workflow()
        first = make_rule(workflow, trigger_event="grn:created")
        assert [r.rule_id for r in engine.cache.get_active_rules("grn:created")] == [first.id]

        second = make_rule(workflow, trigger_event="grn:created", sort_order=-1)
        assert [r.rule_id for r in engine.cache.get_active_rules("grn:created")] == [second.id, first.id]

        engine.store.update_rule(workflow.id, first.id, {"trigger_event": "grn:stored"})
        assert [r.rule_id for r in engine.cache.get_active_rules("grn:created")] == [second.id]
        assert [r.rule_id for r in engine.cache.get_active_rules("grn:stored")] == [first.id]

        engine.store.update_workflow(workflow.id, {"is_active": False})
        assert engine.cache.get_active_rules("grn:created") == ()
        assert engine.cache.get_active_rules("grn:stored") == ()


class TestConcurrentReaders:
    def test_readers_never_see_a_partial_bucket(self):
        versions = [
            [(wf(1), rule(i, sort_order=i)) for i in (1, 2, 3)],
            [(wf(1), rule(i, sort_order=i)) for i in (1, 2, 3, 4, 5, 6)],
        ]
        current = {"version": 0}

        def slow_loader(trigger):
            for row in versions[current["version"]]:
                time.sleep(0.001)
                yield row

        cache = RuleCache(slow_loader)
        barrier = threading.Barrier(5)
        done = threading.Event()
        seen = []

        def reader():
            barrier.wait()
            while not done.is_set():
                seen.append(tuple(r.rule_id for r in cache.get_active_rules("grn:created")))

        def writer():
            barrier.wait()
            for n in range(1, 21):
                current["version"] = n % 2
                cache.invalidate("grn:created")
                time.sleep(0.005)
            done.set()

        threads = [threading.Thread(target=reader) for _ in range(4)] + [threading.Thread(target=writer)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert seen
        assert set(seen) <= {(1, 2, 3), (1, 2, 3, 4, 5, 6)}
