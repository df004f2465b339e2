import threading
import time
import unittest

from services.aggregate_cache import (
    AggregateCache,
    CacheConfig,
    CacheKey,
    estimate_size,
    global_key,
    project_key,
)
from services.errors import CacheComputeFailure, CacheComputeTimeout


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def constant(value):
    return lambda: value


class CacheConfigTestCase(unittest.TestCase):
    def test_defaults(self):
        config = CacheConfig()
        self.assertEqual(config.max_entries, 100)
        self.assertEqual(config.max_memory_bytes, 50 * 1024 * 1024)
        self.assertEqual(config.default_ttl_ms, 60000)

    def test_rejects_non_positive_values(self):
        for options in ({"max_entries": 0}, {"max_memory_bytes": -1}, {"default_ttl_ms": 0}):
            with self.subTest(options=options):
                with self.assertRaises(ValueError):
                    CacheConfig(**options)

    def test_from_mapping_rejects_unknown_options(self):
        with self.assertRaises(ValueError) as raised:
            CacheConfig.from_mapping({"max_entries": 5, "eviction": "fifo"})
        self.assertIn("eviction", str(raised.exception))

    def test_from_mapping_coerces_strings(self):
        config = CacheConfig.from_mapping({"max_entries": "7"})
        self.assertEqual(config.max_entries, 7)


class CacheKeyTestCase(unittest.TestCase):
    def test_key_rendering(self):
        self.assertEqual(str(project_key(7, "totals")), "project:7:totals")
        self.assertEqual(str(global_key("projects:overview")), "global:projects:overview")

    def test_project_keys_are_value_equal(self):
        self.assertEqual(project_key("7", "totals"), project_key(7, "totals"))
        self.assertNotEqual(project_key(7, "totals"), project_key(8, "totals"))

    def test_estimate_size_counts_key_and_json_payload(self):
        key = CacheKey("global", "x")
        # "global:x" is 8 chars, json.dumps([1, 2]) is "[1, 2]" (6 chars).
        self.assertEqual(estimate_size(key, [1, 2]), (8 + 6) * 2)


class AggregateCacheTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()

    def make_cache(self, **options):
        return AggregateCache(CacheConfig(**options), clock=self.clock)

    def test_miss_then_hit(self):
        cache = self.make_cache()
        calls = []

        def compute():
            calls.append(1)
            return {"total": 3}

        key = project_key(1, "totals")
        self.assertEqual(cache.get_or_compute(key, compute), {"total": 3})
        self.assertEqual(cache.get_or_compute(key, compute), {"total": 3})
        self.assertEqual(len(calls), 1)

        stats = cache.stats()
        self.assertEqual(stats.hits, 1)
        self.assertEqual(stats.misses, 1)
        self.assertEqual(stats.entries, 1)
        self.assertAlmostEqual(stats.hit_rate, 0.5)

    def test_lru_evicts_oldest_entry(self):
        cache = self.make_cache(max_entries=2)
        for name in ("A", "B", "C"):
            cache.get_or_compute(global_key(name), constant(name.lower()))

        self.assertEqual(cache.get_or_compute(global_key("A"), constant("recomputed")), "recomputed")

    def test_lru_eviction_keeps_recently_used(self):
        cache = self.make_cache(max_entries=2)
        a, b, c = global_key("A"), global_key("B"), global_key("C")

        cache.get_or_compute(a, constant("a"))
        cache.get_or_compute(b, constant("b"))
        cache.get_or_compute(a, constant("stale"))  # touch A
        cache.get_or_compute(c, constant("c"))

        self.assertEqual(len(cache), 2)
        self.assertEqual(cache.stats().evictions, 1)
        self.assertEqual(cache.get_or_compute(a, constant("recomputed")), "a")
        self.assertEqual(cache.get_or_compute(b, constant("recomputed")), "recomputed")

    def test_expired_entry_is_recomputed(self):
        cache = self.make_cache(default_ttl_ms=1000)
        key = global_key("ttl")
        cache.get_or_compute(key, constant(1))

        self.clock.advance(0.5)
        self.assertEqual(cache.get_or_compute(key, constant(2)), 1)

        self.clock.advance(0.6)
        self.assertEqual(cache.get_or_compute(key, constant(2)), 2)

    def test_per_call_ttl_seconds_overrides_default(self):
        cache = self.make_cache(default_ttl_ms=60000)
        key = global_key("short")
        cache.get_or_compute(key, constant(1), ttl_seconds=1)
        self.clock.advance(0.5)
        self.assertEqual(cache.get_or_compute(key, constant(2), ttl_seconds=1), 1)
        self.clock.advance(1)
        self.assertEqual(cache.get_or_compute(key, constant(2), ttl_seconds=1), 2)

    def test_memory_bound_evicts_oldest(self):
        value = "x" * 100
        per_entry = estimate_size(global_key("k0"), value)
        cache = self.make_cache(max_memory_bytes=per_entry * 2 + 10)

        for index in range(3):
            cache.get_or_compute(global_key(f"k{index}"), constant(value))

        stats = cache.stats()
        self.assertEqual(stats.entries, 2)
        self.assertLessEqual(stats.memory_bytes, stats.max_memory_bytes)
        self.assertEqual(cache.get_or_compute(global_key("k0"), constant("fresh")), "fresh")

    def test_oversized_value_is_returned_but_not_stored(self):
        cache = self.make_cache(max_memory_bytes=64)
        calls = []

        def compute():
            calls.append(1)
            return "y" * 200

        key = global_key("big")
        self.assertEqual(cache.get_or_compute(key, compute), "y" * 200)
        self.assertEqual(len(cache), 0)
        cache.get_or_compute(key, compute)
        self.assertEqual(len(calls), 2)

    def test_failure_is_raised_and_not_cached(self):
        cache = self.make_cache()
        key = global_key("boom")

        def explode():
            raise ZeroDivisionError("bad data")

        with self.assertRaises(CacheComputeFailure) as raised:
            cache.get_or_compute(key, explode)
        self.assertIsInstance(raised.exception.__cause__, ZeroDivisionError)
        self.assertEqual(raised.exception.key, key)

        self.assertEqual(cache.get_or_compute(key, constant("ok")), "ok")
        self.assertEqual(cache.stats().in_flight, 0)

    def test_timeout_raises_and_late_result_is_discarded(self):
        cache = AggregateCache(CacheConfig())
        key = global_key("slow")
        release = threading.Event()
        finished = threading.Event()

        def slow():
            release.wait(5)
            finished.set()
            return "late"

        with self.assertRaises(CacheComputeTimeout) as raised:
            cache.get_or_compute(key, slow, timeout=0.05)
        self.assertEqual(raised.exception.timeout, 0.05)

        release.set()
        self.assertTrue(finished.wait(5))
        time.sleep(0.05)
        self.assertEqual(len(cache), 0)
        self.assertEqual(cache.get_or_compute(key, constant("fresh")), "fresh")

    def test_timed_out_waiter_leaves_inline_computation_shared(self):
        cache = AggregateCache(CacheConfig())
        key = project_key(4, "totals")
        started = threading.Event()
        release = threading.Event()
        calls = []
        results = {}

        def compute():
            calls.append(1)
            started.set()
            release.wait(5)
            return "shared"

        def reader(name):
            results[name] = cache.get_or_compute(key, compute)

        leader = threading.Thread(target=reader, args=("leader",))
        leader.start()
        self.assertTrue(started.wait(5))

        with self.assertRaises(CacheComputeTimeout):
            cache.get_or_compute(key, compute, timeout=0.05)
        self.assertEqual(cache.stats().in_flight, 1)

        late = threading.Thread(target=reader, args=("late",))
        late.start()
        deadline = time.monotonic() + 5
        while cache.stats().misses < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
        release.set()
        for thread in (leader, late):
            thread.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, {"leader": "shared", "late": "shared"})
        self.assertEqual(len(cache), 1)
        self.assertEqual(cache.get_or_compute(key, constant("recomputed")), "shared")

    def test_helper_computation_survives_while_a_waiter_remains(self):
        cache = AggregateCache(CacheConfig())
        key = global_key("slow-shared")
        started = threading.Event()
        release = threading.Event()
        calls = []
        results = []

        def compute():
            calls.append(1)
            started.set()
            release.wait(5)
            return "done"

        def patient_reader():
            started.wait(5)
            results.append(cache.get_or_compute(key, compute))

        follower = threading.Thread(target=patient_reader)
        follower.start()
        with self.assertRaises(CacheComputeTimeout):
            cache.get_or_compute(key, compute, timeout=0.5)
        release.set()
        follower.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, ["done"])
        self.assertEqual(len(cache), 1)

    def test_concurrent_misses_share_one_computation(self):
        cache = AggregateCache(CacheConfig())
        key = project_key(3, "totals")
        started = threading.Event()
        release = threading.Event()
        calls = []
        results = []

        def compute():
            calls.append(1)
            started.set()
            release.wait(5)
            return {"project_id": 3}

        def reader():
            results.append(cache.get_or_compute(key, compute))

        leader = threading.Thread(target=reader)
        leader.start()
        self.assertTrue(started.wait(5))
        followers = [threading.Thread(target=reader) for _ in range(4)]
        for thread in followers:
            thread.start()
        # Give the followers time to join the in-flight computation.
        deadline = time.monotonic() + 5
        while cache.stats().misses < 5 and time.monotonic() < deadline:
            time.sleep(0.01)
        release.set()
        for thread in [leader, *followers]:
            thread.join(5)

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, [{"project_id": 3}] * 5)

    def test_invalidation_during_compute_prevents_stale_store(self):
        cache = AggregateCache(CacheConfig())
        key = project_key(5, "totals")

        def compute_then_write():
            # A write to the project commits while the aggregate is computing.
            cache.invalidate_project(5)
            return "before write"

        self.assertEqual(cache.get_or_compute(key, compute_then_write), "before write")
        self.assertEqual(len(cache), 0)
        self.assertEqual(cache.get_or_compute(key, constant("after write")), "after write")

    def test_invalidate_project_is_scoped(self):
        cache = self.make_cache()
        cache.get_or_compute(project_key(1, "totals"), constant(1))
        cache.get_or_compute(project_key(1, "cue-status"), constant(1))
        cache.get_or_compute(project_key(2, "totals"), constant(2))
        cache.get_or_compute(global_key("projects:overview"), constant([]))

        removed = cache.invalidate_project(1)

        self.assertEqual(removed, 3)
        self.assertEqual(len(cache), 1)
        self.assertEqual(cache.get_or_compute(project_key(2, "totals"), constant("new")), 2)

    def test_invalidate_single_key_and_clear(self):
        cache = self.make_cache()
        key = global_key("one")
        cache.get_or_compute(key, constant(1))
        self.assertTrue(cache.invalidate(key))
        self.assertFalse(cache.invalidate(key))

        cache.get_or_compute(key, constant(1))
        cache.get_or_compute(global_key("two"), constant(2))
        cache.clear()
        self.assertEqual(cache.stats().entries, 0)
        self.assertEqual(cache.stats().memory_bytes, 0)


if __name__ == "__main__":
    unittest.main()
