import unittest

from discount_engine.services.result_cache import (
    InMemoryResultCache,
    NullResultCache,
    business_prefix,
    make_cache_key,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class ResultCacheTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.cache = InMemoryResultCache(ttl_seconds=60, clock=self.clock)

    def test_key_is_independent_of_field_order(self):
        a = make_cache_key(1, {"amount": "10.00", "promo_code": "X"})
        b = make_cache_key(1, {"promo_code": "X", "amount": "10.00"})
        self.assertEqual(a, b)
        self.assertTrue(a.startswith(business_prefix(1)))

    def test_entry_expires_after_ttl(self):
        key = make_cache_key(1, {"amount": "10.00"})
        self.cache.set(key, {"total": "1.00"})
        self.clock.now += 59
        self.assertEqual(self.cache.get(key), {"total": "1.00"})
        self.clock.now += 1
        self.assertIsNone(self.cache.get(key))
        self.assertEqual(len(self.cache), 0)

    def test_invalidate_is_scoped_to_one_business(self):
        self.cache.set(make_cache_key(1, {"amount": "1"}), 1)
        self.cache.set(make_cache_key(1, {"amount": "2"}), 2)
        self.cache.set(make_cache_key(11, {"amount": "1"}), 3)

        self.assertEqual(self.cache.invalidate(1), 2)
        self.assertEqual(self.cache.get(make_cache_key(11, {"amount": "1"})), 3)

    def test_values_are_copied(self):
        key = make_cache_key(1, {"amount": "1"})
        value = {"applied": [{"id": 1}]}
        self.cache.set(key, value)
        value["applied"].append({"id": 2})

        cached = self.cache.get(key)
        self.assertEqual(cached, {"applied": [{"id": 1}]})
        cached["applied"].clear()
        self.assertEqual(self.cache.get(key), {"applied": [{"id": 1}]})

    def test_purge_expired(self):
        self.cache.set("discount:1:a", 1)
        self.clock.now += 30
        self.cache.set("discount:1:b", 2)
        self.clock.now += 31
        self.assertEqual(self.cache.purge_expired(), 1)
        self.assertEqual(self.cache.get("discount:1:b"), 2)

    def test_null_cache_stores_nothing(self):
        cache = NullResultCache()
        cache.set("k", 1)
        self.assertIsNone(cache.get("k"))
        self.assertEqual(cache.invalidate(1), 0)


if __name__ == "__main__":
    unittest.main()
