from campus_eta.prediction_api.cache import CacheKey
from campus_eta.prediction_api.eta.fallback import FallbackEstimator


def item_prediction(vendor_id="VEN001", item_id="ITM1", now=None):
    return FallbackEstimator().estimate_item(vendor_id, item_id, now=now)


def test_entry_is_served_until_ttl(cache, clock, fixed_now):
    key = CacheKey.quick("VEN001", "ITM1")
    value = item_prediction(now=fixed_now)
    cache.put(key, value, ttl=30)

    clock.advance(29.999)
    assert cache.get(key) is value

    clock.advance(0.002)
    assert cache.get(key) is None


def test_entry_expires_exactly_at_ttl(cache, clock, fixed_now):
    key = CacheKey.quick("VEN001", "ITM1")
    cache.put(key, item_prediction(now=fixed_now), ttl=30)

    clock.advance(30)

    assert cache.get(key) is None
    assert len(cache) == 0


def test_batch_keys_default_to_batch_ttl(cache, clock, fixed_now):
    key = CacheKey.batch("VEN001", ["ITM2", "ITM1"])
    cache.put(key, {"ITM1": item_prediction(now=fixed_now)})

    clock.advance(45)
    assert cache.get(key) is not None

    clock.advance(15)
    assert cache.get(key) is None


def test_batch_key_ignores_item_order_and_duplicates():
    assert CacheKey.batch("VEN001", ["B", "A", "B"]) == CacheKey.batch("VEN001", ["A", "B"])


def test_quick_key_depends_on_quantity_and_options():
    assert CacheKey.quick("VEN001", "A", 1) != CacheKey.quick("VEN001", "A", 2)
    assert CacheKey.quick("VEN001", "A", options={"spicy": True}) != CacheKey.quick("VEN001", "A")
    assert str(CacheKey.quick("VEN001", "A", 2)) == "quick:VEN001:A:2"


def test_invalidate_vendor_only_touches_that_vendor(cache, fixed_now):
    cache.put(CacheKey.quick("VEN001", "A"), item_prediction("VEN001", "A", fixed_now))
    cache.put(CacheKey.batch("VEN001", ["A", "B"]), {})
    cache.put(CacheKey.quick("VEN0011", "A"), item_prediction("VEN0011", "A", fixed_now))

    removed = cache.invalidate_vendor("VEN001")

    assert removed == 2
    assert cache.get(CacheKey.quick("VEN001", "A")) is None
    assert cache.get(CacheKey.quick("VEN0011", "A")) is not None


def test_live_queue_patch_keeps_estimate_and_expiry(cache, clock, fixed_now):
    key = CacheKey.quick("VEN001", "X")
    original = item_prediction("VEN001", "X", fixed_now)
    cache.put(key, original, ttl=30)
    clock.advance(10)

    patched_count = cache.patch_vendor_queue("VEN001", queue_effect=6, queue_length=4)
    patched = cache.get(key)

    assert patched_count == 1
    assert patched.breakdown.queue_effect == 6
    assert patched.breakdown.queue_length == 4
    assert patched.estimated_minutes == original.estimated_minutes
    assert patched.pickup_window == original.pickup_window
    assert patched.live_adjusted
    assert not original.live_adjusted

    clock.advance(20)
    assert cache.get(key) is None


def test_live_queue_patch_updates_batch_entries(cache, fixed_now):
    key = CacheKey.batch("VEN001", ["A", "B"])
    cache.put(key, {"A": item_prediction("VEN001", "A", fixed_now), "B": item_prediction("VEN001", "B", fixed_now)})

    cache.patch_vendor_queue("VEN001", queue_effect=3)

    assert {p.breakdown.queue_effect for p in cache.get(key).values()} == {3}


def test_clear_and_invalidate(cache, fixed_now):
    key = CacheKey.quick("VEN001", "A")
    cache.put(key, item_prediction(now=fixed_now))

    assert cache.invalidate(key)
    assert not cache.invalidate(key)

    cache.put(key, item_prediction(now=fixed_now))
    cache.clear()
    assert len(cache) == 0
