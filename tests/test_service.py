import asyncio
import time
from unittest.mock import MagicMock

import pytest
import redis

from campus_eta.prediction_api import service as service_module
from campus_eta.prediction_api.cache import CacheKey
from campus_eta.prediction_api.errors import NetworkError, UnknownPredictionError
from campus_eta.prediction_api.eta.fallback import FallbackEstimator
from campus_eta.prediction_api.eta.models import PredictionSource, VendorLoad
from campus_eta.prediction_api.live.channel import LiveUpdateChannel
from campus_eta.prediction_api.live.events import (
    DemandSpikeWarning,
    EventType,
    VendorLoadUpdate,
    encode_event,
)
from campus_eta.prediction_api.service import PredictionService
from tests.fakes import FakeBackend, FakeConsumer, ml_payload, run


class FailingVendorApi:
    def get_vendor_load(self, vendor_id):
        raise NetworkError("vendor api down")

    def get_prediction_accuracy(self, vendor_id, time_range="day"):
        raise NetworkError("vendor api down")


def prediction_update(vendor_id, item_id, minutes, **extra):
    return encode_event(EventType.PREDICTION_UPDATE, {
        "vendorId": vendor_id,
        "itemId": item_id,
        "prediction": ml_payload(minutes, **extra),
    })


def load_update(vendor_id, **load):
    return encode_event(EventType.VENDOR_LOAD_UPDATE, {"vendorId": vendor_id, "load": load})


# --- Supersession ---

def test_superseded_request_never_overwrites_newer_result(make_service, cache):
    answers = iter([(0.3, 10), (0.0, 20)])

    def quick(vendor_id, item_id, quantity):
        delay, minutes = next(answers)
        time.sleep(delay)
        return ml_payload(minutes)

    service = make_service(FakeBackend(quick=quick))

    async def scenario():
        first = asyncio.ensure_future(service.get_quick_prediction("VEN001", "ITM1"))
        await asyncio.sleep(0.05)
        second = asyncio.ensure_future(service.get_quick_prediction("VEN001", "ITM1"))
        results = await asyncio.gather(first, second)
        # let the stale backend call complete
        await asyncio.sleep(0.4)
        return results

    first, second = run(scenario())

    assert second.estimated_minutes == 20
    assert first.estimated_minutes == 20
    assert cache.get(CacheKey.quick("VEN001", "ITM1")).estimated_minutes == 20


def test_different_keys_do_not_supersede_each_other(make_service):
    service = make_service(FakeBackend(quick=lambda v, item, q: ml_payload(8 if item == "A" else 9)))

    async def scenario():
        return await asyncio.gather(
            service.get_quick_prediction("VEN001", "A"),
            service.get_quick_prediction("VEN001", "B"),
        )

    a, b = run(scenario())

    assert (a.estimated_minutes, b.estimated_minutes) == (8, 9)


def test_quick_prediction_is_served_from_cache(make_service):
    backend = FakeBackend(quick=ml_payload(12))
    service = make_service(backend)

    run(service.get_quick_prediction("VEN001", "ITM1"))
    again = run(service.get_quick_prediction("VEN001", "ITM1"))

    assert again.estimated_minutes == 12
    assert len(backend.calls) == 1


def test_quick_prediction_expires_after_ttl(make_service, clock):
    backend = FakeBackend(quick=ml_payload(12))
    service = make_service(backend)

    run(service.get_quick_prediction("VEN001", "ITM1"))
    clock.advance(30)
    run(service.get_quick_prediction("VEN001", "ITM1"))

    assert len(backend.calls) == 2


def test_quick_prediction_never_raises(make_service):
    service = make_service(FakeBackend(quick=NetworkError("down")))

    prediction = run(service.get_quick_prediction("VEN001", "ITM42"))

    assert prediction.is_fallback


def test_batch_results_seed_item_cache(make_service):
    backend = FakeBackend(batch={"A": ml_payload(8), "B": ml_payload(6)}, quick=NetworkError("unused"))
    service = make_service(backend)

    batch = run(service.get_batch_predictions("VEN001", ["B", "A"]))
    single = run(service.get_quick_prediction("VEN001", "A"))

    assert set(batch) == {"A", "B"}
    assert single.estimated_minutes == 8
    assert [call[0] for call in backend.calls] == ["batch"]


# --- Aggregation and accuracy ---

def test_aggregated_prediction_uses_known_item_predictions(make_service):
    service = make_service(FakeBackend(quick=lambda v, item, q: ml_payload(8, 0.9, 2)))
    run(service.get_quick_prediction("VEN001", "A"))

    result = service.get_aggregated_prediction("VEN001", [
        {"item_id": "A", "quantity": 2},
        {"item_id": "ITM42"},
    ])

    fallback = FallbackEstimator().estimate_item("VEN001", "ITM42")
    assert result.source is PredictionSource.AGGREGATED
    assert result.breakdown.items[0].estimated_time == 8
    assert not result.breakdown.items[0].is_fallback
    assert result.breakdown.items[1].estimated_time == fallback.estimated_minutes
    assert result.confidence == pytest.approx(min(0.9, 0.7) * 0.9)


def test_detailed_prediction_can_be_reported_once(make_service):
    service = make_service(FakeBackend(order=ml_payload(14)))
    prediction = run(service.get_detailed_prediction({"vendor_id": "VEN001", "items": [{"item_id": "A"}]}))

    record = run(service.report_accuracy(prediction.prediction_id, 17))

    assert record.absolute_error_minutes == 3
    assert service.get_accuracy_metrics(vendor_id="VEN001")["total_reports"] == 1
    assert service.get_accuracy_metrics(model_name="xgb_v2")["average_error"] == 3
    with pytest.raises(UnknownPredictionError):
        run(service.report_accuracy(prediction.prediction_id, 17))


def test_history_keeps_newest_first(make_service):
    service = make_service(FakeBackend(quick=ml_payload(5)))

    run(service.get_quick_prediction("VEN001", "A"))
    service.get_aggregated_prediction("VEN001", [{"item_id": "A"}])

    history = service.get_prediction_history()
    assert [entry["kind"] for entry in history] == ["aggregated", "quick"]
    assert len(service.get_prediction_history(limit=1)) == 1


# --- Live updates ---

def test_load_update_patches_queue_effect_only(make_service):
    service = make_service(FakeBackend(quick=NetworkError("unused")))
    service.handle_live_message(prediction_update("VEN001", "X", 12, queue_effect=2))

    event = service.handle_live_message(load_update("VEN001", waitTime=6, queueLength=3, capacityUtilization=0.6))
    prediction = run(service.get_quick_prediction("VEN001", "X"))

    assert isinstance(event, VendorLoadUpdate)
    assert prediction.breakdown.queue_effect == 6
    assert prediction.breakdown.queue_length == 3
    assert prediction.estimated_minutes == 12
    assert prediction.live_adjusted
    assert service.client.backend.calls == []


def test_load_update_near_capacity_invalidates_vendor(make_service, cache):
    service = make_service(FakeBackend())
    service.handle_live_message(prediction_update("VEN001", "X", 12))
    service.handle_live_message(prediction_update("VEN002", "X", 12))

    service.handle_live_message(load_update("VEN001", capacityUtilization=0.97, queueLength=12))

    assert cache.get(CacheKey.quick("VEN001", "X")) is None
    assert cache.get(CacheKey.quick("VEN002", "X")) is not None


def test_high_demand_spike_warns_listeners_and_predictions(make_service, clock):
    service = make_service(FakeBackend(quick=ml_payload(10)))
    received = []
    service.add_listener(received.append)

    service.handle_live_message(encode_event(EventType.DEMAND_SPIKE_ALERT, {"vendorId": "VEN001", "intensity": "high"}))
    prediction = run(service.get_quick_prediction("VEN001", "ITM1"))

    warnings = [item for item in received if isinstance(item, DemandSpikeWarning)]
    assert len(warnings) == 1
    assert warnings[0].vendor_id == "VEN001"
    assert prediction.warnings == ("demand_spike",)

    clock.advance(300)
    later = run(service.get_quick_prediction("VEN001", "ITM1"))
    assert later.warnings == ()


def test_low_demand_spike_is_not_surfaced(make_service):
    service = make_service(FakeBackend(quick=ml_payload(10)))
    received = []
    service.add_listener(received.append)

    service.handle_live_message(encode_event(EventType.DEMAND_SPIKE_ALERT, {"vendorId": "VEN001", "intensity": 0.4}))
    prediction = run(service.get_quick_prediction("VEN001", "ITM1"))

    assert not any(isinstance(item, DemandSpikeWarning) for item in received)
    assert prediction.warnings == ()


def test_malformed_live_messages_are_dropped(make_service):
    service = make_service(FakeBackend())

    assert service.handle_live_message(b"{not json") is None
    assert service.handle_live_message(encode_event(EventType.VENDOR_LOAD_UPDATE, {"load": {}})) is None


def test_failing_listener_does_not_block_others(make_service):
    service = make_service(FakeBackend())
    received = []

    def broken(item):
        raise RuntimeError("listener bug")

    service.add_listener(broken)
    service.add_listener(received.append)
    service.handle_live_message(encode_event(EventType.PREDICTION_ERROR, {"vendorId": "VEN001", "message": "model down"}))

    assert len(received) == 1


def test_model_metrics_are_merged(make_service):
    service = make_service(FakeBackend())

    service.handle_live_message(encode_event(EventType.MODEL_METRICS_UPDATE, {"modelName": "xgb_v2", "mae": 2.1}))
    service.handle_live_message(encode_event(EventType.MODEL_METRICS_UPDATE, {"modelName": "xgb_v2", "rmse": 3.0}))

    reported = service.get_model_metrics("xgb_v2")["reported"]
    assert reported["mae"] == 2.1
    assert reported["rmse"] == 3.0


# --- Vendors ---

def test_vendor_load_prefers_pushed_state(make_service):
    service = make_service(FakeBackend(), vendor_api=FailingVendorApi())
    service.handle_live_message(load_update("VEN001", queueLength=4, capacityUtilization=0.7))

    load = run(service.get_vendor_load("VEN001"))

    assert load.queue_length == 4
    assert not load.is_fallback


def test_vendor_load_falls_back_when_backend_fails(make_service):
    service = make_service(FakeBackend(), vendor_api=FailingVendorApi())

    load = run(service.get_vendor_load("VEN009"))

    assert load == VendorLoad.fallback("VEN009")


def test_prediction_accuracy_falls_back(make_service):
    service = make_service(FakeBackend(), vendor_api=FailingVendorApi())

    accuracy = run(service.get_prediction_accuracy("VEN001"))

    assert accuracy["overall_accuracy"] == 0.85
    assert accuracy["recent_accuracy"] == 0.88
    assert accuracy["is_fallback"]


def test_subscription_without_channel_degrades(make_service):
    service = make_service(FakeBackend())

    assert not service.subscribe_to_vendor("VEN001")
    assert not service.unsubscribe_from_vendor("VEN001")


def test_subscription_with_channel(make_service):
    channel = LiveUpdateChannel(on_message=lambda raw: None, consumer_factory=lambda config: FakeConsumer())
    service = make_service(FakeBackend(), channel=channel)

    assert service.subscribe_to_vendor("VEN001")
    assert channel.subscriptions() == {"VEN001"}
    assert service.unsubscribe_from_vendor("VEN001")
    assert channel.subscriptions() == set()


def test_clear_vendor_cache(make_service):
    service = make_service(FakeBackend())
    service.handle_live_message(prediction_update("VEN001", "X", 12))
    service.handle_live_message(prediction_update("VEN001", "Y", 12))

    assert service.clear_vendor_cache("VEN001") == 2


def test_injected_empty_cache_is_used(make_service, cache):
    service = make_service(FakeBackend())

    assert len(cache) == 0
    assert service.cache is cache


def test_load_update_without_wait_time_derives_queue_effect(make_service):
    service = make_service(FakeBackend(quick=NetworkError("unused")))
    service.handle_live_message(prediction_update("VEN001", "X", 12, queue_effect=2))

    service.handle_live_message(load_update("VEN001", queueLength=8, currentActiveOrders=2, avgPreparationTime=10))
    prediction = run(service.get_quick_prediction("VEN001", "X"))

    assert prediction.breakdown.queue_effect == 40
    assert prediction.breakdown.queue_length == 8
    assert prediction.estimated_minutes == 12


def test_unreachable_redis_disables_accuracy_log(monkeypatch):
    unreachable = MagicMock()
    unreachable.ping.side_effect = redis.TimeoutError("Timeout connecting to server")
    monkeypatch.setattr(service_module, "ACCURACY_LOG_ENABLED", True)
    monkeypatch.setattr(service_module.redis, "Redis", lambda **kwargs: unreachable)

    service = PredictionService.from_config()
    try:
        assert service.tracker.record_log is None
        assert service.channel is not None
    finally:
        service.close()
