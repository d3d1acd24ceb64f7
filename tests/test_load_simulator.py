from campus_eta.load_simulator.main import CAMPUS_VENDORS, KitchenSimulator
from campus_eta.prediction_api.live.events import EventType, VendorLoadUpdate, decode_event, encode_event


def test_load_events_decode_as_vendor_load_updates():
    simulator = KitchenSimulator(CAMPUS_VENDORS, seed=7)

    for _ in range(20):
        for vendor, event_type, payload in simulator.generate_events():
            event = decode_event(encode_event(event_type, payload))
            assert event.vendor_id == vendor.vendor_id
            if event_type is EventType.VENDOR_LOAD_UPDATE:
                assert isinstance(event, VendorLoadUpdate)
                assert 0.0 <= event.load.capacity_utilization <= 1.0
                assert event.load.queue_length == simulator.queues[vendor.vendor_id]


def test_simulation_is_reproducible_with_seed():
    first = KitchenSimulator(CAMPUS_VENDORS, seed=42)
    second = KitchenSimulator(CAMPUS_VENDORS, seed=42)

    for _ in range(10):
        assert [p for _, _, p in first.generate_events()] == [p for _, _, p in second.generate_events()]


def test_every_vendor_reports_load_each_tick():
    events = KitchenSimulator(CAMPUS_VENDORS, seed=1).generate_events()

    load_vendors = [v.vendor_id for v, t, _ in events if t is EventType.VENDOR_LOAD_UPDATE]
    assert load_vendors == [v.vendor_id for v in CAMPUS_VENDORS]
