from datetime import datetime, timezone

import pytest

from campus_eta.prediction_api.cache import PredictionCache
from campus_eta.prediction_api.client import PredictionClient
from campus_eta.prediction_api.eta.models import MenuItemFeatures
from campus_eta.prediction_api.live.state import VendorStateStore
from campus_eta.prediction_api.monitoring.accuracy import AccuracyTracker
from campus_eta.prediction_api.service import PredictionService
from tests.fakes import FakeClock


@pytest.fixture
def fixed_now():
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return PredictionCache(default_ttl=30.0, batch_ttl=60.0, clock=clock)


@pytest.fixture
def cart():
    return [
        MenuItemFeatures(item_id="ITM1", base_prep_minutes=10, complexity=2, quantity=1, name="Burger"),
        MenuItemFeatures(item_id="ITM2", base_prep_minutes=4, complexity=1, quantity=2, name="Fries"),
    ]


@pytest.fixture
def make_client():
    created = []

    def factory(backend, **kwargs):
        kwargs.setdefault("quick_timeout", 0.5)
        kwargs.setdefault("detailed_timeout", 0.5)
        client = PredictionClient(backend=backend, **kwargs)
        created.append(client)
        return client

    yield factory
    for client in created:
        client.close()


@pytest.fixture
def make_service(make_client, cache, clock):
    def factory(backend, **kwargs):
        return PredictionService(
            client=make_client(backend),
            cache=cache,
            tracker=AccuracyTracker(),
            vendor_state=VendorStateStore(spike_warning_s=300, clock=clock),
            **kwargs,
        )

    return factory
