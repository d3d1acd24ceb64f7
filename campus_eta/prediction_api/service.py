"""
PredictionService: the engine's single entry point.

One instance per process owns the cache, the in-flight request tracker, the
live channel subscription, vendor state and accuracy tracking. Callers get a
Prediction from every browse-time path; only get_detailed_prediction can
raise (InvalidOrderError).
"""
import asyncio
import logging
import threading
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Callable, Hashable

import redis

from campus_eta.common.config import (
    ACCURACY_LOG_ENABLED,
    LOAD_INVALIDATE_UTILIZATION,
    ML_BACKEND_MODE,
    REDIS_HOST,
    REDIS_PORT,
)
from campus_eta.prediction_api.backend.ml import MLBackendClient
from campus_eta.prediction_api.backend.simulated import SimulatedBackend
from campus_eta.prediction_api.backend.vendors import VendorApiClient
from campus_eta.prediction_api.cache import CacheKey, PredictionCache
from campus_eta.prediction_api.client import PredictionClient, RequestTracker, to_prediction
from campus_eta.prediction_api.errors import (
    CancellationError,
    MalformedEventError,
    NetworkError,
)
from campus_eta.prediction_api.eta.aggregate import AggregationEngine
from campus_eta.prediction_api.eta.features import derive_load_features
from campus_eta.prediction_api.eta.models import (
    AccuracyRecord,
    MenuItemFeatures,
    Prediction,
    PredictionSource,
    VendorLoad,
)
from campus_eta.prediction_api.eta.window import utcnow
from campus_eta.prediction_api.live.channel import LiveUpdateChannel
from campus_eta.prediction_api.live.events import (
    DemandSpikeAlert,
    DemandSpikeWarning,
    LiveEvent,
    ModelMetricsUpdate,
    PredictionErrorEvent,
    PredictionUpdate,
    VendorLoadUpdate,
    decode_event,
)
from campus_eta.prediction_api.live.state import VendorStateStore
from campus_eta.prediction_api.monitoring.accuracy import AccuracyTracker, RedisAccuracyLog
from campus_eta.prediction_api.monitoring.metrics import LIVE_EVENTS, PREDICTIONS_SERVED

logger = logging.getLogger(__name__)

HISTORY_SIZE = 100
FALLBACK_ACCURACY = {
    "overall_accuracy": 0.85,
    "recent_accuracy": 0.88,
    "error_distribution": {},
    "is_fallback": True,
}


class PredictionService:

    def __init__(
        self,
        client: PredictionClient | None = None,
        cache: PredictionCache | None = None,
        aggregator: AggregationEngine | None = None,
        tracker: AccuracyTracker | None = None,
        vendor_state: VendorStateStore | None = None,
        vendor_api: VendorApiClient | None = None,
        channel: LiveUpdateChannel | None = None,
        load_invalidate_utilization: float = LOAD_INVALIDATE_UTILIZATION,
    ):
        self.client = client if client is not None else PredictionClient()
        self.cache = cache if cache is not None else PredictionCache()
        self.aggregator = aggregator if aggregator is not None else AggregationEngine(self.client.fallback)
        self.tracker = tracker if tracker is not None else AccuracyTracker()
        self.vendor_state = vendor_state if vendor_state is not None else VendorStateStore()
        self.vendor_api = vendor_api
        self.channel = channel
        self.load_invalidate_utilization = load_invalidate_utilization

        self._requests = RequestTracker()
        self._history: deque = deque(maxlen=HISTORY_SIZE)
        self._history_lock = threading.Lock()
        self._listeners: list[Callable] = []

    @classmethod
    def from_config(cls) -> "PredictionService":
        """Wire a service from environment configuration."""
        vendor_state = VendorStateStore()

        if ML_BACKEND_MODE == "simulated":
            backend = SimulatedBackend(load_lookup=vendor_state.get_load)
            logger.info("Using simulated ML backend")
        else:
            backend = MLBackendClient()

        vendor_api = VendorApiClient()
        record_log = None
        if ACCURACY_LOG_ENABLED:
            redis_client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
            )
            try:
                redis_client.ping()
                record_log = RedisAccuracyLog(redis_client)
                logger.info(f"Accuracy log connected to Redis at {REDIS_HOST}:{REDIS_PORT}")
            except redis.RedisError as e:
                logger.warning(f"Redis unavailable at {REDIS_HOST}:{REDIS_PORT}, accuracy log disabled: {e}")

        service = cls(
            client=PredictionClient(backend=backend),
            tracker=AccuracyTracker(record_log=record_log, sink=vendor_api.post_accuracy_record),
            vendor_state=vendor_state,
            vendor_api=vendor_api,
        )
        service.channel = LiveUpdateChannel(on_message=service.handle_live_message)
        return service

    # --- Lifecycle ---

    def start(self) -> None:
        if self.channel is not None:
            self.channel.start()

    def close(self) -> None:
        if self.channel is not None:
            self.channel.stop()
        self.client.close()

    # --- Serving helpers ---

    def _decorate(self, prediction: Prediction) -> Prediction:
        warnings = self.vendor_state.warnings_for(prediction.vendor_id)
        missing = tuple(w for w in warnings if w not in prediction.warnings)
        if missing:
            prediction = replace(prediction, warnings=prediction.warnings + missing)
        return prediction

    def _serve(self, kind: str, prediction: Prediction, record: bool = True) -> Prediction:
        prediction = self._decorate(prediction)
        PREDICTIONS_SERVED.labels(kind=kind, source=prediction.source.value).inc()
        if record:
            with self._history_lock:
                self._history.appendleft({
                    "kind": kind,
                    "vendor_id": prediction.vendor_id,
                    "prediction": prediction,
                    "timestamp": utcnow(),
                })
        return prediction

    async def _resolve(self, key: Hashable, fetch, ttl: float, kind: str, publish=None):
        """
        Run ``fetch`` as the newest request for ``key`` and cache its result.

        A superseded request never writes to the cache; its caller receives
        the result of the request that superseded it.
        """
        publish = publish or (lambda value: self.cache.put(key, value, ttl))

        async def run(generation: int):
            value = await fetch()
            if not self._requests.is_current(key, generation):
                raise CancellationError(f"Stale response for {key}")
            publish(value)
            return value

        _, task = self._requests.start(key, run, kind=kind)
        while True:
            try:
                return await asyncio.shield(task)
            except (asyncio.CancelledError, CancellationError):
                if not task.done():
                    raise

            newer = self._requests.latest(key)
            if newer is not None and newer is not task:
                task = newer
                continue

            cached = self.cache.get(key)
            if cached is not None:
                return cached
            _, task = self._requests.start(key, run, kind=kind)

    # --- Browse-time predictions ---

    async def get_quick_prediction(self, vendor_id: str, item_id: str, quantity: int = 1) -> Prediction:
        key = CacheKey.quick(vendor_id, item_id, quantity)
        cached = self.cache.get(key)
        if cached is None:
            cached = await self._resolve(
                key,
                lambda: self.client.get_quick_estimate(vendor_id, item_id, quantity),
                ttl=self.cache.default_ttl,
                kind="quick",
            )
        return self._serve("quick", cached)

    async def get_batch_predictions(self, vendor_id: str, item_ids: list[str]) -> dict[str, Prediction]:
        key = CacheKey.batch(vendor_id, item_ids)
        cached = self.cache.get(key)

        if cached is None:
            def publish(predictions: dict[str, Prediction]) -> None:
                self.cache.put(key, predictions, self.cache.batch_ttl)
                for item_id, prediction in predictions.items():
                    self.cache.put(CacheKey.quick(vendor_id, item_id), prediction, self.cache.default_ttl)

            cached = await self._resolve(
                key,
                lambda: self.client.get_batch_predictions(vendor_id, list(key.item_ids)),
                ttl=self.cache.batch_ttl,
                kind="batch",
                publish=publish,
            )

        return {item_id: self._serve("batch", p, record=False) for item_id, p in cached.items()}

    def _known_item_prediction(self, vendor_id: str, item: MenuItemFeatures) -> Prediction | None:
        prediction = self.cache.get(CacheKey.quick(vendor_id, item.item_id, item.quantity))
        if prediction is None and item.quantity != 1:
            prediction = self.cache.get(CacheKey.quick(vendor_id, item.item_id, 1))
        return prediction

    def get_aggregated_prediction(self, vendor_id: str, items: list) -> Prediction:
        """
        Order-level prediction from already-known item predictions.

        Synchronous: items without a cached prediction use the item fallback.
        """
        lines = [i if isinstance(i, MenuItemFeatures) else MenuItemFeatures.from_dict(i) for i in items]
        known = {}
        for line in lines:
            prediction = self._known_item_prediction(vendor_id, line)
            if prediction is not None:
                known[line.item_id] = prediction

        aggregated = self.aggregator.aggregate(vendor_id, lines, known)
        self.tracker.register(aggregated)
        return self._serve("aggregated", aggregated)

    # --- Checkout ---

    async def get_detailed_prediction(self, order_data: dict) -> Prediction:
        """
        Checkout-time prediction; registered for accuracy reporting.

        Raises:
            InvalidOrderError: If the order cannot be priced
        """
        prediction = await self.client.get_detailed_prediction(order_data)
        self.tracker.register(prediction)
        return self._serve("detailed", prediction)

    # --- Accuracy ---

    async def report_accuracy(self, prediction_id: str, actual_minutes: float) -> AccuracyRecord:
        """
        Raises:
            UnknownPredictionError: If the id was never issued or already reported
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.tracker.report, prediction_id, actual_minutes)

    def get_accuracy_metrics(self, vendor_id: str | None = None, model_name: str | None = None) -> dict:
        return self.tracker.get_metrics(vendor_id=vendor_id, model_name=model_name)

    async def get_prediction_accuracy(self, vendor_id: str, time_range: str = "day") -> dict:
        """Accuracy as reported by the vendor backend, with a neutral fallback."""
        if self.vendor_api is None:
            return dict(FALLBACK_ACCURACY)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, self.vendor_api.get_prediction_accuracy, vendor_id, time_range
            )
        except NetworkError as e:
            logger.warning(f"Failed to fetch prediction accuracy for {vendor_id}: {e}")
            return dict(FALLBACK_ACCURACY)

    # --- Vendors ---

    async def get_vendor_load(self, vendor_id: str) -> VendorLoad:
        known = self.vendor_state.get_load(vendor_id)
        if known is not None:
            return known
        if self.vendor_api is None:
            return VendorLoad.fallback(vendor_id)

        loop = asyncio.get_running_loop()
        try:
            load = await loop.run_in_executor(None, self.vendor_api.get_vendor_load, vendor_id)
        except NetworkError as e:
            logger.warning(f"Failed to fetch vendor load for {vendor_id}: {e}")
            return VendorLoad.fallback(vendor_id)

        self.vendor_state.set_load(load)
        return load

    def subscribe_to_vendor(self, vendor_id: str) -> bool:
        if self.channel is None:
            logger.warning(f"No live channel configured; vendor {vendor_id} relies on cache TTL only")
            return False
        self.channel.subscribe(vendor_id)
        return True

    def unsubscribe_from_vendor(self, vendor_id: str) -> bool:
        if self.channel is None:
            return False
        self.channel.unsubscribe(vendor_id)
        return True

    def clear_vendor_cache(self, vendor_id: str) -> int:
        return self.cache.invalidate_vendor(vendor_id)

    def get_prediction_history(self, limit: int = 50) -> list[dict]:
        with self._history_lock:
            return list(self._history)[:limit]

    def get_model_metrics(self, model_name: str = "default") -> dict:
        return self.tracker.get_model_metrics(model_name)

    # --- Live updates ---

    def add_listener(self, listener: Callable) -> None:
        """Register a callback receiving every live event and DemandSpikeWarning."""
        self._listeners.append(listener)

    def _notify(self, item) -> None:
        for listener in list(self._listeners):
            try:
                listener(item)
            except Exception:
                logger.exception(f"Live listener {listener!r} failed")

    def handle_live_message(self, raw) -> LiveEvent | None:
        """Decode one channel message and apply it. Never raises."""
        try:
            event = decode_event(raw)
        except MalformedEventError as e:
            LIVE_EVENTS.labels(type="unknown", status="malformed").inc()
            logger.error(f"Dropped malformed live event: {e}")
            return None

        try:
            self.apply_event(event)
        except Exception:
            LIVE_EVENTS.labels(type=event.type.value, status="failed").inc()
            logger.exception(f"Failed to apply live event {event.type.value}")
            return None

        LIVE_EVENTS.labels(type=event.type.value, status="applied").inc()
        self._notify(event)
        return event

    def apply_event(self, event: LiveEvent, now: datetime | None = None) -> None:
        if isinstance(event, PredictionUpdate):
            prediction = to_prediction(event.prediction, event.vendor_id, PredictionSource.ML, now)
            key = CacheKey.quick(event.vendor_id, event.item_id, event.quantity)
            self.cache.put(key, prediction, self.cache.default_ttl)

        elif isinstance(event, VendorLoadUpdate):
            load = event.load
            self.vendor_state.set_load(load)
            if load.capacity_utilization >= self.load_invalidate_utilization:
                logger.info(
                    f"Vendor {load.vendor_id} at {load.capacity_utilization:.0%} capacity, "
                    f"invalidating cached predictions"
                )
                self.cache.invalidate_vendor(load.vendor_id)
            else:
                self.cache.patch_vendor_queue(
                    load.vendor_id,
                    queue_effect=derive_load_features(load)["queue_effect_minutes"],
                    queue_length=load.queue_length,
                )

        elif isinstance(event, ModelMetricsUpdate):
            self.tracker.update_model_metrics(event.model_name, event.metrics)

        elif isinstance(event, DemandSpikeAlert):
            if event.is_high:
                message = event.message or "Demand spike: cached estimates may understate wait time"
                logger.warning(f"High demand spike for vendor {event.vendor_id}: {message}")
                self.vendor_state.flag_demand_spike(event.vendor_id)
                self._notify(DemandSpikeWarning(event.vendor_id, event.intensity, message))
            else:
                logger.info(f"Demand spike for vendor {event.vendor_id} (intensity {event.intensity:.2f})")

        elif isinstance(event, PredictionErrorEvent):
            logger.error(f"Prediction service error for vendor {event.vendor_id}: {event.message}")
