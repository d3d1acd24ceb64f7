"""
Async prediction client.

Wraps a blocking backend (HTTP or simulated) so that:
    - calls run in a thread pool and never block the event loop
    - every call is bounded by a latency budget
    - any failure degrades to FallbackEstimator output instead of raising

The only exception that escapes is InvalidOrderError from
get_detailed_prediction, for orders not even the fallback can price.
"""
import asyncio
import itertools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Awaitable, Callable, Hashable

from campus_eta.common.config import (
    DETAILED_RETRIES,
    DETAILED_TIMEOUT_S,
    MIN_ML_CONFIDENCE,
    QUICK_TIMEOUT_S,
)
from campus_eta.prediction_api.backend.ml import MLBackendClient, parse_prediction
from campus_eta.prediction_api.errors import InvalidOrderError, NetworkError
from campus_eta.prediction_api.eta.fallback import FallbackEstimator
from campus_eta.prediction_api.eta.features import assemble_backend_payload, extract_order_features
from campus_eta.prediction_api.eta.models import (
    Breakdown,
    MenuItemFeatures,
    Prediction,
    PredictionSource,
)
from campus_eta.prediction_api.eta.window import calculate_pickup_window, utcnow
from campus_eta.prediction_api.monitoring.metrics import (
    BACKEND_ERRORS,
    BACKEND_LATENCY,
    FALLBACKS,
    SUPERSEDED_REQUESTS,
)
from campus_eta.prediction_api.schemas import BackendPrediction

logger = logging.getLogger(__name__)

BACKEND_WORKERS = 8


def parse_order(order_data: dict) -> tuple[str, list[MenuItemFeatures]]:
    """
    Validate checkout order data.

    Raises:
        InvalidOrderError: If the vendor is missing, the cart is empty, or a line is invalid
    """
    vendor_id = order_data.get("vendor_id") or order_data.get("vendorId")
    if not vendor_id:
        raise InvalidOrderError("Order has no vendor")

    raw_items = order_data.get("items") or []
    if not raw_items:
        raise InvalidOrderError("Order has no items")

    items = []
    for index, raw in enumerate(raw_items):
        if isinstance(raw, MenuItemFeatures):
            items.append(raw)
            continue
        try:
            items.append(MenuItemFeatures.from_dict(raw))
        except (AttributeError, TypeError, ValueError) as e:
            raise InvalidOrderError(f"Order item {index} is invalid: {e}") from e

    return str(vendor_id), items


def to_prediction(
    payload: BackendPrediction,
    vendor_id: str,
    source: PredictionSource,
    now: datetime | None = None,
) -> Prediction:
    """Turn a validated backend payload into a Prediction."""
    now = now or utcnow()

    if payload.estimated_minutes is not None:
        estimated = payload.estimated_minutes
    else:
        ready_at = payload.predicted_ready_time
        if ready_at.tzinfo is None:
            ready_at = ready_at.replace(tzinfo=now.tzinfo)
        estimated = max(0.0, (ready_at - now).total_seconds() / 60)

    raw = payload.breakdown
    queue_effect = raw.queue_effect if raw else 0.0
    base_time = raw.base_time if raw and raw.base_time is not None else max(0.0, estimated - queue_effect)

    return Prediction(
        estimated_minutes=estimated,
        confidence=payload.confidence,
        breakdown=Breakdown(
            base_time=base_time,
            queue_effect=queue_effect,
            demand_factor=raw.demand_factor if raw else 1.0,
            queue_length=raw.queue_length if raw else None,
        ),
        pickup_window=calculate_pickup_window(estimated, now),
        source=source,
        computed_at=now,
        vendor_id=vendor_id,
        queue_position=payload.queue_position,
        rush_detected=payload.rush_detected,
        method=payload.method,
    )


class RequestTracker:
    """
    Generation stamps and latest in-flight task per logical key.

    Starting a request for a key cancels the previous in-flight one. A task
    must check ``is_current`` before publishing its result; a late response
    from a superseded generation is dropped. Keys are forgotten once their
    latest task finishes; generations are never reused. Event-loop only.
    """

    def __init__(self):
        self._counter = itertools.count(1)
        self._generations: dict[Hashable, int] = {}
        self._inflight: dict[Hashable, asyncio.Task] = {}

    def start(
        self,
        key: Hashable,
        run: Callable[[int], Awaitable],
        kind: str = "quick",
    ) -> tuple[int, asyncio.Task]:
        generation = next(self._counter)
        self._generations[key] = generation

        previous = self._inflight.get(key)
        if previous is not None and not previous.done():
            previous.cancel()
            SUPERSEDED_REQUESTS.labels(kind=kind).inc()
            logger.debug(f"Superseded in-flight request for {key}")

        task = asyncio.ensure_future(run(generation))
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._forget(key, t))
        return generation, task

    def _forget(self, key: Hashable, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
            self._generations.pop(key, None)

    def is_current(self, key: Hashable, generation: int) -> bool:
        return self._generations.get(key) == generation

    def latest(self, key: Hashable) -> asyncio.Task | None:
        return self._inflight.get(key)


class PredictionClient:

    def __init__(
        self,
        backend=None,
        fallback: FallbackEstimator | None = None,
        quick_timeout: float = QUICK_TIMEOUT_S,
        detailed_timeout: float = DETAILED_TIMEOUT_S,
        detailed_retries: int = DETAILED_RETRIES,
        min_confidence: float = MIN_ML_CONFIDENCE,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.backend = backend or MLBackendClient()
        self.fallback = fallback or FallbackEstimator()
        self.quick_timeout = quick_timeout
        self.detailed_timeout = detailed_timeout
        self.detailed_retries = detailed_retries
        self.min_confidence = min_confidence
        self._executor = executor or ThreadPoolExecutor(
            max_workers=BACKEND_WORKERS, thread_name_prefix="ml-backend"
        )

    @property
    def source(self) -> PredictionSource:
        return getattr(self.backend, "source", PredictionSource.ML)

    async def _call(self, operation: str, fn, *args, timeout: float):
        """
        Run a blocking backend call in the pool, bounded by ``timeout``.

        Raises:
            NetworkError: On timeout or backend failure (MalformedResponseError included)
        """
        loop = asyncio.get_running_loop()
        start = time.perf_counter()
        try:
            future = loop.run_in_executor(self._executor, lambda: fn(*args, timeout=timeout))
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            BACKEND_ERRORS.labels(operation=operation, error_type="timeout").inc()
            raise NetworkError(f"{operation} exceeded {timeout}s budget")
        except NetworkError as e:
            BACKEND_ERRORS.labels(operation=operation, error_type=type(e).__name__).inc()
            raise
        finally:
            BACKEND_LATENCY.labels(operation=operation).observe(time.perf_counter() - start)

    def _trusted(self, payload: BackendPrediction) -> bool:
        return payload.confidence >= self.min_confidence

    async def get_quick_estimate(self, vendor_id: str, item_id: str, quantity: int = 1) -> Prediction:
        """
        Single-item browse-time estimate.

        No retries: on any failure the deterministic item fallback is
        returned immediately to keep the menu responsive.
        """
        try:
            payload = await self._call(
                "quick", self.backend.predict_quick, vendor_id, item_id, quantity,
                timeout=self.quick_timeout,
            )
        except NetworkError as e:
            logger.warning(f"Quick estimate for {vendor_id}/{item_id} fell back: {e}")
            FALLBACKS.labels(kind="quick", reason="network").inc()
            return self.fallback.estimate_item(vendor_id, item_id)

        if not self._trusted(payload):
            FALLBACKS.labels(kind="quick", reason="low_confidence").inc()
            return self.fallback.estimate_item(vendor_id, item_id)

        return to_prediction(payload, vendor_id, self.source)

    async def get_batch_predictions(self, vendor_id: str, item_ids: list[str]) -> dict[str, Prediction]:
        """
        Estimates for many items in one round trip.

        Items the backend leaves out, or answers with a bad payload, get an
        individual fallback; the rest of the batch is kept.
        """
        item_ids = list(dict.fromkeys(item_ids))
        try:
            raw = await self._call(
                "batch", self.backend.predict_batch, vendor_id, item_ids,
                timeout=self.quick_timeout,
            )
        except NetworkError as e:
            logger.warning(f"Batch estimate for {vendor_id} ({len(item_ids)} items) fell back: {e}")
            FALLBACKS.labels(kind="batch", reason="network").inc()
            return {item_id: self.fallback.estimate_item(vendor_id, item_id) for item_id in item_ids}

        now = utcnow()
        results = {}
        for item_id in item_ids:
            try:
                payload = parse_prediction(raw.get(item_id))
            except NetworkError as e:
                logger.warning(f"Batch entry {vendor_id}/{item_id} fell back: {e}")
                FALLBACKS.labels(kind="batch", reason="malformed").inc()
                results[item_id] = self.fallback.estimate_item(vendor_id, item_id, now=now)
                continue

            if not self._trusted(payload):
                FALLBACKS.labels(kind="batch", reason="low_confidence").inc()
                results[item_id] = self.fallback.estimate_item(vendor_id, item_id, now=now)
                continue

            results[item_id] = to_prediction(payload, vendor_id, self.source, now)
        return results

    async def get_detailed_prediction(self, order_data: dict) -> Prediction:
        """
        Checkout-time prediction for a whole order.

        Sends order features plus the raw cart to the backend, retrying up
        to ``detailed_retries`` times before falling back to the
        whole-order estimate.

        Raises:
            InvalidOrderError: If the order cannot be priced at all
        """
        vendor_id, items = parse_order(order_data)
        features = extract_order_features(items)
        payload = assemble_backend_payload(vendor_id, items, features)

        attempts = 1 + max(0, self.detailed_retries)
        for attempt in range(1, attempts + 1):
            try:
                result = await self._call(
                    "detailed", self.backend.predict_order, payload,
                    timeout=self.detailed_timeout,
                )
            except NetworkError as e:
                logger.warning(f"Detailed prediction for {vendor_id} failed (attempt {attempt}/{attempts}): {e}")
                continue

            if not self._trusted(result):
                FALLBACKS.labels(kind="detailed", reason="low_confidence").inc()
                return self.fallback.estimate_order(vendor_id, items)
            return to_prediction(result, vendor_id, self.source)

        FALLBACKS.labels(kind="detailed", reason="network").inc()
        return self.fallback.estimate_order(vendor_id, items)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
