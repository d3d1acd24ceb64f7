"""
Local, dependency-free pickup-time estimates.

Used whenever the ML backend is unreachable, slow, or returns something we
cannot trust. Two modes:

- single item: a repeatable baseline derived from a hash of
  ``vendor_id:item_id`` so repeated failures never make the UI flicker
- whole order: total base minutes plus a fixed 50% safety margin, with
  confidence 0 to mark the value as non-authoritative
"""
from datetime import datetime

from campus_eta.prediction_api.eta.features import extract_order_features
from campus_eta.prediction_api.eta.models import (
    Breakdown,
    MenuItemFeatures,
    Prediction,
    PredictionSource,
)
from campus_eta.prediction_api.eta.window import calculate_pickup_window, utcnow

ITEM_BASE_MINUTES = 5
ITEM_BASE_SPREAD = 10
ITEM_QUEUE_SPREAD = 5
ITEM_CONFIDENCE = 0.7

ORDER_SAFETY_MARGIN = 1.5
ORDER_CONFIDENCE = 0.0
UNKNOWN_QUEUE_POSITION = -1

ITEM_METHOD = "hash_fallback"
ORDER_METHOD = "client_fallback"


def stable_hash(key: str) -> int:
    """Sum of code points; deterministic across processes and runs."""
    return sum(ord(char) for char in key)


class FallbackEstimator:

    def estimate(
        self,
        vendor_id: str,
        item_id: str | None = None,
        items: list[MenuItemFeatures] | None = None,
        now: datetime | None = None,
    ) -> Prediction:
        """
        Estimate without the ML backend.

        Args:
            vendor_id: Vendor the estimate is for
            item_id: Item for the single-item mode
            items: Cart lines; when given, the whole-order mode is used
            now: Reference time for the pickup window

        Returns:
            Prediction with source=fallback and is_fallback=True
        """
        if items is not None:
            return self.estimate_order(vendor_id, items, now=now)
        if item_id is None:
            raise ValueError("either item_id or items is required")
        return self.estimate_item(vendor_id, item_id, now=now)

    def estimate_item(self, vendor_id: str, item_id: str, now: datetime | None = None) -> Prediction:
        now = now or utcnow()
        digest = stable_hash(f"{vendor_id}:{item_id}")

        base_time = ITEM_BASE_MINUTES + (digest % ITEM_BASE_SPREAD)
        queue_effect = digest % ITEM_QUEUE_SPREAD
        estimated = float(base_time + queue_effect)

        return Prediction(
            estimated_minutes=estimated,
            confidence=ITEM_CONFIDENCE,
            breakdown=Breakdown(
                base_time=float(base_time),
                queue_effect=float(queue_effect),
                demand_factor=1.0,
                explanation="Using fallback estimation",
            ),
            pickup_window=calculate_pickup_window(estimated, now),
            source=PredictionSource.FALLBACK,
            computed_at=now,
            vendor_id=vendor_id,
            is_fallback=True,
            method=ITEM_METHOD,
        )

    def estimate_order(
        self,
        vendor_id: str,
        items: list[MenuItemFeatures],
        now: datetime | None = None,
    ) -> Prediction:
        now = now or utcnow()
        features = extract_order_features(items)
        estimated = features.total_base_minutes * ORDER_SAFETY_MARGIN

        return Prediction(
            estimated_minutes=estimated,
            confidence=ORDER_CONFIDENCE,
            breakdown=Breakdown(
                base_time=features.total_base_minutes,
                queue_effect=0.0,
                demand_factor=1.0,
                explanation="ML service unavailable, base time with safety margin",
            ),
            pickup_window=calculate_pickup_window(estimated, now),
            source=PredictionSource.FALLBACK,
            computed_at=now,
            vendor_id=vendor_id,
            is_fallback=True,
            queue_position=UNKNOWN_QUEUE_POSITION,
            method=ORDER_METHOD,
        )
