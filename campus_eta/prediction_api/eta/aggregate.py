"""
Combine item-level predictions into one order-level prediction.

Rules:
    estimated = ceil(sum(item estimates) + max(item queue effects))
    confidence = min(item confidences) * CONFIDENCE_DISCOUNT

Items share vendor capacity but hand off serially, so prep time sums; the
queue wait is shared, so only the worst single queue effect counts. Both the
rule and the discount are product heuristics and are kept as constants.
"""
import math
from datetime import datetime

from campus_eta.prediction_api.eta.fallback import FallbackEstimator
from campus_eta.prediction_api.eta.models import (
    Breakdown,
    ItemTrace,
    MenuItemFeatures,
    Prediction,
    PredictionSource,
)
from campus_eta.prediction_api.eta.window import calculate_pickup_window, utcnow

CONFIDENCE_DISCOUNT = 0.9
AGGREGATION_METHOD = "sum_prep_max_queue"


class AggregationEngine:

    def __init__(self, fallback: FallbackEstimator | None = None):
        self.fallback = fallback or FallbackEstimator()

    def aggregate(
        self,
        vendor_id: str,
        items: list[MenuItemFeatures],
        item_predictions: dict[str, Prediction],
        now: datetime | None = None,
    ) -> Prediction:
        """
        Aggregate per-item predictions for an order.

        Args:
            vendor_id: Vendor the order is placed with
            items: Cart lines
            item_predictions: Known predictions keyed by item_id; missing
                items get a single-item fallback estimate
            now: Reference time for the pickup window

        Returns:
            Prediction with source=aggregated, or the whole-order fallback
            for an empty cart
        """
        now = now or utcnow()

        if not items:
            return self.fallback.estimate_order(vendor_id, [], now=now)

        resolved = []
        for item in items:
            prediction = item_predictions.get(item.item_id)
            if prediction is None:
                prediction = self.fallback.estimate_item(vendor_id, item.item_id, now=now)
            resolved.append(prediction)

        total_prep_time = sum(p.estimated_minutes for p in resolved)
        max_queue_effect = max(p.breakdown.queue_effect for p in resolved)
        estimated = float(math.ceil(total_prep_time + max_queue_effect))
        confidence = min(p.confidence for p in resolved) * CONFIDENCE_DISCOUNT

        queue_lengths = [p.breakdown.queue_length for p in resolved if p.breakdown.queue_length is not None]
        warnings = tuple(sorted({w for p in resolved for w in p.warnings}))

        trace = tuple(
            ItemTrace(
                item_id=item.item_id,
                name=item.name,
                estimated_time=prediction.estimated_minutes,
                is_fallback=prediction.is_fallback,
            )
            for item, prediction in zip(items, resolved)
        )

        return Prediction(
            estimated_minutes=estimated,
            confidence=confidence,
            breakdown=Breakdown(
                base_time=total_prep_time,
                queue_effect=max_queue_effect,
                demand_factor=max(p.breakdown.demand_factor for p in resolved),
                queue_length=max(queue_lengths) if queue_lengths else None,
                items=trace,
            ),
            pickup_window=calculate_pickup_window(estimated, now),
            source=PredictionSource.AGGREGATED,
            computed_at=now,
            vendor_id=vendor_id,
            is_fallback=any(p.is_fallback for p in resolved),
            rush_detected=any(p.rush_detected for p in resolved),
            method=AGGREGATION_METHOD,
            warnings=warnings,
        )
