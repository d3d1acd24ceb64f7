from typing import Iterable

from campus_eta.prediction_api.eta.models import MenuItemFeatures, OrderFeatures, VendorLoad

MIN_COMPLEXITY = 1
TARGET_UTILIZATION = 0.8


def safe_div(numerator: float, denominator: float) -> float:
    """Safe division that returns 0.0 when denominator is zero."""
    return numerator / denominator if denominator > 0 else 0.0


def extract_order_features(items: Iterable[MenuItemFeatures]) -> OrderFeatures:
    """
    Aggregate cart lines into order-level features.

    Args:
        items: Cart lines (any order)

    Returns:
        OrderFeatures with:
            - total_base_minutes: sum of base_prep_minutes * quantity
            - max_complexity: highest complexity, floored at 1
            - total_item_count: sum of quantities

    An empty cart yields (0, 1, 0).
    """
    total_base = 0.0
    max_complexity = MIN_COMPLEXITY
    total_items = 0

    for item in items:
        total_base += item.base_prep_minutes * item.quantity
        complexity = item.complexity if item.complexity is not None else MIN_COMPLEXITY
        max_complexity = max(max_complexity, complexity)
        total_items += item.quantity

    return OrderFeatures(
        total_base_minutes=total_base,
        max_complexity=max_complexity,
        total_item_count=total_items,
    )


def assemble_backend_payload(
    vendor_id: str,
    items: list[MenuItemFeatures],
    features: OrderFeatures,
) -> dict:
    """
    Assemble the request body for the ML backend's ``POST /predict``.

    Combines the raw cart lines with the order-level features.

    Args:
        vendor_id: Vendor the order is placed with
        items: Cart lines
        features: Output of extract_order_features(items)

    Returns:
        JSON-serializable payload
    """
    return {
        "vendor_id": vendor_id,
        "items": [
            {
                "menu_item_id": item.item_id,
                "quantity": item.quantity,
                "base_preparation_time_minutes": item.base_prep_minutes,
                "preparation_complexity": item.complexity if item.complexity is not None else MIN_COMPLEXITY,
            }
            for item in items
        ],
        "total_base_time_minutes": features.total_base_minutes,
        "max_complexity": features.max_complexity,
        "total_items": features.total_item_count,
    }


def derive_load_features(load: VendorLoad) -> dict:
    """
    Compute derived kitchen-load features from a VendorLoad.

    Output:
        - queue_effect_minutes: the pushed wait time if known, otherwise
          queue_length * avg_preparation_time spread over active orders
        - load_pressure: 0-1 score, 0 below the target utilization
        - demand_factor: 1 + load_pressure
    """
    if load.wait_time is not None:
        queue_effect = load.wait_time
    else:
        per_order = safe_div(load.avg_preparation_time, max(load.current_active_orders, 1))
        queue_effect = load.queue_length * per_order

    # Above target utilization, pressure climbs linearly to 1 at full capacity.
    pressure = safe_div(load.capacity_utilization - TARGET_UTILIZATION, 1.0 - TARGET_UTILIZATION)
    pressure = max(0.0, min(1.0, pressure))

    return {
        "queue_effect_minutes": round(queue_effect, 3),
        "load_pressure": round(pressure, 3),
        "demand_factor": round(1.0 + pressure, 3),
    }
