"""
Domain models for pickup-time prediction.

Value objects only: no backend calls, no caching, no aggregation rules.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

DEFAULT_BASE_PREP_MINUTES = 5.0


class PredictionSource(str, Enum):
    ML = "ml"
    FALLBACK = "fallback"
    AGGREGATED = "aggregated"
    SIMULATED = "simulated"


@dataclass(frozen=True)
class MenuItemFeatures:
    """
    Snapshot of one cart line taken at prediction time.

    Built from catalog + cart state; complexity may be missing in the catalog,
    in which case it is treated as 1 downstream.
    """
    item_id: str
    base_prep_minutes: float = DEFAULT_BASE_PREP_MINUTES
    complexity: int | None = 1
    quantity: int = 1
    name: str | None = None

    def __post_init__(self):
        if self.base_prep_minutes < 0:
            raise ValueError(f"base_prep_minutes must be >= 0, got {self.base_prep_minutes}")
        if self.quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {self.quantity}")

    @classmethod
    def from_dict(cls, data: dict) -> MenuItemFeatures:
        """
        Build from a cart/order line as sent by the web client.

        Accepts both the client's cart shape (``id``) and the ML backend's
        shape (``menu_item_id``).
        """
        item_id = data.get("menu_item_id") or data.get("item_id") or data.get("id")
        if not item_id:
            raise ValueError("order item has no id")

        base = data.get("base_preparation_time_minutes", data.get("base_prep_minutes"))
        complexity = data.get("preparation_complexity", data.get("complexity"))

        return cls(
            item_id=str(item_id),
            base_prep_minutes=float(base) if base is not None else DEFAULT_BASE_PREP_MINUTES,
            complexity=int(complexity) if complexity is not None else None,
            quantity=int(data.get("quantity", 1)),
            name=data.get("name"),
        )


@dataclass(frozen=True)
class OrderFeatures:
    total_base_minutes: float
    max_complexity: int
    total_item_count: int


@dataclass(frozen=True)
class PickupWindow:
    start: datetime
    end: datetime
    center: datetime

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "center": self.center.isoformat(),
        }


@dataclass(frozen=True)
class ItemTrace:
    """Per-item line of an aggregated breakdown."""
    item_id: str
    name: str | None
    estimated_time: float
    is_fallback: bool = False


@dataclass(frozen=True)
class Breakdown:
    base_time: float
    queue_effect: float
    demand_factor: float = 1.0
    queue_length: int | None = None
    items: tuple[ItemTrace, ...] = ()
    explanation: str | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "base_time": self.base_time,
            "queue_effect": self.queue_effect,
            "demand_factor": self.demand_factor,
            "queue_length": self.queue_length,
        }
        if self.items:
            data["items"] = [
                {
                    "item_id": item.item_id,
                    "name": item.name,
                    "estimated_time": item.estimated_time,
                    "is_fallback": item.is_fallback,
                }
                for item in self.items
            ]
        if self.explanation:
            data["explanation"] = self.explanation
        return data


@dataclass(frozen=True)
class Prediction:
    """
    A pickup-time prediction.

    ``estimated_minutes`` is the offset from ``computed_at`` to
    ``pickup_window.center``. Predictions are superseded by newer ones,
    never edited, except for the live queue patch (see ``PredictionCache``)
    which swaps in a copy with a refreshed breakdown.
    """
    estimated_minutes: float
    confidence: float
    breakdown: Breakdown
    pickup_window: PickupWindow
    source: PredictionSource
    computed_at: datetime
    vendor_id: str | None = None
    is_fallback: bool = False
    queue_position: int | None = None
    rush_detected: bool = False
    method: str | None = None
    live_adjusted: bool = False
    warnings: tuple[str, ...] = ()
    prediction_id: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)

    @property
    def model_name(self) -> str:
        return self.method or self.source.value

    def to_dict(self) -> dict:
        return {
            "prediction_id": self.prediction_id,
            "vendor_id": self.vendor_id,
            "estimated_minutes": self.estimated_minutes,
            "confidence": self.confidence,
            "breakdown": self.breakdown.to_dict(),
            "pickup_window": self.pickup_window.to_dict(),
            "source": self.source.value,
            "is_fallback": self.is_fallback,
            "computed_at": self.computed_at.isoformat(),
            "queue_position": self.queue_position,
            "rush_detected": self.rush_detected,
            "method": self.method,
            "live_adjusted": self.live_adjusted,
            "warnings": list(self.warnings),
        }


@dataclass
class VendorLoad:
    """Vendor kitchen load; last write wins."""
    vendor_id: str
    current_active_orders: int = 0
    queue_length: int = 0
    capacity_utilization: float = 0.0
    avg_preparation_time: float = 0.0
    wait_time: float | None = None
    is_fallback: bool = False

    @classmethod
    def from_payload(cls, vendor_id: str, payload: dict) -> VendorLoad:
        """Parse a load payload in either camelCase (push/REST) or snake_case."""
        def pick(camel: str, snake: str, default=None):
            if camel in payload:
                return payload[camel]
            return payload.get(snake, default)

        wait_time = pick("waitTime", "wait_time")
        return cls(
            vendor_id=vendor_id,
            current_active_orders=int(pick("currentActiveOrders", "current_active_orders", 0)),
            queue_length=int(pick("queueLength", "queue_length", 0)),
            capacity_utilization=float(pick("capacityUtilization", "capacity_utilization", 0.0)),
            avg_preparation_time=float(pick("avgPreparationTime", "avg_preparation_time", 0.0)),
            wait_time=float(wait_time) if wait_time is not None else None,
        )

    @classmethod
    def fallback(cls, vendor_id: str) -> VendorLoad:
        return cls(
            vendor_id=vendor_id,
            current_active_orders=0,
            queue_length=0,
            capacity_utilization=0.5,
            avg_preparation_time=10.0,
            is_fallback=True,
        )

    def to_dict(self) -> dict:
        return {
            "vendor_id": self.vendor_id,
            "current_active_orders": self.current_active_orders,
            "queue_length": self.queue_length,
            "capacity_utilization": self.capacity_utilization,
            "avg_preparation_time": self.avg_preparation_time,
            "wait_time": self.wait_time,
            "is_fallback": self.is_fallback,
        }


@dataclass(frozen=True)
class AccuracyRecord:
    vendor_id: str
    prediction_id: str
    predicted_minutes: float
    actual_minutes: float
    absolute_error_minutes: float
    reported_at: datetime
    model_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "vendor_id": self.vendor_id,
            "prediction_id": self.prediction_id,
            "predicted_minutes": self.predicted_minutes,
            "actual_minutes": self.actual_minutes,
            "absolute_error_minutes": self.absolute_error_minutes,
            "reported_at": self.reported_at.isoformat(),
            "model_name": self.model_name,
        }
