"""
Local stand-in for the ML prediction service.

Selected with ML_BACKEND_MODE=simulated for development without the model
server. Results are deterministic for the same inputs and vendor load, and
are tagged ``source=simulated`` so they are never mistaken for model output.
"""
from typing import Callable

from campus_eta.prediction_api.eta.fallback import stable_hash
from campus_eta.prediction_api.eta.features import derive_load_features
from campus_eta.prediction_api.eta.models import PredictionSource, VendorLoad
from campus_eta.prediction_api.schemas import BackendBreakdown, BackendPrediction

SIMULATED_CONFIDENCE = 0.6
COMPLEXITY_STEP = 0.1
RUSH_PRESSURE = 0.5


class SimulatedBackend:
    source = PredictionSource.SIMULATED

    def __init__(self, load_lookup: Callable[[str], VendorLoad | None] | None = None):
        self._load_lookup = load_lookup or (lambda vendor_id: None)

    def _load_features(self, vendor_id: str) -> dict:
        load = self._load_lookup(vendor_id) or VendorLoad(vendor_id=vendor_id)
        return derive_load_features(load)

    def _build(self, vendor_id: str, base_time: float) -> BackendPrediction:
        load = self._load_features(vendor_id)
        prep = base_time * load["demand_factor"]
        return BackendPrediction(
            estimated_minutes=round(prep + load["queue_effect_minutes"], 2),
            confidence=SIMULATED_CONFIDENCE,
            method="simulated",
            rush_detected=load["load_pressure"] >= RUSH_PRESSURE,
            breakdown=BackendBreakdown(
                base_time=base_time,
                queue_effect=load["queue_effect_minutes"],
                demand_factor=load["demand_factor"],
            ),
        )

    def predict_quick(self, vendor_id: str, item_id: str, quantity: int = 1, timeout: float | None = None):
        base_time = 5 + stable_hash(f"{vendor_id}:{item_id}") % 10
        return self._build(vendor_id, float(base_time * quantity))

    def predict_batch(self, vendor_id: str, item_ids: list[str], timeout: float | None = None) -> dict:
        return {
            item_id: self.predict_quick(vendor_id, item_id).model_dump()
            for item_id in item_ids
        }

    def predict_order(self, payload: dict, timeout: float | None = None) -> BackendPrediction:
        complexity_factor = 1 + COMPLEXITY_STEP * (payload["max_complexity"] - 1)
        return self._build(payload["vendor_id"], payload["total_base_time_minutes"] * complexity_factor)
