"""
Typed live-channel events.

Wire envelope: ``{"type": "<EVENT_TYPE>", "payload": {...}}`` (JSON). The set
of event kinds is closed; anything else is a MalformedEventError.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from pydantic import ValidationError

from campus_eta.prediction_api.errors import MalformedEventError
from campus_eta.prediction_api.eta.models import VendorLoad
from campus_eta.prediction_api.eta.window import utcnow
from campus_eta.prediction_api.schemas import BackendPrediction

HIGH_INTENSITY = 0.7
INTENSITY_LEVELS = {"low": 0.3, "medium": 0.5, "high": 1.0}


class EventType(str, Enum):
    PREDICTION_UPDATE = "PREDICTION_UPDATE"
    VENDOR_LOAD_UPDATE = "VENDOR_LOAD_UPDATE"
    MODEL_METRICS_UPDATE = "MODEL_METRICS_UPDATE"
    DEMAND_SPIKE_ALERT = "DEMAND_SPIKE_ALERT"
    PREDICTION_ERROR = "PREDICTION_ERROR"


@dataclass(frozen=True)
class PredictionUpdate:
    vendor_id: str
    item_id: str
    prediction: BackendPrediction
    quantity: int = 1
    type: EventType = field(default=EventType.PREDICTION_UPDATE, init=False)


@dataclass(frozen=True)
class VendorLoadUpdate:
    vendor_id: str
    load: VendorLoad
    type: EventType = field(default=EventType.VENDOR_LOAD_UPDATE, init=False)


@dataclass(frozen=True)
class ModelMetricsUpdate:
    model_name: str
    metrics: dict
    type: EventType = field(default=EventType.MODEL_METRICS_UPDATE, init=False)


@dataclass(frozen=True)
class DemandSpikeAlert:
    vendor_id: str
    intensity: float
    message: str | None = None
    type: EventType = field(default=EventType.DEMAND_SPIKE_ALERT, init=False)

    @property
    def is_high(self) -> bool:
        return self.intensity >= HIGH_INTENSITY


@dataclass(frozen=True)
class PredictionErrorEvent:
    vendor_id: str | None
    message: str
    type: EventType = field(default=EventType.PREDICTION_ERROR, init=False)


LiveEvent = Union[PredictionUpdate, VendorLoadUpdate, ModelMetricsUpdate, DemandSpikeAlert, PredictionErrorEvent]


@dataclass(frozen=True)
class DemandSpikeWarning:
    """Surfaced to listeners when a high-intensity spike makes cached estimates optimistic."""
    vendor_id: str
    intensity: float
    message: str
    issued_at: datetime = field(default_factory=utcnow)


def _vendor(payload: dict, required: bool = True) -> str | None:
    vendor_id = payload.get("vendorId") or payload.get("vendor_id")
    if required and not vendor_id:
        raise MalformedEventError("Event payload has no vendorId")
    return str(vendor_id) if vendor_id else None


def parse_intensity(value) -> float:
    if isinstance(value, str):
        level = INTENSITY_LEVELS.get(value.lower())
        if level is None:
            raise MalformedEventError(f"Unknown demand spike intensity {value!r}")
        return level
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0 <= value <= 1:
        return float(value)
    raise MalformedEventError(f"Invalid demand spike intensity {value!r}")


def decode_event(raw) -> LiveEvent:
    """
    Decode one channel message into a typed event.

    Args:
        raw: bytes / str JSON, or an already-parsed envelope dict

    Raises:
        MalformedEventError: On invalid JSON, unknown type, or invalid payload
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedEventError(f"Invalid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise MalformedEventError("Envelope is not an object")

    try:
        event_type = EventType(raw.get("type"))
    except ValueError:
        raise MalformedEventError(f"Unknown event type {raw.get('type')!r}")

    payload = raw.get("payload")
    if not isinstance(payload, dict):
        raise MalformedEventError(f"{event_type.value} has no payload object")

    try:
        if event_type is EventType.PREDICTION_UPDATE:
            item_id = payload.get("itemId") or payload.get("item_id")
            if not item_id:
                raise MalformedEventError("PREDICTION_UPDATE has no itemId")
            return PredictionUpdate(
                vendor_id=_vendor(payload),
                item_id=str(item_id),
                prediction=BackendPrediction.model_validate(payload.get("prediction") or {}),
                quantity=int(payload.get("quantity", 1)),
            )

        if event_type is EventType.VENDOR_LOAD_UPDATE:
            vendor_id = _vendor(payload)
            load = payload.get("load", payload)
            if not isinstance(load, dict):
                raise MalformedEventError("VENDOR_LOAD_UPDATE load is not an object")
            return VendorLoadUpdate(vendor_id=vendor_id, load=VendorLoad.from_payload(vendor_id, load))

        if event_type is EventType.MODEL_METRICS_UPDATE:
            model_name = payload.get("modelName") or payload.get("model_name")
            if not model_name:
                raise MalformedEventError("MODEL_METRICS_UPDATE has no modelName")
            metrics = {k: v for k, v in payload.items() if k not in ("modelName", "model_name")}
            return ModelMetricsUpdate(model_name=str(model_name), metrics=metrics)

        if event_type is EventType.DEMAND_SPIKE_ALERT:
            return DemandSpikeAlert(
                vendor_id=_vendor(payload),
                intensity=parse_intensity(payload.get("intensity", "high")),
                message=payload.get("message"),
            )

        return PredictionErrorEvent(
            vendor_id=_vendor(payload, required=False),
            message=str(payload.get("message", "unknown prediction error")),
        )
    except ValidationError as e:
        raise MalformedEventError(f"{event_type.value} prediction is invalid: {e.error_count()} errors") from e
    except (TypeError, ValueError) as e:
        raise MalformedEventError(f"{event_type.value} payload is invalid: {e}") from e


def encode_event(event_type: EventType, payload: dict) -> bytes:
    return json.dumps({"type": event_type.value, "payload": payload}).encode("utf-8")
