"""
Predicted-vs-actual accuracy tracking.

Every completed order yields one AccuracyRecord. Records are appended to a
log (Redis list per vendor) and folded into running means per vendor and per
model; the running mean is updated incrementally and never recomputed from
the log.
"""
import json
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import numpy as np
import redis

from campus_eta.prediction_api.errors import NetworkError, UnknownPredictionError
from campus_eta.prediction_api.eta.models import AccuracyRecord, Prediction
from campus_eta.prediction_api.eta.window import utcnow
from campus_eta.prediction_api.monitoring.metrics import ACCURACY_ERROR, ACCURACY_REPORTS

logger = logging.getLogger(__name__)

EXCELLENT_MAX_ERROR = 3.0
GOOD_MAX_ERROR = 5.0
MAX_REGISTERED_PREDICTIONS = 10_000
MIN_SUMMARY_SAMPLES = 20


def classify_error(error_minutes: float) -> str:
    if error_minutes <= EXCELLENT_MAX_ERROR:
        return "excellent"
    if error_minutes <= GOOD_MAX_ERROR:
        return "good"
    return "needs improvement"


@dataclass
class RunningAccuracy:
    total_reports: int = 0
    average_error: float = 0.0
    last_reported: datetime | None = None

    def update(self, error: float, reported_at: datetime) -> None:
        n = self.total_reports
        self.average_error = (self.average_error * n + error) / (n + 1)
        self.total_reports = n + 1
        self.last_reported = reported_at

    def to_dict(self) -> dict:
        return {
            "total_reports": self.total_reports,
            "average_error": round(self.average_error, 4),
            "last_reported": self.last_reported.isoformat() if self.last_reported else None,
            "classification": classify_error(self.average_error) if self.total_reports else None,
        }


class RedisAccuracyLog:
    """Append-only AccuracyRecord log, one Redis list per vendor."""

    def __init__(self, redis_client: redis.Redis, prefix: str = "accuracy"):
        self.redis = redis_client
        self.prefix = prefix

    def _key(self, vendor_id: str) -> str:
        return f"{self.prefix}:{vendor_id}"

    def append(self, record: AccuracyRecord) -> None:
        self.redis.rpush(self._key(record.vendor_id), json.dumps(record.to_dict()))

    def records(self, vendor_id: str) -> list[dict]:
        return [json.loads(x) for x in self.redis.lrange(self._key(vendor_id), 0, -1)]


class AccuracyTracker:
    """
    Running accuracy metrics keyed by vendor and by model.

    Reports for the same key are serialized so the read-modify-write of the
    running mean never races; different keys update concurrently.
    """

    def __init__(
        self,
        record_log: RedisAccuracyLog | None = None,
        sink: Callable[[AccuracyRecord], None] | None = None,
        max_registered: int = MAX_REGISTERED_PREDICTIONS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.record_log = record_log
        self.sink = sink
        self.max_registered = max_registered
        self._clock = clock

        self._registered: OrderedDict[str, Prediction] = OrderedDict()
        self._registered_lock = threading.Lock()

        self._stats: dict[str, RunningAccuracy] = {}
        self._key_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        self._model_metrics: dict[str, dict] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
                self._stats[key] = RunningAccuracy()
            return lock

    def register(self, prediction: Prediction) -> None:
        """Remember an issued prediction so it can be reported on later."""
        with self._registered_lock:
            self._registered[prediction.prediction_id] = prediction
            while len(self._registered) > self.max_registered:
                self._registered.popitem(last=False)

    def record_error(self, key: str, error: float, reported_at: datetime) -> RunningAccuracy:
        with self._lock_for(key):
            stats = self._stats[key]
            stats.update(error, reported_at)
            return RunningAccuracy(stats.total_reports, stats.average_error, stats.last_reported)

    def report(self, prediction_id: str, actual_minutes: float) -> AccuracyRecord:
        """
        Ingest the actual fulfillment time of a predicted order.

        Each prediction can be reported once; it is consumed by the report.

        Raises:
            UnknownPredictionError: If the id was never registered or was already reported
        """
        with self._registered_lock:
            prediction = self._registered.pop(prediction_id, None)
        if prediction is None:
            raise UnknownPredictionError(f"Unknown prediction {prediction_id}")

        reported_at = self._clock()
        error = abs(actual_minutes - prediction.estimated_minutes)
        record = AccuracyRecord(
            vendor_id=prediction.vendor_id or "unknown",
            prediction_id=prediction_id,
            predicted_minutes=prediction.estimated_minutes,
            actual_minutes=actual_minutes,
            absolute_error_minutes=error,
            reported_at=reported_at,
            model_name=prediction.model_name,
        )

        self.record_error(f"vendor:{record.vendor_id}", error, reported_at)
        self.record_error(f"model:{record.model_name}", error, reported_at)

        classification = classify_error(error)
        ACCURACY_REPORTS.labels(classification=classification).inc()
        ACCURACY_ERROR.observe(error)
        logger.info(
            f"Accuracy report {prediction_id} vendor={record.vendor_id} "
            f"predicted={record.predicted_minutes:.1f} actual={actual_minutes:.1f} ({classification})"
        )

        if self.record_log is not None:
            try:
                self.record_log.append(record)
            except redis.RedisError as e:
                logger.error(f"Failed to append accuracy record {prediction_id}: {e}")

        if self.sink is not None:
            try:
                self.sink(record)
            except NetworkError as e:
                logger.warning(f"Failed to forward accuracy record {prediction_id}: {e}")

        return record

    def _snapshot(self, key: str) -> RunningAccuracy:
        with self._locks_guard:
            lock = self._key_locks.get(key)
        if lock is None:
            return RunningAccuracy()
        with lock:
            stats = self._stats[key]
            return RunningAccuracy(stats.total_reports, stats.average_error, stats.last_reported)

    def get_metrics(self, vendor_id: str | None = None, model_name: str | None = None) -> dict:
        """Running metrics for exactly one of vendor_id or model_name."""
        if (vendor_id is None) == (model_name is None):
            raise ValueError("pass exactly one of vendor_id or model_name")
        key = f"vendor:{vendor_id}" if vendor_id is not None else f"model:{model_name}"
        return self._snapshot(key).to_dict()

    def update_model_metrics(self, model_name: str, metrics: dict) -> None:
        """Merge metrics pushed by the model service."""
        with self._locks_guard:
            merged = {**self._model_metrics.get(model_name, {}), **metrics}
            merged["last_updated"] = self._clock().isoformat()
            self._model_metrics[model_name] = merged

    def get_model_metrics(self, model_name: str) -> dict:
        with self._locks_guard:
            pushed = dict(self._model_metrics.get(model_name, {}))
        return {
            "model_name": model_name,
            "running": self.get_metrics(model_name=model_name),
            "reported": pushed,
        }

    def summary(self, vendor_id: str) -> dict:
        """
        Error distribution for a vendor from the record log.

        Returns:
            p50/p90 absolute error and MAPE, or insufficient_data below
            MIN_SUMMARY_SAMPLES records
        """
        if self.record_log is None:
            return {"status": "unavailable", "samples": 0}

        records = self.record_log.records(vendor_id)
        if len(records) < MIN_SUMMARY_SAMPLES:
            return {"status": "insufficient_data", "samples": len(records)}

        errors = np.array([r["absolute_error_minutes"] for r in records], dtype=float)
        actual = np.array([r["actual_minutes"] for r in records], dtype=float)
        nonzero = actual > 0

        return {
            "vendor_id": vendor_id,
            "samples": len(records),
            "mae_minutes": round(float(np.mean(errors)), 2),
            "p50_error_minutes": round(float(np.percentile(errors, 50)), 2),
            "p90_error_minutes": round(float(np.percentile(errors, 90)), 2),
            "mape_percent": round(float(np.mean(errors[nonzero] / actual[nonzero]) * 100), 2) if nonzero.any() else None,
            "within_excellent_percent": round(float(np.mean(errors <= EXCELLENT_MAX_ERROR) * 100), 1),
        }
