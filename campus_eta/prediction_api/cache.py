"""
In-memory TTL cache for predictions.

Entries are evicted lazily: an expired entry reads exactly like a miss.
Nothing is persisted across restarts. A hit inside the TTL may be slightly
stale; that is the accepted staleness bound.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Union

from campus_eta.common.config import BATCH_TTL_S, QUICK_TTL_S
from campus_eta.prediction_api.eta.models import Prediction
from campus_eta.prediction_api.monitoring.metrics import CACHE_ENTRIES, CACHE_LOOKUPS

logger = logging.getLogger(__name__)

CachedValue = Union[Prediction, dict[str, Prediction]]


@dataclass(frozen=True)
class CacheKey:
    kind: str
    vendor_id: str
    item_ids: tuple[str, ...]
    quantity: int | None = None
    options: tuple[tuple[str, str], ...] = ()

    @classmethod
    def quick(cls, vendor_id: str, item_id: str, quantity: int = 1, options: dict | None = None) -> CacheKey:
        return cls("quick", vendor_id, (item_id,), quantity, _freeze(options))

    @classmethod
    def batch(cls, vendor_id: str, item_ids: Iterable[str], options: dict | None = None) -> CacheKey:
        return cls("batch", vendor_id, tuple(sorted(set(item_ids))), None, _freeze(options))

    def __str__(self) -> str:
        parts = [self.kind, self.vendor_id, ",".join(self.item_ids)]
        if self.quantity is not None:
            parts.append(str(self.quantity))
        parts.extend(f"{k}={v}" for k, v in self.options)
        return ":".join(parts)


def _freeze(options: dict | None) -> tuple[tuple[str, str], ...]:
    if not options:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in options.items()))


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    value: CachedValue
    expires_at: float


class PredictionCache:
    """
    Thread-safe TTL map of CacheKey -> Prediction (or item_id -> Prediction for batches).

    Entries are immutable; writers swap whole entries under the lock so a
    reader never observes a half-written one.
    """

    def __init__(
        self,
        default_ttl: float = QUICK_TTL_S,
        batch_ttl: float = BATCH_TTL_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl = default_ttl
        self.batch_ttl = batch_ttl
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: CacheKey) -> CachedValue | None:
        """Return the cached value, or None on a miss or an expired entry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now >= entry.expires_at:
                del self._entries[key]
                CACHE_ENTRIES.set(len(self._entries))
                entry = None

        CACHE_LOOKUPS.labels(result="hit" if entry else "miss").inc()
        return entry.value if entry else None

    def put(self, key: CacheKey, value: CachedValue, ttl: float | None = None) -> None:
        if ttl is None:
            ttl = self.batch_ttl if key.kind == "batch" else self.default_ttl
        entry = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl)
        with self._lock:
            self._entries[key] = entry
            CACHE_ENTRIES.set(len(self._entries))

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
            CACHE_ENTRIES.set(len(self._entries))
        return removed

    def invalidate_vendor(self, vendor_id: str) -> int:
        """Remove every entry whose key references the vendor."""
        with self._lock:
            stale = [key for key in self._entries if key.vendor_id == vendor_id]
            for key in stale:
                del self._entries[key]
            CACHE_ENTRIES.set(len(self._entries))

        if stale:
            logger.info(f"Invalidated {len(stale)} cached predictions for vendor {vendor_id}")
        return len(stale)

    def patch_vendor_queue(
        self,
        vendor_id: str,
        queue_effect: float | None = None,
        queue_length: int | None = None,
    ) -> int:
        """
        Refresh queue fields of every live entry for a vendor.

        Only ``breakdown.queue_effect`` and ``breakdown.queue_length`` change;
        ``estimated_minutes``, ``pickup_window`` and the entry expiry keep the
        values of the last full prediction.

        Returns:
            Number of entries patched
        """
        def patch(prediction: Prediction) -> Prediction:
            breakdown = prediction.breakdown
            if queue_effect is not None:
                breakdown = replace(breakdown, queue_effect=queue_effect)
            if queue_length is not None:
                breakdown = replace(breakdown, queue_length=queue_length)
            return replace(prediction, breakdown=breakdown, live_adjusted=True)

        now = self._clock()
        patched = 0
        with self._lock:
            for key, entry in list(self._entries.items()):
                if key.vendor_id != vendor_id or now >= entry.expires_at:
                    continue
                if isinstance(entry.value, Prediction):
                    value = patch(entry.value)
                else:
                    value = {item_id: patch(p) for item_id, p in entry.value.items()}
                self._entries[key] = replace(entry, value=value)
                patched += 1
        return patched

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            CACHE_ENTRIES.set(0)
