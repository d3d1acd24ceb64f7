import threading
import time
from typing import Callable

from campus_eta.common.config import DEMAND_SPIKE_WARNING_S
from campus_eta.prediction_api.eta.models import VendorLoad

DEMAND_SPIKE_WARNING = "demand_spike"


class VendorStateStore:
    """
    Latest known load and active demand-spike warnings per vendor.

    Loads are last-write-wins in arrival order.
    """

    def __init__(
        self,
        spike_warning_s: float = DEMAND_SPIKE_WARNING_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.spike_warning_s = spike_warning_s
        self._clock = clock
        self._loads: dict[str, VendorLoad] = {}
        self._spikes: dict[str, float] = {}
        self._lock = threading.Lock()

    def set_load(self, load: VendorLoad) -> VendorLoad | None:
        with self._lock:
            previous = self._loads.get(load.vendor_id)
            self._loads[load.vendor_id] = load
        return previous

    def get_load(self, vendor_id: str) -> VendorLoad | None:
        with self._lock:
            return self._loads.get(vendor_id)

    def flag_demand_spike(self, vendor_id: str) -> None:
        with self._lock:
            self._spikes[vendor_id] = self._clock() + self.spike_warning_s

    def warnings_for(self, vendor_id: str | None) -> tuple[str, ...]:
        if vendor_id is None:
            return ()
        with self._lock:
            expires_at = self._spikes.get(vendor_id)
            if expires_at is None:
                return ()
            if self._clock() >= expires_at:
                del self._spikes[vendor_id]
                return ()
        return (DEMAND_SPIKE_WARNING,)
