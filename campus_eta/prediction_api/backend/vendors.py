import logging

import requests

from campus_eta.common.config import BACKEND_API_URL, QUICK_TIMEOUT_S
from campus_eta.prediction_api.errors import MalformedResponseError, NetworkError
from campus_eta.prediction_api.eta.models import AccuracyRecord, VendorLoad

logger = logging.getLogger(__name__)


class VendorApiClient:
    """Client for the vendor REST endpoints (load, prediction accuracy)."""

    def __init__(self, host: str = BACKEND_API_URL, timeout: float = QUICK_TIMEOUT_S):
        self.host = host.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def _request(self, method: str, path: str, **kwargs):
        url = f"{self.host}{path}"
        try:
            resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
            resp.raise_for_status()
            return resp.json() if resp.content else None
        except requests.exceptions.Timeout:
            raise NetworkError(f"{method} {path} timed out after {self.timeout}s")
        except requests.exceptions.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}")
        except requests.exceptions.JSONDecodeError as e:
            raise MalformedResponseError(f"{method} {path} returned non-JSON body: {e}")
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {path} failed: {e}")

    def get_vendor_load(self, vendor_id: str) -> VendorLoad:
        data = self._request("GET", f"/vendors/{vendor_id}/load")
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Vendor load for {vendor_id} is not an object")
        try:
            return VendorLoad.from_payload(vendor_id, data)
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"Invalid vendor load for {vendor_id}: {e}") from e

    def get_prediction_accuracy(self, vendor_id: str, time_range: str = "day") -> dict:
        data = self._request(
            "GET",
            f"/vendors/{vendor_id}/prediction-accuracy",
            params={"range": time_range},
        )
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Prediction accuracy for {vendor_id} is not an object")
        return data

    def post_accuracy_record(self, record: AccuracyRecord) -> None:
        self._request(
            "POST",
            f"/vendors/{record.vendor_id}/prediction-accuracy",
            json=record.to_dict(),
        )
