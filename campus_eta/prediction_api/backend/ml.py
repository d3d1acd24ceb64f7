import logging
from datetime import datetime, timezone

import requests
from pydantic import ValidationError

from campus_eta.common.config import ML_API_URL, QUICK_TIMEOUT_S
from campus_eta.prediction_api.errors import MalformedResponseError, NetworkError
from campus_eta.prediction_api.eta.models import PredictionSource
from campus_eta.prediction_api.schemas import BackendPrediction

logger = logging.getLogger(__name__)


def parse_prediction(data) -> BackendPrediction:
    """
    Validate one prediction payload from the ML backend.

    Raises:
        MalformedResponseError: If the payload is not an object or is out of range
    """
    if not isinstance(data, dict):
        raise MalformedResponseError(f"Expected prediction object, got {type(data).__name__}")
    try:
        return BackendPrediction.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"Invalid prediction payload: {e.error_count()} errors") from e


class MLBackendClient:
    """
    Client for the ML prediction service.

    Talks HTTP only: builds requests, applies timeouts, and turns transport
    failures into NetworkError / MalformedResponseError. Fallback policy
    lives in PredictionClient.
    """
    source = PredictionSource.ML

    def __init__(self, host: str = ML_API_URL, timeout: float = QUICK_TIMEOUT_S):
        self.host = host.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def _post(self, path: str, payload, timeout: float | None):
        url = f"{self.host}{path}"
        timeout = timeout if timeout is not None else self.timeout

        try:
            resp = self._session.post(url, json=payload, timeout=timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.exceptions.Timeout:
            logger.warning(f"ML request to {path} timed out after {timeout}s")
            raise NetworkError(f"ML request to {path} timed out")
        except requests.exceptions.ConnectionError as e:
            logger.warning(f"ML connection failed: {e}")
            raise NetworkError(f"ML connection failed: {e}")
        except requests.exceptions.HTTPError as e:
            logger.warning(f"ML HTTP error: {e}")
            raise NetworkError(f"ML HTTP error: {e}")
        except requests.exceptions.JSONDecodeError as e:
            logger.warning(f"ML returned non-JSON body for {path}: {e}")
            raise MalformedResponseError(f"ML returned non-JSON body: {e}")
        except requests.exceptions.RequestException as e:
            logger.warning(f"ML request failed: {e}")
            raise NetworkError(f"ML request failed: {e}")

    def predict_quick(
        self,
        vendor_id: str,
        item_id: str,
        quantity: int = 1,
        timeout: float | None = None,
    ) -> BackendPrediction:
        """
        Single-item browse-time prediction.

        Raises:
            NetworkError: On transport failure or non-2xx
            MalformedResponseError: On an invalid payload
        """
        data = self._post(
            "/predictions/quick",
            {
                "vendorId": vendor_id,
                "itemId": item_id,
                "quantity": quantity,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            timeout,
        )
        return parse_prediction(data)

    def predict_batch(
        self,
        vendor_id: str,
        item_ids: list[str],
        timeout: float | None = None,
    ) -> dict:
        """
        Predictions for many items in one round trip.

        Returns:
            Raw payloads keyed by item id; each is validated by the caller so
            one bad entry does not fail the batch
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        data = self._post(
            "/predictions/bulk-quick",
            [
                {"vendorId": vendor_id, "itemId": item_id, "quantity": 1, "timestamp": timestamp}
                for item_id in item_ids
            ],
            timeout,
        )
        if isinstance(data, dict) and isinstance(data.get("predictions"), dict):
            data = data["predictions"]
        if not isinstance(data, dict):
            raise MalformedResponseError("Batch response is not an object keyed by item id")
        return data

    def predict_order(self, payload: dict, timeout: float | None = None) -> BackendPrediction:
        """
        Whole-order checkout prediction (``POST /predict``).

        Args:
            payload: Output of assemble_backend_payload()
        """
        return parse_prediction(self._post("/predict", payload, timeout))
