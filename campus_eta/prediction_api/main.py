import logging
from contextlib import asynccontextmanager
from typing import Callable

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from campus_eta.common.config import LOG_LEVEL
from campus_eta.prediction_api.errors import InvalidOrderError, UnknownPredictionError
from campus_eta.prediction_api.monitoring.accuracy import classify_error
from campus_eta.prediction_api.schemas import (
    AccuracyReportRequest,
    AggregatedPredictionRequest,
    BatchPredictionRequest,
    OrderRequest,
)
from campus_eta.prediction_api.service import PredictionService

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def get_service(request: Request) -> PredictionService:
    return request.app.state.service


def create_app(service_factory: Callable[[], PredictionService] = PredictionService.from_config) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage the prediction service lifecycle."""
        service = service_factory()
        service.start()
        app.state.service = service
        logger.info("Prediction service started")

        yield

        service.close()
        logger.info("Prediction service stopped")

    app = FastAPI(
        title="Campus Pickup-Time Prediction Engine",
        description="Quick, batch, detailed and aggregated pickup-time predictions with accuracy tracking",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    def health(request: Request):
        """Health check endpoint."""
        service = get_service(request)
        channel = service.channel
        return {
            "status": "ok",
            "backend": service.client.source.value,
            "live_channel": (
                "disabled" if channel is None
                else "connected" if channel.connected
                else "disconnected"
            ),
            "accuracy_log": "enabled" if service.tracker.record_log is not None else "disabled",
        }

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/v1/predictions/quick")
    async def quick_prediction(
        request: Request,
        vendor_id: str,
        item_id: str,
        quantity: int = Query(1, gt=0),
    ):
        """
        Browse-time estimate for a single menu item.

        Always returns a prediction; fallback results carry is_fallback=true.
        """
        prediction = await get_service(request).get_quick_prediction(vendor_id, item_id, quantity)
        return prediction.to_dict()

    @app.post("/v1/predictions/batch")
    async def batch_predictions(request: Request, body: BatchPredictionRequest):
        """Estimates for several menu items of one vendor."""
        predictions = await get_service(request).get_batch_predictions(body.vendor_id, body.item_ids)
        return {
            "vendor_id": body.vendor_id,
            "predictions": {item_id: p.to_dict() for item_id, p in predictions.items()},
        }

    @app.post("/v1/predictions/detailed")
    async def detailed_prediction(request: Request, body: OrderRequest):
        """
        Checkout-time prediction for a whole order.

        Returns 400 when the order cannot be priced (e.g. empty cart).
        """
        try:
            prediction = await get_service(request).get_detailed_prediction(body.model_dump())
        except InvalidOrderError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return prediction.to_dict()

    @app.post("/v1/predictions/aggregated")
    def aggregated_prediction(request: Request, body: AggregatedPredictionRequest):
        """Order prediction combined from already-known item predictions."""
        prediction = get_service(request).get_aggregated_prediction(
            body.vendor_id, [item.model_dump() for item in body.items]
        )
        return prediction.to_dict()

    @app.get("/v1/predictions/history")
    def prediction_history(request: Request, limit: int = Query(50, gt=0, le=100)):
        """Most recently issued predictions, newest first."""
        return [
            {**entry, "prediction": entry["prediction"].to_dict(), "timestamp": entry["timestamp"].isoformat()}
            for entry in get_service(request).get_prediction_history(limit)
        ]

    @app.post("/v1/accuracy/reports")
    async def report_accuracy(request: Request, body: AccuracyReportRequest):
        """Record the actual ready time for a previously issued prediction."""
        try:
            record = await get_service(request).report_accuracy(body.prediction_id, body.actual_minutes)
        except UnknownPredictionError as e:
            raise HTTPException(status_code=404, detail=str(e))
        return {
            **record.to_dict(),
            "classification": classify_error(record.absolute_error_minutes),
        }

    @app.get("/v1/accuracy/vendors/{vendor_id}")
    async def vendor_accuracy(request: Request, vendor_id: str, time_range: str = Query("day", alias="range")):
        service = get_service(request)
        return {
            "vendor_id": vendor_id,
            "running": service.get_accuracy_metrics(vendor_id=vendor_id),
            "reported": await service.get_prediction_accuracy(vendor_id, time_range),
        }

    @app.get("/v1/accuracy/vendors/{vendor_id}/summary")
    def vendor_accuracy_summary(request: Request, vendor_id: str):
        """Error percentiles computed from the stored accuracy records."""
        return get_service(request).tracker.summary(vendor_id)

    @app.get("/v1/accuracy/models/{model_name}")
    def model_accuracy(request: Request, model_name: str):
        return get_service(request).get_model_metrics(model_name)

    @app.put("/v1/vendors/{vendor_id}/subscription")
    def subscribe(request: Request, vendor_id: str):
        live = get_service(request).subscribe_to_vendor(vendor_id)
        return {"vendor_id": vendor_id, "subscribed": live}

    @app.delete("/v1/vendors/{vendor_id}/subscription")
    def unsubscribe(request: Request, vendor_id: str):
        get_service(request).unsubscribe_from_vendor(vendor_id)
        return {"vendor_id": vendor_id, "subscribed": False}

    @app.get("/v1/vendors/{vendor_id}/load")
    async def vendor_load(request: Request, vendor_id: str):
        load = await get_service(request).get_vendor_load(vendor_id)
        return load.to_dict()

    @app.delete("/v1/vendors/{vendor_id}/cache")
    def clear_vendor_cache(request: Request, vendor_id: str):
        removed = get_service(request).clear_vendor_cache(vendor_id)
        return {"vendor_id": vendor_id, "removed": removed}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("campus_eta.prediction_api.main:app", host="0.0.0.0", port=8080)
