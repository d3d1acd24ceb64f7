from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator


# 1. Backend payloads (validated before they become Predictions)
class BackendBreakdown(BaseModel):
    base_time: Optional[float] = Field(None, ge=0, validation_alias=AliasChoices("base_time", "baseTime"))
    queue_effect: float = Field(0.0, ge=0, validation_alias=AliasChoices("queue_effect", "queueEffect"))
    demand_factor: float = Field(1.0, gt=0, validation_alias=AliasChoices("demand_factor", "demandFactor"))
    queue_length: Optional[int] = Field(None, ge=0, validation_alias=AliasChoices("queue_length", "queueLength"))


class BackendPrediction(BaseModel):
    estimated_minutes: Optional[float] = Field(
        None, ge=0, validation_alias=AliasChoices("estimated_minutes", "estimatedMinutes")
    )
    predicted_ready_time: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("predicted_ready_time", "predictedReadyTime")
    )
    confidence: float = Field(..., ge=0.0, le=1.0)
    queue_position: Optional[int] = Field(None, validation_alias=AliasChoices("queue_position", "queuePosition"))
    method: Optional[str] = None
    rush_detected: bool = Field(False, validation_alias=AliasChoices("rush_detected", "rushDetected"))
    breakdown: Optional[BackendBreakdown] = None

    @model_validator(mode="after")
    def require_estimate(self):
        if self.estimated_minutes is None and self.predicted_ready_time is None:
            raise ValueError("either estimated_minutes or predicted_ready_time is required")
        return self


# 2. API requests
class BatchPredictionRequest(BaseModel):
    vendor_id: str
    item_ids: List[str] = Field(..., min_length=1)


class OrderItem(BaseModel):
    item_id: str = Field(..., validation_alias=AliasChoices("item_id", "menu_item_id", "id"))
    name: Optional[str] = None
    quantity: int = Field(1, gt=0)
    base_preparation_time_minutes: float = Field(5.0, ge=0)
    preparation_complexity: Optional[int] = Field(None, ge=1)


class OrderRequest(BaseModel):
    vendor_id: str
    items: List[OrderItem]
    student_id: Optional[str] = None
    desired_window: Optional[Dict[str, Any]] = None


class AggregatedPredictionRequest(BaseModel):
    vendor_id: str
    items: List[OrderItem]


class AccuracyReportRequest(BaseModel):
    prediction_id: str
    actual_minutes: float = Field(..., ge=0)
