"""
Pydantic models for API request/response validation.
Enforces strict type checking at API boundary.
"""
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import List, Optional

from anomaly_engine.features.schema import TransactionFeatures


class TransactionRequest(TransactionFeatures):
    """
    Input: one transaction plus the caller's pre-computed user statistics.

    Accepts camelCase (payment pipeline) or snake_case keys.
    """
    transaction_id: Optional[str] = Field(None, description="Caller's transaction ID, echoed back")

    class Config:
        extra = "allow"
        populate_by_name = True
        alias_generator = to_camel
        json_schema_extra = {
            "example": {
                "transactionId": "TXN20260124200600ABC",
                "amount": 2450.0,
                "userId": "user_abc123",
                "timeOfDay": 3,
                "dayOfWeek": 6,
                "userTransactionCount": 2,
                "userAverageAmount": 80.0,
                "transactionVelocity": 4,
                "isNewPaymentMethod": True,
                "isInternational": True,
                "isHighRiskCountry": False,
                "merchantCategory": "cryptocurrency"
            }
        }


class AnomalyScoreResponse(BaseModel):
    """
    Output: AnomalyResult plus request metadata.
    """
    transaction_id: Optional[str] = None
    final_score: float = Field(..., ge=0, le=1, description="Fused anomaly score [0,1]")
    if_score: float = Field(..., ge=0, le=1, description="Isolation Forest score")
    ahc_flag: bool = Field(..., description="Clustering stage confirmed the anomaly")
    is_anomaly: bool
    confidence: float = Field(..., ge=0, le=1, description="Distance from the decision boundary")
    risk_factors: List[str] = Field(default_factory=list)
    model_version: str
    threshold: float = Field(..., description="Final threshold applied")
    latency_ms: float = Field(..., description="Total scoring latency")
    retrain_scheduled: bool = Field(False, description="Background retraining was queued")

    class Config:
        json_schema_extra = {
            "example": {
                "transaction_id": "TXN20260124200600ABC",
                "final_score": 0.81,
                "if_score": 0.675,
                "ahc_flag": True,
                "is_anomaly": True,
                "confidence": 0.32,
                "risk_factors": [
                    "small/distant cluster membership",
                    "unusually high amount",
                    "unusual hours",
                    "new account",
                    "high velocity",
                    "new payment method",
                    "international"
                ],
                "model_version": "2.0.0",
                "threshold": 0.65,
                "latency_ms": 4.2,
                "retrain_scheduled": True
            }
        }


class TrainRequest(BaseModel):
    transactions: List[TransactionFeatures] = Field(..., min_length=1)


class TrainResponse(BaseModel):
    n_new: int
    n_history: int
    n_candidates: int
    degraded: bool = Field(..., description="Clustering stage fell back to the full history")
    forest_threshold: float
    duration_ms: float


class HealthCheckResponse(BaseModel):
    """System health status."""
    status: str = Field(..., description="healthy | degraded | down")
    model_trained: bool
    history_size: int
    last_training_degraded: Optional[bool] = None
    uptime_seconds: float
    last_prediction_ms: Optional[float] = None


class MetricsResponse(BaseModel):
    """API performance metrics."""
    total_requests: int
    total_anomalies: int
    anomaly_rate: float = Field(..., description="Fraction of transactions flagged")
    avg_latency_ms: float
    p50_latency_ms: float
    p95_latency_ms: float
    p99_latency_ms: float
    requests_per_second: float
    error_count: int = 0
    retrain_count: int = 0
    retrain_failures: int = 0
    history_size: int = 0


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    message: str
    transaction_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)
