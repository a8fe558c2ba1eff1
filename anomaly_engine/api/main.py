"""
FastAPI REST API for Transaction Anomaly Scoring
Real-time two-stage (Isolation Forest + hierarchical clustering) scoring

Architecture:
- POST /score: Score single transaction (queues background retraining)
- POST /train: Explicit training on a batch of records
- GET /health: System health check
- GET /metrics: Performance metrics
- Model warm-starts on synthetic data, then retrains on scored traffic
"""
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import time
from datetime import datetime
import logging
from typing import Dict, Optional

from anomaly_engine.api.models import (
    TransactionRequest,
    AnomalyScoreResponse,
    TrainRequest,
    TrainResponse,
    HealthCheckResponse,
    MetricsResponse,
    ErrorResponse
)
from anomaly_engine.api.service import AnomalyScoringService
from anomaly_engine.api.config import settings
from anomaly_engine.models.errors import InvalidInputError, NotTrainedError

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def get_scoring_service(request: Request) -> AnomalyScoringService:
    return request.app.state.scoring_service


def create_app(service: Optional[AnomalyScoringService] = None) -> FastAPI:
    """
    Build the API around a scoring service.

    Args:
        service: Pre-built service (tests, custom wiring). A default one is
            created at startup when None.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Startup:
        - Create the scoring service
        - Build the shared model (stored history or synthetic warm start)

        Shutdown:
        - Log final stats
        """
        logger.info("="*70)
        logger.info("🚀 STARTING ANOMALY SCORING API")
        logger.info("="*70)

        app.state.startup_time = time.time()
        scoring_service = service or AnomalyScoringService()
        app.state.scoring_service = scoring_service

        try:
            # Touching the handle builds and trains the model up front
            scoring_service.model

            health = scoring_service.health_check()
            logger.info(f"✅ Service status: {health['status']} "
                        f"(history={health['history_size']})")
            logger.info(f"🎯 API ready at http://{settings.API_HOST}:{settings.API_PORT}")
            logger.info("="*70)

            yield

        except Exception as e:
            logger.error(f"❌ Startup failed: {e}")
            raise

        finally:
            logger.info("Shutting down API...")
            scoring_service.close()
            logger.info("✅ Shutdown complete")

    app = FastAPI(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        description=(
            "Unsupervised transaction anomaly detection\n\n"
            "Features:\n"
            "- Isolation Forest scoring of every transaction\n"
            "- Hierarchical clustering of suspicious history as confirmation\n"
            "- Fused score, confidence and human-readable risk factors\n"
            "- Continuous retraining on scored traffic\n"
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        """Handle all uncaught exceptions gracefully."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "InternalServerError",
                "message": "An unexpected error occurred. Please try again.",
                "timestamp": datetime.utcnow().isoformat()
            }
        )

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.post(
        "/score",
        response_model=AnomalyScoreResponse,
        status_code=status.HTTP_200_OK,
        summary="Score Transaction for Anomalies",
        description=(
            "Submit a transaction with pre-computed user statistics.\n\n"
            "**Process:**\n"
            "1. Validate the record and derive model features\n"
            "2. Isolation Forest score\n"
            "3. Cluster membership check (small/distant cluster)\n"
            "4. Fuse into final score + confidence + risk factors\n"
            "5. Queue background retraining once enough history exists\n"
        ),
        responses={
            200: {"description": "Successfully scored transaction"},
            400: {"model": ErrorResponse, "description": "Invalid transaction data"},
            503: {"model": ErrorResponse, "description": "Model not trained yet"},
            500: {"model": ErrorResponse, "description": "Scoring failed"}
        }
    )
    def score_transaction(
        txn: TransactionRequest,
        background_tasks: BackgroundTasks,
        scoring_service: AnomalyScoringService = Depends(get_scoring_service)
    ) -> AnomalyScoreResponse:
        """Score a single transaction."""
        try:
            result, retrain_due = scoring_service.score(txn)

        except NotTrainedError as e:
            logger.error(f"❌ Model not trained, cannot score {txn.transaction_id}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "error": "NotTrained",
                    "message": str(e),
                    "transaction_id": txn.transaction_id
                }
            )

        except ValueError as e:
            logger.error(f"❌ Validation error for {txn.transaction_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error": "ValidationError",
                    "message": str(e),
                    "transaction_id": txn.transaction_id
                }
            )

        if retrain_due:
            background_tasks.add_task(scoring_service.retrain)
            result.retrain_scheduled = True

        if result.latency_ms > settings.MAX_LATENCY_MS:
            logger.warning(
                f"⚠️  Latency exceeded SLA: {result.latency_ms:.1f}ms "
                f"(target: {settings.MAX_LATENCY_MS}ms)"
            )

        logger.info(
            f"✅ Scored {txn.transaction_id}: "
            f"score={result.final_score:.3f}, "
            f"anomaly={result.is_anomaly}, "
            f"latency={result.latency_ms:.1f}ms"
        )
        return result

    @app.post(
        "/train",
        response_model=TrainResponse,
        status_code=status.HTTP_200_OK,
        summary="Train on a Batch",
        description="Append records to history and retrain both stages synchronously.",
        responses={400: {"model": ErrorResponse, "description": "Invalid training batch"}}
    )
    def train_model(
        request: TrainRequest,
        scoring_service: AnomalyScoringService = Depends(get_scoring_service)
    ) -> TrainResponse:
        try:
            summary = scoring_service.train(request.transactions)
        except InvalidInputError as e:
            logger.error(f"❌ Training rejected: {e}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "InvalidInput", "message": str(e)}
            )

        logger.info(f"✅ Trained on {summary.n_new} records "
                    f"(history={summary.n_history}, degraded={summary.degraded})")
        return TrainResponse(**summary.model_dump())

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        status_code=status.HTTP_200_OK,
        summary="Health Check",
        description=(
            "**Status:**\n"
            "- healthy: model trained, clustering stage ran on suspicious points\n"
            "- degraded: clustering fell back to the full history\n"
            "- down: no trained model\n"
        )
    )
    async def health_check(
        request: Request,
        scoring_service: AnomalyScoringService = Depends(get_scoring_service)
    ) -> HealthCheckResponse:
        health = scoring_service.health_check()
        health["uptime_seconds"] = time.time() - request.app.state.startup_time
        return HealthCheckResponse(**health)

    @app.get(
        "/metrics",
        response_model=MetricsResponse,
        status_code=status.HTTP_200_OK,
        summary="Performance Metrics",
        description=(
            "Request counts, anomaly rate, latency percentiles, "
            "retrain successes/failures and history size."
        )
    )
    async def get_metrics(
        scoring_service: AnomalyScoringService = Depends(get_scoring_service)
    ) -> MetricsResponse:
        return MetricsResponse(**scoring_service.get_metrics())

    @app.get(
        "/",
        summary="Root Endpoint",
        description="Welcome message with API information"
    )
    async def root(request: Request) -> Dict:
        """Root endpoint with API info."""
        return {
            "service": "Transaction Anomaly Scoring API",
            "version": settings.API_VERSION,
            "status": "running",
            "uptime_seconds": time.time() - request.app.state.startup_time,
            "endpoints": {
                "score": "POST /score - Score a transaction",
                "train": "POST /train - Train on a batch of records",
                "health": "GET /health - Health check",
                "metrics": "GET /metrics - Performance metrics",
                "docs": "GET /docs - Interactive API documentation"
            },
            "documentation": "/docs"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    print("\n" + "="*70)
    print("🚀 STARTING ANOMALY SCORING API")
    print("="*70)
    print(f"📍 Host: {settings.API_HOST}")
    print(f"🔌 Port: {settings.API_PORT}")
    print(f"🌲 Trees: {settings.N_TREES}, clusters: {settings.N_CLUSTERS}")
    print(f"🎯 Final threshold: {settings.FINAL_THRESHOLD}")
    print("="*70 + "\n")

    uvicorn.run(
        "anomaly_engine.api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
